"""Key persistence: S3 archive, local cache, lookup and enumeration."""

from __future__ import annotations

import json
import os
from typing import Any, Iterator, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import KeyNotFoundError, KeyParseError, KeyStoreError, StoreError
from .executil import info, trace, warn
from .kms import KeyAuthority, decrypt_key
from .model import Key


def object_key(fqdn: str, uuid: str) -> str:
    return f"{fqdn}/{uuid}.json"


def key_path(root: str, fqdn: str, uuid: str) -> str:
    return os.path.join(root, fqdn, f"{uuid}.json")


def s3_client():
    return boto3.client("s3", config=BotoConfig(retries={"max_attempts": 1, "mode": "standard"}))


def archive(key: Key, bucket: str, client: Any | None = None) -> str:
    """Upload the redacted record to ``bucket`` and return its object key."""

    client = client or s3_client()
    name = object_key(key.fqdn, key.uuid)
    body = key.to_json().encode("utf-8")
    try:
        client.put_object(Bucket=bucket, Key=name, Body=body, ContentType="application/json")
    except (ClientError, BotoCoreError) as exc:
        raise StoreError(f"failed to upload key to s3://{bucket}/{name}: {exc}") from exc
    info("key.archived", bucket=bucket, object_key=name)
    return name


def store(key: Key, root: str) -> str:
    """Write the redacted record under ``root`` and return the file path."""

    directory = os.path.join(root, key.fqdn)
    path = key_path(root, key.fqdn, key.uuid)
    try:
        os.makedirs(directory, mode=0o700, exist_ok=True)
    except OSError as exc:
        raise StoreError(f"could not create local key store directory {directory}: {exc}") from exc
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(key.to_json())
            fh.flush()
            os.fsync(fh.fileno())
    except OSError as exc:
        raise StoreError(f"could not write to local key store ({path}): {exc}") from exc
    info("key.stored", path=path)
    return path


def persist(key: Key, bucket: str, root: str, client: Any | None = None) -> str:
    """Archive ``key`` to S3, then store it locally.

    The two writes are not atomic.  When the archive succeeds but the local
    write fails the record only exists in S3; the raised ``StoreError`` is
    flagged ``archived`` and tells the operator how to restore it.
    """

    archive(key, bucket, client)
    try:
        return store(key, root)
    except StoreError as exc:
        warn("key.store_failed_after_archive", bucket=bucket, uuid=key.uuid, error=str(exc))
        raise StoreError(
            str(exc),
            archived=True,
            hint=(
                f"The key was archived to s3://{bucket}/{object_key(key.fqdn, key.uuid)} "
                f"but is missing locally. Restore it with: awskmsluks -restore {key.uuid}"
            ),
        ) from exc


def restore(bucket: str, fqdn: str, uuid: str, root: str, client: Any | None = None) -> Key:
    """Copy an archived record back into the local cache."""

    client = client or s3_client()
    name = object_key(fqdn, uuid)
    try:
        response = client.get_object(Bucket=bucket, Key=name)
        body = response["Body"].read()
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "")
        if code in ("NoSuchKey", "404", "NotFound"):
            raise KeyNotFoundError(f"no archived key at s3://{bucket}/{name}") from exc
        raise StoreError(f"failed to download s3://{bucket}/{name}: {exc}") from exc
    except BotoCoreError as exc:
        raise StoreError(f"failed to download s3://{bucket}/{name}: {exc}") from exc
    key = _parse(body, f"s3://{bucket}/{name}")
    if key.fqdn != fqdn or key.uuid != uuid:
        raise KeyParseError(
            f"archived key s3://{bucket}/{name} belongs to {key.fqdn}/{key.uuid}"
        )
    store(key, root)
    return key


def _parse(raw: str | bytes, where: str) -> Key:
    try:
        return Key.from_json(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise KeyParseError(f"error parsing key record ({where}): {exc}") from exc
    except KeyError as exc:
        raise KeyParseError(f"error parsing key record ({where}): missing field {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise KeyParseError(f"error parsing key record ({where}): {exc}") from exc


def load(root: str, fqdn: str, uuid: str) -> Key:
    path = key_path(root, fqdn, uuid)
    try:
        with open(path, "rb") as fh:
            raw = fh.read()
    except FileNotFoundError as exc:
        raise KeyNotFoundError(f"no key for device {uuid} in local store ({path})") from exc
    except OSError as exc:
        raise KeyNotFoundError(f"error reading device's key from local store ({path}): {exc}") from exc
    key = _parse(raw, path)
    if key.fqdn != fqdn or key.uuid != uuid:
        raise KeyParseError(f"key record {path} belongs to {key.fqdn}/{key.uuid}")
    trace("key.loaded", path=path)
    return key


def retrieve(root: str, fqdn: str, uuid: str, authority: KeyAuthority) -> Key:
    """Load the cached record for ``uuid`` and unwrap it."""

    return decrypt_key(authority, load(root, fqdn, uuid))


def enumerate_all(root: str, fqdn: str) -> Iterator[Tuple[str, Key | KeyStoreError]]:
    """Yield ``(uuid, key_or_error)`` for every cached record of ``fqdn``.

    Unreadable or corrupt files are yielded as their error so callers can
    report them and carry on.
    """

    directory = os.path.join(root, fqdn)
    try:
        names = sorted(os.listdir(directory))
    except FileNotFoundError:
        return
    except OSError as exc:
        raise KeyStoreError(f"cannot list local key store {directory}: {exc}") from exc
    for name in names:
        if not name.endswith(".json"):
            continue
        uuid = name[: -len(".json")]
        try:
            key = load(root, fqdn, uuid)
        except KeyStoreError as exc:
            warn("key.enumerate_failed", uuid=uuid, error=str(exc))
            yield uuid, exc
            continue
        yield uuid, key
