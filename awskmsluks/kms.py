"""AWS KMS key authority: wraps and unwraps LUKS passphrases.

Each call builds a KMS client for the region embedded in the CMK ARN, so the
authority never depends on ambient region configuration.  Calls are attempted
exactly once; botocore's retry handler is pinned to a single attempt.
"""

from __future__ import annotations

import base64
import binascii
import re
import uuid as _uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import AuthorityCallError, AuthorityReferenceError
from .executil import info, trace
from .model import DataKey, EncryptionContext, Key

PASSPHRASE_BYTE_SIZE = 1024

_REGION_RE = re.compile(r"^[a-z]{2}(-[a-z]+)+-\d+$")


@dataclass(frozen=True)
class Arn:
    partition: str
    service: str
    region: str
    account: str
    resource: str


def parse_arn(text: str) -> Arn:
    if not isinstance(text, str) or not text.startswith("arn:"):
        raise AuthorityReferenceError(f"invalid CMK ARN: {text!r} does not start with 'arn:'")
    parts = text.split(":", 5)
    if len(parts) != 6:
        raise AuthorityReferenceError(f"invalid CMK ARN: {text!r} has too few sections")
    _, partition, service, region, account, resource = parts
    if not partition:
        raise AuthorityReferenceError(f"invalid CMK ARN: {text!r} has no partition")
    if service != "kms":
        raise AuthorityReferenceError(f"invalid CMK ARN: {text!r} is not a KMS key (service {service!r})")
    if not region:
        raise AuthorityReferenceError(f"invalid CMK ARN: {text!r} has no region")
    if not _REGION_RE.match(region):
        raise AuthorityReferenceError(f"invalid CMK ARN: {text!r} has malformed region {region!r}")
    if not resource:
        raise AuthorityReferenceError(f"invalid CMK ARN: {text!r} has no key resource")
    return Arn(partition=partition, service=service, region=region, account=account, resource=resource)


def _default_client_factory(region: str) -> Any:
    return boto3.client(
        "kms",
        region_name=region,
        config=BotoConfig(retries={"max_attempts": 1, "mode": "standard"}),
    )


def _describe(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        err = exc.response.get("Error", {})
        code = err.get("Code", "Unknown")
        message = err.get("Message") or str(exc)
        return f"{code}: {message}"
    return str(exc)


class KeyAuthority:
    """Generate and decrypt data keys with a KMS customer master key."""

    def __init__(self, client_factory: Callable[[str], Any] | None = None):
        self._client_factory = client_factory or _default_client_factory

    def _client(self, cmk_arn: str):
        arn = parse_arn(cmk_arn)
        try:
            return self._client_factory(arn.region)
        except BotoCoreError as exc:
            raise AuthorityCallError(f"unable to create KMS client for {arn.region}: {exc}") from exc

    def generate(self, cmk_arn: str, context: EncryptionContext) -> Tuple[bytearray, str]:
        """Return ``(plain, encrypted)`` for a fresh 1024 byte data key.

        ``plain`` is the base64 text of the random bytes, which is what
        cryptsetup receives as the passphrase.  ``encrypted`` is the base64
        ciphertext blob.
        """

        client = self._client(cmk_arn)
        trace("kms.generate", cmk_arn=cmk_arn, uuid=context.uuid)
        try:
            output = client.generate_data_key(
                KeyId=cmk_arn,
                NumberOfBytes=PASSPHRASE_BYTE_SIZE,
                EncryptionContext=context.to_kms(),
            )
        except (ClientError, BotoCoreError) as exc:
            raise AuthorityCallError(f"GenerateDataKey failed: {_describe(exc)}") from exc
        plain = bytearray(base64.b64encode(output["Plaintext"]))
        encrypted = base64.b64encode(output["CiphertextBlob"]).decode("ascii")
        return plain, encrypted

    def unwrap(self, encrypted: str, context: EncryptionContext, cmk_arn: str) -> bytearray:
        """Decrypt ``encrypted`` under ``context``.

        KMS refuses the call when the context differs in any field from the
        one given at generation time.
        """

        client = self._client(cmk_arn)
        try:
            blob = base64.b64decode(encrypted, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise AuthorityCallError(f"cannot base64 decode encrypted key: {exc}") from exc
        trace("kms.decrypt", cmk_arn=cmk_arn, uuid=context.uuid)
        try:
            output = client.decrypt(
                KeyId=cmk_arn,
                CiphertextBlob=blob,
                EncryptionContext=context.to_kms(),
            )
        except (ClientError, BotoCoreError) as exc:
            raise AuthorityCallError(f"Decrypt failed: {_describe(exc)}") from exc
        return bytearray(base64.b64encode(output["Plaintext"]))


def _owned(plain) -> bytearray:
    if isinstance(plain, bytearray):
        return plain
    if isinstance(plain, str):
        return bytearray(plain.encode("utf-8"))
    return bytearray(plain)


def new_data_key(authority: KeyAuthority, cmk_arn: str, fqdn: str, production: bool) -> Key:
    """Create a key record bound to a freshly generated device UUID."""

    ec = EncryptionContext(fqdn=fqdn, production=production, uuid=str(_uuid.uuid4()))
    plain, encrypted = authority.generate(cmk_arn, ec)
    key = Key(
        encryption_context=ec,
        cmk_arn=cmk_arn,
        data_key=DataKey(
            encrypted=encrypted,
            created=datetime.now(timezone.utc),
            plain=_owned(plain),
        ),
    )
    info("key.generated", fqdn=fqdn, uuid=ec.uuid, production=production)
    return key


def decrypt_key(authority: KeyAuthority, key: Key) -> Key:
    """Unwrap ``key`` in place and return it."""

    if not key.complete:
        raise AuthorityCallError(f"key {key.uuid} has no encrypted data key or CMK ARN")
    key.data_key.plain = _owned(authority.unwrap(key.data_key.encrypted, key.encryption_context, key.cmk_arn))
    trace("key.decrypted", fqdn=key.fqdn, uuid=key.uuid)
    return key
