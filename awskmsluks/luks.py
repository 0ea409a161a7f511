"""LUKS device lifecycle: format with a KMS data key, bind its UUID, unlock."""

from __future__ import annotations

import os
from typing import List, Tuple

from .devices import dev_from_uuid, is_block_device, mapper_name
from .errors import (
    AuthorityError,
    AwsKmsLuksError,
    DeviceError,
    FormatError,
    SubprocessTimeout,
    UnlockError,
    UUIDBindingError,
)
from .executil import error, info, run, run_secret, udev_settle
from .keystore import enumerate_all
from .kms import KeyAuthority, decrypt_key
from .model import Key
from .paths import DEV_BY_UUID

MAPPER_DIR = "/dev/mapper"
UUID_CONFIRMATION = b"YES\n"

FORMAT_TIMEOUT = 360.0
UUID_TIMEOUT = 60.0
OPEN_TIMEOUT = 120.0


def is_luks(device: str) -> bool:
    probe = run(["cryptsetup", "isLuks", device], check=False)
    return probe.rc == 0


def check_formattable(device: str, force: bool = False) -> None:
    """Raise ``FormatError`` unless ``device`` is a block device we may format."""

    if not is_block_device(device):
        raise FormatError(f"{device} is not a block device")
    if force:
        return
    try:
        already = is_luks(device)
    except (SubprocessTimeout, OSError) as exc:
        raise FormatError(f"cannot probe {device} for a LUKS header: {exc}") from exc
    if already:
        raise FormatError(f"{device} already contains a LUKS header; refusing to format it")


def format_device(device: str, key: Key, force: bool = False) -> None:
    """luksFormat ``device`` with the key's passphrase, then set its UUID.

    The UUID step only runs once luksFormat has exited successfully.
    """

    if not key.unwrapped:
        raise FormatError(f"key {key.uuid} holds no plaintext passphrase")
    check_formattable(device, force)

    cmd = ["cryptsetup", "--batch-mode", "luksFormat", "--type", "luks2", "--key-file", "-", device]
    info("luks.format", device=device, uuid=key.uuid)
    try:
        res = run_secret(cmd, key.data_key.plain, timeout=FORMAT_TIMEOUT)
    except (SubprocessTimeout, OSError) as exc:
        raise FormatError(f"cryptsetup luksFormat {device} failed: {exc}") from exc
    finally:
        key.wipe()
    if res.rc != 0:
        raise FormatError(f"cryptsetup luksFormat {device} failed: rc={res.rc}")
    udev_settle()

    set_uuid(device, key.uuid)


def set_uuid(device: str, uuid: str) -> None:
    cmd = ["cryptsetup", "luksUUID", device, "--uuid", uuid]
    try:
        res = run_secret(cmd, UUID_CONFIRMATION, timeout=UUID_TIMEOUT)
    except (SubprocessTimeout, OSError) as exc:
        raise UUIDBindingError(device, uuid, str(exc)) from exc
    if res.rc != 0:
        raise UUIDBindingError(device, uuid, f"rc={res.rc}")
    udev_settle()
    info("luks.uuid_set", device=device, uuid=uuid)


def unlock(key: Key, authority: KeyAuthority, by_uuid_dir: str = DEV_BY_UUID) -> str:
    """Open the LUKS device whose UUID matches ``key`` and return the mapper name."""

    try:
        device = dev_from_uuid(key.uuid, by_uuid_dir)
        name = mapper_name(device)
    except DeviceError as exc:
        raise UnlockError(str(exc)) from exc

    if os.path.exists(os.path.join(MAPPER_DIR, name)):
        info("luks.already_open", device=device, name=name, uuid=key.uuid)
        key.wipe()
        return name

    try:
        if not key.unwrapped:
            decrypt_key(authority, key)
    except AuthorityError as exc:
        raise UnlockError(f"could not decrypt key for {key.uuid}: {exc}") from exc

    cmd = ["cryptsetup", "open", "--type", "luks", "--key-file", "-", device, name]
    info("luks.open", device=device, name=name, uuid=key.uuid)
    try:
        res = run_secret(cmd, key.data_key.plain, timeout=OPEN_TIMEOUT)
    except (SubprocessTimeout, OSError) as exc:
        raise UnlockError(f"cryptsetup open {device} failed: {exc}") from exc
    finally:
        key.wipe()
    if res.rc != 0:
        raise UnlockError(f"cryptsetup open {device} failed: rc={res.rc}")
    udev_settle()
    return name


def unlock_all(
        root: str,
        fqdn: str,
        authority: KeyAuthority,
        by_uuid_dir: str = DEV_BY_UUID,
) -> List[Tuple[str, str | AwsKmsLuksError]]:
    """Try to unlock every cached key of ``fqdn``, one device at a time.

    Each record produces one ``(uuid, mapper_name_or_error)`` entry; a corrupt
    record or failed unlock never stops the remaining attempts.
    """

    outcomes: List[Tuple[str, str | AwsKmsLuksError]] = []
    for uuid, item in enumerate_all(root, fqdn):
        if isinstance(item, AwsKmsLuksError):
            outcomes.append((uuid, item))
            continue
        try:
            name = unlock(item, authority, by_uuid_dir)
        except AwsKmsLuksError as exc:
            error("luks.unlock_failed", uuid=uuid, error=str(exc))
            outcomes.append((uuid, exc))
            continue
        outcomes.append((uuid, name))
    return outcomes
