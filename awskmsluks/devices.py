"""Block device checks and by-UUID resolution."""
from __future__ import annotations

import os
import stat

from .errors import DeviceError
from .executil import trace
from .paths import DEV_BY_UUID


def is_block_device(path: str) -> bool:
    try:
        st = os.stat(path)
    except OSError:
        return False
    return stat.S_ISBLK(st.st_mode)


def dev_from_uuid(uuid: str, by_uuid_dir: str = DEV_BY_UUID) -> str:
    """Resolve ``uuid`` to its block device through the udev by-uuid links.

    Link targets are usually relative (``../../sdb1``); they are re-rooted
    under ``by_uuid_dir`` and normalised to an absolute path.
    """

    if not uuid or "/" in uuid or uuid in (".", ".."):
        raise DeviceError(f"invalid device UUID {uuid!r}")
    link = os.path.join(by_uuid_dir, uuid)
    try:
        target = os.readlink(link)
    except OSError as exc:
        raise DeviceError(f"no block device found for UUID {uuid} ({link}): {exc.strerror or exc}") from exc
    if not os.path.isabs(target):
        target = os.path.join(by_uuid_dir, target)
    dev = os.path.abspath(target)
    trace("devices.dev_from_uuid", uuid=uuid, device=dev)
    return dev


def mapper_name(device: str) -> str:
    """Name of the /dev/mapper entry created when ``device`` is opened."""

    base = os.path.basename(device.rstrip("/"))
    if not base:
        raise DeviceError(f"cannot derive a mapper name from {device!r}")
    return f"{base}_crypt"
