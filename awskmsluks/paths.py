from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "/etc/awskmsluks"
_DEFAULT_LOGS = "/var/log/awskmsluks"
DEV_BY_UUID = "/dev/disk/by-uuid"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the base directory holding the config file and key store.

    The location can be overridden via the ``AWSKMSLUKS_ROOT`` environment
    variable.  When unset we use ``/etc/awskmsluks``.
    """

    override = os.environ.get("AWSKMSLUKS_ROOT")
    if override:
        return _expand(override)
    return _DEFAULT_BASE


def config_path() -> str:
    return str(Path(base_path()) / "config.json")


def key_store_dir() -> str:
    return str(Path(base_path()) / "keys")


def logs_dir() -> str:
    override = os.environ.get("AWSKMSLUKS_LOG_DIR")
    if override:
        return _expand(override)
    return _DEFAULT_LOGS
