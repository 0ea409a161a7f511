"""Configuration file loading."""

from __future__ import annotations

import json

from .errors import ConfigError
from .model import Config
from .paths import config_path


def load_config(path: str | None = None) -> Config:
    path = path or config_path()
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = fh.read()
    except OSError as exc:
        raise ConfigError(f"cannot read config file ({path}): {exc}") from exc
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"configuration file ({path}) could not be parsed: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"configuration file ({path}) must contain a JSON object")

    cmk_arn = payload.get("CMKARN")
    bucket = payload.get("KeyArchiveBucket")
    production = payload.get("Production", False)
    if not isinstance(cmk_arn, str) or not cmk_arn:
        raise ConfigError(f"configuration file ({path}) is missing CMKARN")
    if not isinstance(bucket, str) or not bucket:
        raise ConfigError(f"configuration file ({path}) is missing KeyArchiveBucket")
    if not isinstance(production, bool):
        raise ConfigError(f"configuration file ({path}): Production must be true or false")
    return Config(cmk_arn=cmk_arn, production=production, key_archive_bucket=bucket)
