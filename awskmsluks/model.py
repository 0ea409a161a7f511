from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict


@dataclass(frozen=True)
class BuildInfo:
    version: str
    build_hash: str | None = None
    build_time: str | None = None


@dataclass(frozen=True)
class Config:
    cmk_arn: str
    production: bool
    key_archive_bucket: str


@dataclass(frozen=True)
class EncryptionContext:
    fqdn: str
    production: bool
    uuid: str

    def to_kms(self) -> Dict[str, str]:
        """Return the context map sent to KMS as additional authenticated data."""

        return {
            "fqdn": self.fqdn,
            "production": "true" if self.production else "false",
            "uuid": self.uuid,
        }


_FRACTION_RE = re.compile(r"\.(\d+)")


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(text: str) -> datetime:
    # RFC3339 writers may emit nanoseconds; datetime keeps microseconds.
    normalized = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text.strip(), count=1)
    if normalized.endswith(("Z", "z")):
        normalized = normalized[:-1] + "+00:00"
    value = datetime.fromisoformat(normalized)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class DataKey:
    encrypted: str
    created: datetime
    plain: bytearray = field(default_factory=bytearray, repr=False)

    def wipe(self) -> None:
        for idx in range(len(self.plain)):
            self.plain[idx] = 0
        del self.plain[:]


@dataclass
class Key:
    """A data key together with the context it is bound to.

    ``data_key.plain`` only lives in memory between generation/unwrap and the
    moment it is streamed to cryptsetup.  Serialized forms never carry it.
    """

    encryption_context: EncryptionContext
    cmk_arn: str
    data_key: DataKey

    @property
    def uuid(self) -> str:
        return self.encryption_context.uuid

    @property
    def fqdn(self) -> str:
        return self.encryption_context.fqdn

    @property
    def unwrapped(self) -> bool:
        return bool(self.data_key.plain)

    @property
    def complete(self) -> bool:
        return bool(self.data_key.encrypted and self.cmk_arn)

    def wipe(self) -> None:
        self.data_key.wipe()

    def to_dict(self) -> Dict[str, Any]:
        ec = self.encryption_context
        return {
            "EncryptionContext": {
                "FQDN": ec.fqdn,
                "Production": ec.production,
                "UUID": ec.uuid,
            },
            "CMKARN": self.cmk_arn,
            "DataKey": {
                "Encrypted": self.data_key.encrypted,
                "Created": format_timestamp(self.data_key.created),
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Key":
        if not isinstance(payload, dict):
            raise ValueError("key record must be a JSON object")
        ec = payload["EncryptionContext"]
        dk = payload["DataKey"]
        if not isinstance(ec, dict) or not isinstance(dk, dict):
            raise ValueError("EncryptionContext and DataKey must be JSON objects")
        if not isinstance(ec["Production"], bool):
            raise ValueError("EncryptionContext.Production must be a boolean")
        for name, value in (("FQDN", ec["FQDN"]), ("UUID", ec["UUID"]),
                            ("CMKARN", payload["CMKARN"]), ("Encrypted", dk["Encrypted"])):
            if not isinstance(value, str):
                raise ValueError(f"{name} must be a string")
        return cls(
            encryption_context=EncryptionContext(
                fqdn=ec["FQDN"],
                production=ec["Production"],
                uuid=ec["UUID"],
            ),
            cmk_arn=payload["CMKARN"],
            data_key=DataKey(
                encrypted=dk["Encrypted"],
                created=parse_timestamp(str(dk["Created"])),
            ),
        )

    @classmethod
    def from_json(cls, text: str | bytes) -> "Key":
        return cls.from_dict(json.loads(text))
