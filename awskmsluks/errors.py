"""Error taxonomy for key lifecycle and device orchestration failures."""

from __future__ import annotations


class AwsKmsLuksError(Exception):
    """Base class for every failure raised by this package."""


class ConfigError(AwsKmsLuksError):
    pass


class AuthorityError(AwsKmsLuksError):
    pass


class AuthorityReferenceError(AuthorityError):
    """The CMK ARN is malformed or carries no region."""


class AuthorityCallError(AuthorityError):
    """KMS rejected or failed a GenerateDataKey/Decrypt call."""


class KeyStoreError(AwsKmsLuksError):
    pass


class StoreError(KeyStoreError):
    def __init__(self, message: str, *, archived: bool = False, hint: str | None = None):
        super().__init__(message)
        self.archived = archived
        self.hint = hint

    def __str__(self) -> str:
        base = super().__str__()
        if self.hint:
            return f"{base}\n{self.hint}"
        return base


class KeyNotFoundError(KeyStoreError):
    pass


class KeyParseError(KeyStoreError):
    pass


class SubprocessTimeout(AwsKmsLuksError):
    def __init__(self, cmd, timeout: float):
        super().__init__(f"{cmd[0] if cmd else 'command'} did not exit within {timeout:.0f}s")
        self.cmd = list(cmd)
        self.timeout = timeout


class DeviceError(AwsKmsLuksError):
    pass


class FormatError(DeviceError):
    pass


class UUIDBindingError(DeviceError):
    """luksFormat succeeded but the volume UUID could not be set."""

    def __init__(self, device: str, uuid: str, reason: str):
        self.device = device
        self.uuid = uuid
        self.remediation = f"cryptsetup luksUUID {device} --uuid {uuid}"
        super().__init__(
            f"could not set LUKS UUID on {device}: {reason}\n"
            f"IMPORTANT: {device} is already formatted. Update the volume's UUID with:\n"
            f"{self.remediation}"
        )


class UnlockError(DeviceError):
    pass
