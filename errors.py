# errors.py
from typing import Optional


class LicenseManagerError(Exception):
    """Base class for every error raised by the license manager."""


class ValidationError(LicenseManagerError):
    """Malformed device identifier or missing argument."""


class DeviceNotFound(ValidationError):
    def __init__(self, ip: str):
        super().__init__(f"Device {ip} not found")
        self.ip = ip


class CredentialError(LicenseManagerError):
    """A required credential field is empty or the key file is missing."""


class PromptAborted(CredentialError):
    """The operator left a required prompt empty."""


class StoreError(LicenseManagerError):
    """The device record file could not be written."""


class TransportError(LicenseManagerError):
    """Base class for failures talking to a device."""

    reason = "failed"

    def __init__(self, ip: str, detail: Optional[str] = None):
        self.ip = ip
        self.detail = detail or ""
        message = f"{ip}: {self.reason}"
        if self.detail:
            message = f"{message} ({self.detail})"
        super().__init__(message)


class Unreachable(TransportError):
    reason = "unreachable"


class AuthFailed(TransportError):
    reason = "auth failed"


class ServiceUnavailable(TransportError):
    reason = "restarting"


class Unparseable(TransportError):
    reason = "no license data"


class Unlicensed(TransportError):
    reason = "unlicensed"


class OperationUnsupported(TransportError):
    """The management API does not offer the requested operation."""

    reason = "unsupported"


class RemoteCommandError(TransportError):
    """A remote step exited non-zero."""

    reason = "remote command failed"


class VerificationTimeout(LicenseManagerError, TimeoutError):
    """The device did not report a usable license within the wait window."""

    def __init__(self, ip: str, waited: float):
        super().__init__(f"{ip}: device not ready after {waited:g}s")
        self.ip = ip
        self.waited = waited
