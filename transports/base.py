# transports/base.py
from abc import ABC, abstractmethod
from typing import Optional

from credentials import CredentialBundle
from license_info import LicenseInfo


class BaseTransport(ABC):
    """Abstract base class for reading and changing licenses on a device."""

    name = "base"

    @abstractmethod
    def fetch_license_info(self, ip: str, credentials: CredentialBundle,
                           timeout: Optional[float] = None) -> LicenseInfo:
        """Retrieves the installed license.

        Returns:
            A LicenseInfo. An empty ``expiry`` means a perpetual license.

        Raises:
            Unreachable, AuthFailed, ServiceUnavailable, Unparseable, Unlicensed
        """

    @abstractmethod
    def get_dossier(self, ip: str, credentials: CredentialBundle, regkey: str,
                    addon_key: Optional[str] = None) -> str:
        """Generates the device dossier for ``regkey`` (and an optional add-on key)."""

    @abstractmethod
    def install_license(self, ip: str, credentials: CredentialBundle, regkey: str) -> None:
        """Activates ``regkey`` on the device; services restart afterwards."""

    @abstractmethod
    def revoke_license(self, ip: str, credentials: CredentialBundle) -> None:
        """Releases the license so it can be moved to another device."""
