# transports/__init__.py
import logging
from typing import Any, Dict, Optional

from credentials import CredentialBundle
from errors import OperationUnsupported
from license_info import LicenseInfo

from .base import BaseTransport
from .rest import ManagementApiTransport
from .ssh import LICENSE_FILE, RemoteShellTransport

logger = logging.getLogger(__name__)


def get_transport(credentials: CredentialBundle, timeouts: Optional[Dict[str, float]] = None,
                  license_file: Optional[str] = None) -> BaseTransport:
    """Transport factory: key authentication goes over SSH, everything else over REST."""
    if credentials.uses_key:
        return RemoteShellTransport(timeouts, license_file=license_file or LICENSE_FILE)
    return ManagementApiTransport(timeouts)


class FallbackTransport(BaseTransport):
    """Prefers the management API and falls back to the shell when the API lacks an operation.

    Only OperationUnsupported triggers the fallback; auth, reachability and
    restart failures propagate from the API as they are.
    """

    name = "rest+ssh"

    def __init__(self, primary: BaseTransport, secondary: BaseTransport):
        self.primary = primary
        self.secondary = secondary

    @classmethod
    def for_credentials(cls, credentials: CredentialBundle, timeouts: Optional[Dict[str, float]] = None,
                        license_file: Optional[str] = None) -> BaseTransport:
        shell = RemoteShellTransport(timeouts, license_file=license_file or LICENSE_FILE)
        if credentials.uses_key:
            return shell
        return cls(ManagementApiTransport(timeouts), shell)

    def _call(self, operation: str, ip: str, *args: Any) -> Any:
        try:
            return getattr(self.primary, operation)(ip, *args)
        except OperationUnsupported as e:
            logger.warning(f"{self.primary.name} cannot {operation.replace('_', ' ')} on {ip} ({e.detail}); "
                           f"trying {self.secondary.name}")
            return getattr(self.secondary, operation)(ip, *args)

    def fetch_license_info(self, ip: str, credentials: CredentialBundle,
                           timeout: Optional[float] = None) -> LicenseInfo:
        return self.primary.fetch_license_info(ip, credentials, timeout)

    def get_dossier(self, ip: str, credentials: CredentialBundle, regkey: str,
                    addon_key: Optional[str] = None) -> str:
        return self._call("get_dossier", ip, credentials, regkey, addon_key)

    def install_license(self, ip: str, credentials: CredentialBundle, regkey: str) -> None:
        return self._call("install_license", ip, credentials, regkey)

    def revoke_license(self, ip: str, credentials: CredentialBundle) -> None:
        return self._call("revoke_license", ip, credentials)
