# transports/ssh.py
import logging
import re
import shlex
from typing import Callable, Dict, Optional

from credentials import CredentialBundle
from errors import RemoteCommandError, Unlicensed, Unparseable, Unreachable
from license_info import (LicenseInfo, parse_license_file_end_date,
                          parse_tmsh_license, reports_no_license)
from utils import SSHClient, watchdog, wrap_shell_command

from .base import BaseTransport

logger = logging.getLogger(__name__)

# tmsh reports a missing license on stderr
SHOW_LICENSE_CMD = "tmsh show sys license 2>&1"
LICENSE_FILE = "/config/bigip.license"

DEFAULT_TIMEOUTS = {"connect": 10, "license": 30, "dossier": 30, "install": 60}


def make_ssh_client(ip: str, credentials: CredentialBundle, timeout: int) -> SSHClient:
    """Builds an unconnected SSHClient for the bundle's auth mode."""
    if credentials.uses_key:
        return SSHClient(hostname=ip, username=credentials.username,
                         key_filename=credentials.key_path, timeout=timeout)
    return SSHClient(hostname=ip, username=credentials.username,
                     password=credentials.secret, timeout=timeout)


class RemoteShellTransport(BaseTransport):
    """Reads and changes licenses through tmsh over an SSH command session."""

    name = "ssh"

    def __init__(self, timeouts: Optional[Dict[str, float]] = None,
                 license_file: str = LICENSE_FILE,
                 client_factory: Callable[[str, CredentialBundle, int], SSHClient] = make_ssh_client):
        self.timeouts = {**DEFAULT_TIMEOUTS, **(timeouts or {})}
        self.license_file = license_file
        self.client_factory = client_factory

    def _run(self, ip: str, credentials: CredentialBundle, command: str, kind: str,
             timeout: Optional[float] = None) -> str:
        """Opens a session, runs one wrapped command and closes the session."""
        seconds = timeout or self.timeouts[kind]
        client = self.client_factory(ip, credentials, int(self.timeouts["connect"]))
        try:
            with watchdog(self.timeouts["connect"] + seconds):
                client.connect()
                return client.execute_command(wrap_shell_command(command), timeout=seconds)
        except TimeoutError as e:
            raise Unreachable(ip, f"'{command}' timed out after {seconds}s") from e
        finally:
            client.close()

    def fetch_license_info(self, ip: str, credentials: CredentialBundle,
                           timeout: Optional[float] = None) -> LicenseInfo:
        output = self._run(ip, credentials, SHOW_LICENSE_CMD, "license", timeout)
        if reports_no_license(output):
            raise Unlicensed(ip, "Can't load license")

        fields = parse_tmsh_license(output)
        if not fields["regkey"]:
            raise Unparseable(ip, "no Registration Key in tmsh output")

        if not fields["expiry"]:
            license_file = self._run(ip, credentials,
                                     f"grep -i 'License end date' {shlex.quote(self.license_file)}",
                                     "license", timeout)
            fields["expiry"] = parse_license_file_end_date(license_file)
            if not fields["expiry"]:
                logger.debug(f"No end date reported by {ip}; treating the license as perpetual")
        return LicenseInfo(**fields)

    def get_dossier(self, ip: str, credentials: CredentialBundle, regkey: str,
                    addon_key: Optional[str] = None) -> str:
        command = f"get_dossier -b {shlex.quote(regkey)}"
        if addon_key:
            command += f" -a {shlex.quote(addon_key)}"
        output = self._run(ip, credentials, command, "dossier")
        match = re.search(r"[a-f0-9]{20,}", output)
        if not match:
            raise Unparseable(ip, "get_dossier returned no dossier")
        return match.group(0)

    def install_license(self, ip: str, credentials: CredentialBundle, regkey: str) -> None:
        output = self._run(ip, credentials,
                           f"tmsh install sys license registration-key {shlex.quote(regkey)}", "install")
        if re.search(r"\berror\b|failed", output, re.IGNORECASE):
            raise RemoteCommandError(ip, output.strip().splitlines()[-1])
        logger.info(f"License install issued on {ip}")

    def revoke_license(self, ip: str, credentials: CredentialBundle) -> None:
        output = self._run(ip, credentials, "tmsh revoke sys license", "install")
        if re.search(r"\berror\b|failed", output, re.IGNORECASE):
            raise RemoteCommandError(ip, output.strip().splitlines()[-1])
        logger.info(f"License revoke issued on {ip}")
