# session.py
import logging
from typing import Callable, Optional

import paramiko

from credentials import CredentialBundle
from errors import Unreachable
from transports.ssh import make_ssh_client
from utils import SSHClient, watchdog, wrap_shell_command

logger = logging.getLogger(__name__)


class RemoteSession:
    """One authenticated SSH connection shared by the steps of a multi-step change.

    When the device refuses another channel on the shared connection, or reuse
    is switched off, each step opens its own connection with the same
    credentials instead.

    Use as a context manager so ``close()`` runs even when a step fails::

        with RemoteSession(ip, creds) as session:
            session.run("cp /config/bigip.license /var/tmp/bigip.license.bak")
            session.transfer(local_file, "/config/bigip.license")
            session.run("reloadlic")
    """

    def __init__(self, ip: str, credentials: CredentialBundle, timeout: int = 10,
                 command_timeout: Optional[float] = 60, reuse: bool = True,
                 client_factory: Callable[[str, CredentialBundle, int], SSHClient] = make_ssh_client):
        self.ip = ip
        self.credentials = credentials
        self.timeout = timeout
        self.command_timeout = command_timeout
        self.reuse = reuse
        self.client_factory = client_factory
        self._client: Optional[SSHClient] = None

    @property
    def shared(self) -> bool:
        return self._client is not None

    def open(self) -> "RemoteSession":
        if not self.reuse:
            logger.warning(f"SSH session reuse disabled; each step to {self.ip} authenticates separately")
            return self
        client = self.client_factory(self.ip, self.credentials, self.timeout)
        client.connect()
        self._client = client
        logger.debug(f"Opened shared SSH session to {self.ip}")
        return self

    def _degrade(self, error: Exception) -> None:
        logger.warning(f"{self.ip} refused to reuse the SSH session ({error}); "
                       "falling back to one connection per step")
        self.close()
        self.reuse = False

    def _one_shot(self, step: Callable[[SSHClient], object]):
        client = self.client_factory(self.ip, self.credentials, self.timeout)
        try:
            client.connect()
            return step(client)
        finally:
            client.close()

    def _attempt(self, step: Callable[[SSHClient], object]):
        if self._client is not None:
            try:
                return step(self._client)
            except paramiko.ChannelException as e:
                self._degrade(e)
        return self._one_shot(step)

    def _step(self, step: Callable[[SSHClient], object]):
        seconds = self.timeout + (self.command_timeout or self.timeout)
        try:
            with watchdog(seconds):
                return self._attempt(step)
        except TimeoutError as e:
            raise Unreachable(self.ip, f"step timed out after {seconds}s") from e

    def run(self, command: str, check: bool = True) -> str:
        """Runs a command, wrapped for both login shells, and returns its output."""
        logger.debug(f"[{self.ip}] $ {command}")
        return self._step(lambda client: client.execute_command(
            wrap_shell_command(command), timeout=self.command_timeout, check=check))

    def transfer(self, local_path: str, remote_path: str) -> None:
        logger.debug(f"[{self.ip}] upload {local_path} -> {remote_path}")
        self._step(lambda client: client.put_file(local_path, remote_path))

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.debug(f"Closed SSH session to {self.ip}")

    def __enter__(self) -> "RemoteSession":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
