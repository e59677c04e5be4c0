# utils.py
import contextlib
import logging
import os
import re
import shlex
import signal
import socket
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

import paramiko

from errors import AuthFailed, RemoteCommandError, ServiceUnavailable, Unreachable

logger = logging.getLogger(__name__)
history = logging.getLogger("history")

_watchdog_warned = False


def log_event(event: str) -> None:
    """Records a discrete history event; formatting and storage belong to the handlers."""
    history.info(event)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def clean_host(value: str) -> str:
    """Strips a scheme, path and port from a pasted address."""
    host = value.strip()
    host = re.sub(r"^https?://", "", host, flags=re.IGNORECASE)
    host = host.split("/", 1)[0]
    return host.split(":", 1)[0]


def is_valid_host(host: str) -> bool:
    """Checks that a device identifier only holds hostname characters."""
    return bool(host) and re.fullmatch(r"[A-Za-z0-9._-]+", host) is not None


def sanitize_ip(ip: str) -> str:
    """Makes an identifier usable as an environment variable suffix."""
    return re.sub(r"[^A-Za-z0-9]", "_", ip)


def strip_quotes(value: Optional[str]) -> str:
    """Removes surrounding whitespace and one pair of matching quotes."""
    value = (value or "").strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return value


def wrap_shell_command(command: str) -> str:
    """Wraps a command so it runs whether the login shell is tmsh or bash."""
    return f"bash -c {shlex.quote(command)}"


@contextlib.contextmanager
def watchdog(seconds: Optional[float]) -> Iterator[None]:
    """Raises TimeoutError in the block once ``seconds`` have passed.

    Uses SIGALRM, which only exists on POSIX and only fires in the main
    thread. Elsewhere the block runs without a process-level bound.
    """
    global _watchdog_warned
    usable = (
        seconds
        and hasattr(signal, "setitimer")
        and threading.current_thread() is threading.main_thread()
    )
    if not usable:
        if seconds and not _watchdog_warned:
            logger.warning("No process-level timeout available here; external calls may run unbounded.")
            _watchdog_warned = True
        yield
        return

    def _expired(signum, frame):
        raise TimeoutError(f"timed out after {seconds}s")

    previous = signal.signal(signal.SIGALRM, _expired)
    signal.setitimer(signal.ITIMER_REAL, seconds)
    try:
        yield
    finally:
        signal.setitimer(signal.ITIMER_REAL, 0)
        signal.signal(signal.SIGALRM, previous)


@contextlib.contextmanager
def operator_lock(data_dir: Path) -> Iterator[Path]:
    """Marks the data directory as in use for the lifetime of the block.

    This is advisory only: a stale lock is reported, not enforced.
    """
    lock_file = Path(data_dir).expanduser() / ".lock"
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    if lock_file.exists():
        logger.warning(f"Lock file {lock_file} exists; another session may be running.")
    lock_file.write_text(str(os.getpid()), encoding="utf-8")
    try:
        yield lock_file
    finally:
        with contextlib.suppress(FileNotFoundError):
            lock_file.unlink()


class SSHClient:
    """A utility class for handling SSH connections and command execution."""

    def __init__(self, hostname: str, username: str, password: Optional[str] = None,
                 key_filename: Optional[str] = None, timeout: int = 10):
        self.hostname = hostname
        self.username = username
        self.password = password
        self.key_filename = key_filename
        self.timeout = timeout
        self.client: Optional[paramiko.SSHClient] = None

    def connect(self) -> None:
        """Connects with the key file if one is set, otherwise with the password.

        Raises:
            AuthFailed, ServiceUnavailable, Unreachable
        """
        self.client = paramiko.SSHClient()
        self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            if self.key_filename:
                self.client.connect(hostname=self.hostname, username=self.username,
                                    key_filename=self.key_filename, timeout=self.timeout,
                                    banner_timeout=self.timeout, auth_timeout=self.timeout,
                                    look_for_keys=False, allow_agent=False)
            else:
                self.client.connect(hostname=self.hostname, username=self.username,
                                    password=self.password, timeout=self.timeout,
                                    banner_timeout=self.timeout, auth_timeout=self.timeout,
                                    look_for_keys=False, allow_agent=False)
        except paramiko.AuthenticationException as e:
            self.close()
            raise AuthFailed(self.hostname, str(e) or "invalid credentials") from e
        except paramiko.SSHException as e:
            self.close()
            # Best effort: sshd accepts TCP but drops the banner while services restart
            if "banner" in str(e).lower():
                raise ServiceUnavailable(self.hostname, str(e)) from e
            raise Unreachable(self.hostname, str(e)) from e
        except (socket.timeout, TimeoutError, OSError) as e:
            self.close()
            raise Unreachable(self.hostname, str(e) or type(e).__name__) from e
        logger.debug(f"Connected to {self.username}@{self.hostname}")

    def execute_command(self, command: str, timeout: Optional[float] = None, check: bool = False) -> str:
        """Executes a command on the connected SSH server and returns its stdout."""
        if not self.client:
            raise RuntimeError("SSH client not connected. Call connect() first.")
        try:
            stdin, stdout, stderr = self.client.exec_command(command, timeout=timeout or self.timeout)
            output = stdout.read().decode(errors="replace")
            error = stderr.read().decode(errors="replace").strip()
            exit_status = stdout.channel.recv_exit_status()
        except paramiko.ChannelException:
            raise
        except (socket.timeout, TimeoutError) as e:
            raise Unreachable(self.hostname, f"command timed out: {command}") from e
        except (paramiko.SSHException, OSError) as e:
            raise Unreachable(self.hostname, str(e)) from e
        if error:
            logger.warning(f"Command '{command}' returned error: {error}")
        if check and exit_status != 0:
            raise RemoteCommandError(self.hostname, f"'{command}' exited {exit_status}: {error}")
        return output

    def put_file(self, local_path: str, remote_path: str) -> None:
        """Copies a local file to the device over SFTP."""
        if not self.client:
            raise RuntimeError("SSH client not connected. Call connect() first.")
        try:
            sftp = self.client.open_sftp()
        except paramiko.ChannelException:
            raise
        except (paramiko.SSHException, OSError) as e:
            raise Unreachable(self.hostname, f"SFTP unavailable: {e}") from e
        try:
            sftp.put(local_path, remote_path)
        except (paramiko.SSHException, OSError) as e:
            raise RemoteCommandError(self.hostname, f"upload to {remote_path} failed: {e}") from e
        finally:
            sftp.close()

    def close(self):
        """Closes the SSH connection."""
        if self.client:
            self.client.close()
            self.client = None
