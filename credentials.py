# credentials.py
import contextlib
import getpass
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Mapping, Optional

from device import AUTH_KEY, AUTH_PASSWORD, AUTH_UNSET
from errors import CredentialError, PromptAborted
from utils import sanitize_ip, strip_quotes

logger = logging.getLogger(__name__)

DEFAULT_KEY_PATH = "~/.ssh/id_rsa"

MODE_AUTO = "auto"
FORCED_MODES = (AUTH_KEY, AUTH_PASSWORD, MODE_AUTO)


@dataclass
class CredentialBundle:
    username: str
    secret: str = ""
    key_path: str = ""
    auth_mode: str = AUTH_PASSWORD

    @property
    def uses_key(self) -> bool:
        return self.auth_mode == AUTH_KEY

    def clear(self) -> None:
        self.username = ""
        self.secret = ""
        self.key_path = ""

    def __repr__(self) -> str:
        return (f"CredentialBundle(username={self.username!r}, secret={'***' if self.secret else ''!r}, "
                f"key_path={self.key_path!r}, auth_mode={self.auth_mode!r})")


class _EnvLookup:
    """Reads per-device values first, then global ones."""

    def __init__(self, ip: str, environ: Mapping[str, str]):
        self.suffix = sanitize_ip(ip)
        self.environ = environ

    def device(self, name: str) -> str:
        return self.environ.get(f"{name}_{self.suffix}", "")

    def get(self, name: str) -> str:
        return self.device(name) or self.environ.get(name, "")


def _auth_mode(env: _EnvLookup, hint: Optional[str]) -> str:
    forced = env.environ.get("F5_AUTH_MODE", MODE_AUTO).strip().lower() or MODE_AUTO
    if forced not in FORCED_MODES:
        raise CredentialError(f"F5_AUTH_MODE must be one of {', '.join(FORCED_MODES)}, got {forced!r}")
    if forced != MODE_AUTO:
        return forced

    # Per-device values decide before global ones
    for lookup in (env.device, env.environ.get):
        if lookup("F5_PASS"):
            return AUTH_PASSWORD
        if lookup("F5_SSH_KEY"):
            return AUTH_KEY
    if hint == AUTH_KEY:
        return AUTH_KEY
    return AUTH_PASSWORD


def resolve(ip: str, auth_hint: Optional[str] = AUTH_UNSET,
            environ: Optional[Mapping[str, str]] = None,
            ask: Callable[[str], str] = input,
            ask_secret: Callable[[str], str] = getpass.getpass,
            default_key_path: str = DEFAULT_KEY_PATH) -> CredentialBundle:
    """Resolves username and secret (or key path) for one device.

    Each value comes from the per-device environment, then the global
    environment, then a prompt. The username is resolved again on every call.

    Raises:
        PromptAborted: the operator entered nothing for a required prompt.
        CredentialError: the password is empty or the key file does not exist.
    """
    env = _EnvLookup(ip, os.environ if environ is None else environ)
    mode = _auth_mode(env, auth_hint)

    username = env.get("F5_USER")
    prompted = not username
    if prompted:
        username = ask(f"Username for {ip}: ").strip()
        if not username:
            raise PromptAborted(f"No username entered for {ip}")

    if mode == AUTH_KEY:
        key_path = strip_quotes(env.get("F5_SSH_KEY"))
        if not key_path and prompted:
            key_path = strip_quotes(ask(f"SSH key path [{default_key_path}]: "))
        key_path = str(Path(key_path or default_key_path).expanduser())
        if not Path(key_path).is_file():
            raise CredentialError(f"SSH key not found: {key_path}")
        logger.debug(f"Using key authentication for {ip} with {key_path}")
        return CredentialBundle(username=username, secret="", key_path=key_path, auth_mode=AUTH_KEY)

    secret = env.get("F5_PASS")
    if not secret:
        secret = ask_secret(f"Password for {username}@{ip}: ")
    if not secret:
        raise CredentialError(f"Password required for {ip}")
    return CredentialBundle(username=username, secret=secret, auth_mode=AUTH_PASSWORD)


@contextlib.contextmanager
def credentials_for(ip: str, **kwargs) -> Iterator[CredentialBundle]:
    """Resolves credentials for one device operation and wipes them afterwards."""
    bundle = resolve(ip, **kwargs)
    try:
        yield bundle
    finally:
        bundle.clear()
