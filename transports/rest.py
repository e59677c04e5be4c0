# transports/rest.py
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
import urllib3

from credentials import CredentialBundle
from errors import (AuthFailed, CredentialError, OperationUnsupported,
                    ServiceUnavailable, Unlicensed, Unparseable, Unreachable)
from license_info import LicenseInfo, reports_no_license
from utils import watchdog

from .base import BaseTransport

logger = logging.getLogger(__name__)

# Devices ship self-signed certificates
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

LOGIN_PATH = "/mgmt/shared/authn/login"
LICENSE_PATH = "/mgmt/tm/sys/license"
DOSSIER_PATH = "/mgmt/tm/shared/licensing/dossier"

AUTH_FAILED_PATTERN = re.compile(r"unauthorized|authentication failed|invalid.*credentials", re.IGNORECASE)
# Best effort; confirm against real firmware before adding phrases
UNAVAILABLE_PATTERN = re.compile(r"service unavailable|restarting|try again later", re.IGNORECASE)
UNSUPPORTED_PATTERN = re.compile(r"not registered|not supported|unsupported|not found", re.IGNORECASE)

DEFAULT_TIMEOUTS = {"connect": 10, "auth": 15, "license": 15, "dossier": 30, "install": 60}


@dataclass
class LicenseEntry:
    path: str
    fields: Dict[str, str] = field(default_factory=dict)

    def get(self, name: str) -> str:
        return self.fields.get(name, "")


def license_entries(payload: Dict[str, Any]) -> List[LicenseEntry]:
    """Flattens the ``entries`` map of a license response into typed entries."""
    entries = payload.get("entries") if isinstance(payload, dict) else None
    if not isinstance(entries, dict):
        return []
    result = []
    for path, value in entries.items():
        nested = (value or {}).get("nestedStats", {}).get("entries", {}) if isinstance(value, dict) else {}
        fields = {}
        for name, stat in nested.items():
            if isinstance(stat, dict) and "description" in stat:
                fields[name] = str(stat["description"])
            elif isinstance(stat, dict) and "value" in stat:
                fields[name] = str(stat["value"])
        result.append(LicenseEntry(path=path, fields=fields))
    return result


def is_license_entry(entry: LicenseEntry) -> bool:
    return "/license/" in entry.path


class ManagementApiTransport(BaseTransport):
    """Talks to the iControl REST API over HTTPS."""

    name = "rest"

    def __init__(self, timeouts: Optional[Dict[str, float]] = None,
                 session: Optional[requests.Session] = None):
        self.timeouts = {**DEFAULT_TIMEOUTS, **(timeouts or {})}
        self.session = session or requests.Session()
        self.session.verify = False

    def _timeout(self, kind: str, override: Optional[float] = None):
        return (self.timeouts["connect"], override or self.timeouts[kind])

    def _request(self, ip: str, method: str, path: str, kind: str,
                 timeout: Optional[float] = None, **kwargs) -> requests.Response:
        url = f"https://{ip}{path}"
        connect, read = self._timeout(kind, timeout)
        logger.debug(f"{method} {url}")
        try:
            with watchdog(connect + read):
                return self.session.request(method, url, timeout=(connect, read), **kwargs)
        except (requests.RequestException, TimeoutError) as e:
            raise Unreachable(ip, str(e) or type(e).__name__) from e

    @staticmethod
    def _json(response: requests.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _raise_for_error(self, ip: str, response: requests.Response, data: Dict[str, Any],
                         allow_unsupported: bool = False) -> None:
        """Maps an error response onto the transport failure it signals.

        Only mutations and dossier requests set ``allow_unsupported``. On the
        read path an unregistered endpoint means restjavad is still starting.
        """
        message = str(data.get("message") or data.get("error") or "")
        text = message or (response.text or "")
        if response.status_code == 401 or AUTH_FAILED_PATTERN.search(text):
            raise AuthFailed(ip, message or "invalid credentials")
        if response.status_code == 503 or UNAVAILABLE_PATTERN.search(text):
            raise ServiceUnavailable(ip, message or "services may be reloading")
        if not response.content:
            raise Unreachable(ip, f"empty response (HTTP {response.status_code})")
        if reports_no_license(text):
            raise Unlicensed(ip, message)
        if response.status_code in (400, 404, 405, 501) and UNSUPPORTED_PATTERN.search(text):
            if allow_unsupported:
                raise OperationUnsupported(ip, message)
            raise ServiceUnavailable(ip, message)
        raise Unparseable(ip, message or f"HTTP {response.status_code}")

    def login(self, ip: str, credentials: CredentialBundle, timeout: Optional[float] = None) -> str:
        """Exchanges username and password for a short-lived auth token."""
        if credentials.uses_key:
            raise CredentialError(f"{ip}: the management API needs password credentials")
        response = self._request(ip, "POST", LOGIN_PATH, "auth", timeout, json={
            "username": credentials.username,
            "password": credentials.secret,
            "loginProviderName": "tmos",
        })
        data = self._json(response)
        token = data.get("token")
        if isinstance(token, dict):
            token = token.get("token")
        if response.ok and token:
            return token
        self._raise_for_error(ip, response, data)

    def _authed(self, token: str) -> Dict[str, str]:
        return {"X-F5-Auth-Token": token, "Content-Type": "application/json"}

    def fetch_license_info(self, ip: str, credentials: CredentialBundle,
                           timeout: Optional[float] = None) -> LicenseInfo:
        token = self.login(ip, credentials, timeout)
        response = self._request(ip, "GET", LICENSE_PATH, "license", timeout, headers=self._authed(token))
        data = self._json(response)
        if not response.ok:
            self._raise_for_error(ip, response, data)

        matches = [entry for entry in license_entries(data) if is_license_entry(entry)]
        if not matches:
            if reports_no_license(str(data.get("message", ""))):
                raise Unlicensed(ip, data.get("message"))
            raise Unparseable(ip, "license data not ready")

        entry = matches[0]
        info = LicenseInfo(
            regkey=entry.get("registrationKey"),
            expiry=entry.get("licenseEndDate"),
            service_check_date=entry.get("serviceCheckDate"),
            licensed_on=entry.get("licensedOnDate"),
            platform_id=entry.get("platformId"),
        )
        if reports_no_license(info.regkey):
            raise Unlicensed(ip, info.regkey)
        if not info.regkey and not info.expiry:
            raise Unparseable(ip, "license entry has no usable fields")
        return info

    def get_dossier(self, ip: str, credentials: CredentialBundle, regkey: str,
                    addon_key: Optional[str] = None) -> str:
        token = self.login(ip, credentials)
        body = {"registrationKey": regkey}
        if addon_key:
            body["addOnKeys"] = [addon_key]
        response = self._request(ip, "POST", DOSSIER_PATH, "dossier", json=body, headers=self._authed(token))
        data = self._json(response)
        dossier = data.get("dossier")
        if response.ok and dossier:
            return str(dossier)
        self._raise_for_error(ip, response, data, allow_unsupported=True)

    def _license_command(self, ip: str, credentials: CredentialBundle, body: Dict[str, Any]) -> Dict[str, Any]:
        token = self.login(ip, credentials)
        response = self._request(ip, "POST", LICENSE_PATH, "install", json=body, headers=self._authed(token))
        data = self._json(response)
        if not response.ok or ("code" in data and int(data.get("code") or 0) >= 400):
            self._raise_for_error(ip, response, data, allow_unsupported=True)
        return data

    def install_license(self, ip: str, credentials: CredentialBundle, regkey: str) -> None:
        self._license_command(ip, credentials, {"command": "install", "registrationKey": regkey})
        logger.info(f"License install accepted by {ip}")

    def revoke_license(self, ip: str, credentials: CredentialBundle) -> None:
        self._license_command(ip, credentials, {"command": "revoke"})
        logger.info(f"License revoke accepted by {ip}")
