# license_info.py
"""Pure helpers that turn device output into registration key, expiry and status."""
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Union

from device import (STATUS_ACTIVE, STATUS_EXPIRED, STATUS_EXPIRING,
                    STATUS_PERPETUAL, STATUS_UNKNOWN)
from utils import utc_timestamp

PERPETUAL = "perpetual"
UNKNOWN = "unknown"

EXPIRING_WINDOW_DAYS = 30

PERPETUAL_MARKERS = {"", "null", "n/a", "perpetual", "unlimited", "never", "none"}

NO_LICENSE_MARKER = "can't load license"

Days = Union[int, str]


@dataclass
class LicenseInfo:
    regkey: str = ""
    expiry: str = ""  # "" means perpetual
    service_check_date: str = ""
    licensed_on: str = ""
    platform_id: str = ""


def _parse_iso(value: str) -> Optional[date]:
    try:
        return date.fromisoformat(value.replace("/", "-"))
    except ValueError:
        return None


def _parse_formats(value: str) -> Optional[date]:
    for fmt in ("%Y/%m/%d", "%Y-%m-%d", "%Y%m%d", "%Y/%m/%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S", "%b %d %Y"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def _parse_leading_date(value: str) -> Optional[date]:
    match = re.match(r"^(\d{4})[-/]?(\d{2})[-/]?(\d{2})(?:\D|$)", value)
    if not match:
        return None
    try:
        return date(*(int(part) for part in match.groups()))
    except ValueError:
        return None


DATE_STRATEGIES: List[Callable[[str], Optional[date]]] = [_parse_iso, _parse_formats, _parse_leading_date]


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parses an expiry date, returning the first strategy that succeeds."""
    if not value:
        return None
    value = value.strip()
    for strategy in DATE_STRATEGIES:
        parsed = strategy(value)
        if parsed is not None:
            return parsed
    return None


def is_perpetual(expiry: Optional[str]) -> bool:
    return (expiry or "").strip().lower() in PERPETUAL_MARKERS


def calc_days(expiry: Optional[str], today: Optional[date] = None) -> Days:
    """Days until ``expiry``; PERPETUAL for no-expiry markers, UNKNOWN if unparseable."""
    if is_perpetual(expiry):
        return PERPETUAL
    expires_on = parse_date(expiry)
    if expires_on is None:
        return UNKNOWN
    return (expires_on - (today or date.today())).days


def status(days: Union[Days, None]) -> str:
    # "unlimited" is what older stores wrote for perpetual licenses
    if isinstance(days, str) and days.strip().lower() in (PERPETUAL, "unlimited"):
        return STATUS_PERPETUAL
    if isinstance(days, bool) or days is None:
        return STATUS_UNKNOWN
    if isinstance(days, str):
        if not re.fullmatch(r"-?\d+", days.strip()):
            return STATUS_UNKNOWN
        days = int(days)
    if days < 0:
        return STATUS_EXPIRED
    if days <= EXPIRING_WINDOW_DAYS:
        return STATUS_EXPIRING
    return STATUS_ACTIVE


def license_patch(info: LicenseInfo, today: Optional[date] = None) -> Dict:
    """Builds the record patch written after a successful license read."""
    days = calc_days(info.expiry, today)
    return {
        "checked": utc_timestamp(),
        "expires": info.expiry if not is_perpetual(info.expiry) else PERPETUAL,
        "days": days,
        "status": status(days),
        "regkey": info.regkey or None,
        "svc_check_date": info.service_check_date,
    }


def is_virtual_edition(platform_id: Optional[str]) -> bool:
    """BIG-IP Virtual Edition platforms report Z1xx ids."""
    return bool(platform_id) and re.fullmatch(r"Z1\d\d", platform_id.strip(), re.IGNORECASE) is not None


TMSH_LABELS = {
    "regkey": "Registration Key",
    "expiry": "License End Date",
    "service_check_date": "Service Check Date",
    "licensed_on": "Licensed On",
    "platform_id": "Platform ID",
}


def _label_value(text: str, label: str) -> str:
    pattern = re.compile(rf"^\s*{re.escape(label)}\s*:?\s+(\S.*?)\s*$", re.IGNORECASE | re.MULTILINE)
    match = pattern.search(text)
    return match.group(1) if match else ""


def parse_tmsh_license(text: str) -> Dict[str, str]:
    """Extracts labelled fields from ``tmsh show sys license`` output."""
    return {name: _label_value(text, label) for name, label in TMSH_LABELS.items()}


def reports_no_license(text: str) -> bool:
    return NO_LICENSE_MARKER in (text or "").lower().replace("’", "'")


def parse_license_file_end_date(text: str) -> str:
    """Finds the ``License end date`` line of a bigip.license file."""
    return _label_value(text, "License end date").lstrip(": ").strip()
