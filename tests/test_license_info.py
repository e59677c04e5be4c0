# tests/test_license_info.py
from datetime import date

import pytest

from license_info import (PERPETUAL, UNKNOWN, LicenseInfo, calc_days,
                          is_virtual_edition, license_patch,
                          parse_license_file_end_date, parse_date,
                          parse_tmsh_license, reports_no_license, status)

TODAY = date(2025, 1, 15)

TMSH_OUTPUT = """
Sys::License
Licensed Version         17.1.0
Registration key         ABCDE-FGHIJ-KLMNO-PQRST-UVWXYZZ
Licensed On              2024/06/15
License Start Date       2024/06/14
License End Date         2025/06/15
Service Check Date       2025/05/16
Platform ID              Z100
"""


@pytest.mark.parametrize("days, expected", [
    (-1, "expired"),
    (0, "expiring"),
    (30, "expiring"),
    (31, "active"),
    (365, "active"),
    ("12", "expiring"),
    ("-3", "expired"),
    (PERPETUAL, "perpetual"),
    ("unlimited", "perpetual"),
    (UNKNOWN, "unknown"),
    (None, "unknown"),
    (True, "unknown"),
    ("soon", "unknown"),
])
def test_status_thresholds(days, expected):
    assert status(days) == expected


@pytest.mark.parametrize("marker", ["", None, "null", "N/A", "perpetual", "Unlimited", "never", "none"])
def test_calc_days_perpetual_markers(marker):
    assert calc_days(marker, TODAY) == PERPETUAL


def test_calc_days_unparseable_is_unknown():
    assert calc_days("sometime next year", TODAY) == UNKNOWN


def test_calc_days_known_expiry():
    assert calc_days("2025/06/15", TODAY) == 151
    assert status(calc_days("2025/06/15", TODAY)) == "active"


@pytest.mark.parametrize("value", [
    "2025/06/15",
    "2025-06-15",
    "20250615",
    "2025/06/15 00:00:00",
    "2025-06-15T10:20:30",
    "Jun 15 2025",
    "2025-06-15 (grace period)",
])
def test_parse_date_formats(value):
    assert parse_date(value) == date(2025, 6, 15)


def test_parse_date_rejects_impossible_dates():
    assert parse_date("2025/02/30") is None


def test_license_patch_for_perpetual_license():
    patch = license_patch(LicenseInfo(regkey="KEY", expiry=""), TODAY)
    assert patch["expires"] == PERPETUAL
    assert patch["days"] == PERPETUAL
    assert patch["status"] == "perpetual"
    assert patch["regkey"] == "KEY"
    assert patch["checked"].endswith("Z")


def test_license_patch_without_regkey_stores_none():
    patch = license_patch(LicenseInfo(expiry="2025/01/10"), TODAY)
    assert patch["regkey"] is None
    assert patch["status"] == "expired"


def test_parse_tmsh_license():
    fields = parse_tmsh_license(TMSH_OUTPUT)
    assert fields == {
        "regkey": "ABCDE-FGHIJ-KLMNO-PQRST-UVWXYZZ",
        "expiry": "2025/06/15",
        "service_check_date": "2025/05/16",
        "licensed_on": "2024/06/15",
        "platform_id": "Z100",
    }


def test_parse_tmsh_license_missing_end_date():
    fields = parse_tmsh_license("Registration key   KEY-1\nPlatform ID   Z100\n")
    assert fields["regkey"] == "KEY-1"
    assert fields["expiry"] == ""


def test_reports_no_license():
    assert reports_no_license("01070608:0: Can't load license, may not be operational")
    assert not reports_no_license(TMSH_OUTPUT)
    assert not reports_no_license(None)


def test_parse_license_file_end_date():
    text = "License end date :       20250615\n"
    assert parse_license_file_end_date(text) == "20250615"
    assert parse_license_file_end_date("Service check date : 20250101") == ""


@pytest.mark.parametrize("platform, expected", [
    ("Z100", True),
    ("z101", True),
    (" Z100 ", True),
    ("D110", False),
    ("Z1000", False),
    ("", False),
    (None, False),
])
def test_is_virtual_edition(platform, expected):
    assert is_virtual_edition(platform) is expected
