# tests/test_verify.py
from datetime import date

import pytest

from errors import (AuthFailed, ServiceUnavailable, Unparseable, Unreachable,
                    VerificationTimeout)
from license_info import LicenseInfo
from verify import verify_license


class FlakyTransport:
    """Fails with the given errors, then reports a license."""

    def __init__(self, errors, info=None):
        self.errors = list(errors)
        self.info = info or LicenseInfo(regkey="KEY-1", expiry="2025/06/15")
        self.calls = 0

    def fetch_license_info(self, ip, credentials, timeout=None):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.info


class SleepRecorder:
    def __init__(self):
        self.pauses = []

    def __call__(self, seconds):
        self.pauses.append(seconds)

    @property
    def total(self):
        return sum(self.pauses)


@pytest.fixture
def device(store):
    store.add("10.0.0.1", "password")
    return store


def test_succeeds_after_restart(device, creds):
    transport = FlakyTransport([Unreachable("10.0.0.1"), ServiceUnavailable("10.0.0.1"),
                                Unparseable("10.0.0.1")])
    sleep = SleepRecorder()

    result = verify_license("10.0.0.1", creds, transport, device, max_wait=120, interval=10,
                            sleep=sleep, today=date(2025, 1, 15))

    assert result == "active"
    assert transport.calls == 4
    assert sleep.pauses == [10, 10, 10]
    record = device.get("10.0.0.1")
    assert record.days == 151
    assert record.regkey == "KEY-1"


def test_timeout_waits_exactly_max_wait(device, creds):
    transport = FlakyTransport([Unreachable("10.0.0.1")] * 100)
    sleep = SleepRecorder()

    with pytest.raises(VerificationTimeout) as excinfo:
        verify_license("10.0.0.1", creds, transport, device, max_wait=25, interval=10, sleep=sleep)

    assert sleep.total == 25
    assert sleep.pauses == [10, 10, 5]
    assert excinfo.value.ip == "10.0.0.1"
    assert device.get("10.0.0.1").status == "new"


def test_timeout_is_a_timeout_error(device, creds):
    with pytest.raises(TimeoutError):
        verify_license("10.0.0.1", creds, FlakyTransport([Unreachable("x")] * 5), device,
                       max_wait=2, interval=1, sleep=SleepRecorder())


def test_auth_failure_stops_polling(device, creds):
    transport = FlakyTransport([Unreachable("10.0.0.1"), AuthFailed("10.0.0.1")])
    sleep = SleepRecorder()

    with pytest.raises(AuthFailed):
        verify_license("10.0.0.1", creds, transport, device, max_wait=120, interval=10, sleep=sleep)

    assert transport.calls == 2
    assert sleep.pauses == [10]


def test_verification_events_logged(device, creds, caplog):
    with caplog.at_level("INFO", logger="history"):
        verify_license("10.0.0.1", creds, FlakyTransport([]), device, sleep=SleepRecorder(),
                       today=date(2025, 1, 15))
    assert "VERIFIED 10.0.0.1: active (151 days)" in [r.getMessage() for r in caplog.records]
