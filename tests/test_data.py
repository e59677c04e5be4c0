# tests/test_data.py
import json
import os

import pytest

import data
from data import DeviceStore, load_device_data, quarantine_device_file
from errors import DeviceNotFound, StoreError, ValidationError


def test_missing_file_starts_empty(tmp_path):
    path = tmp_path / "sub" / "devices.json"
    store = DeviceStore(path)
    assert store.count() == 0
    assert json.loads(path.read_text()) == []


def test_add_get_remove(store):
    record = store.add("10.0.0.1", "password")
    assert record.status == "new"
    assert record.added.endswith("Z")
    assert store.exists("10.0.0.1")
    assert store.get("10.0.0.1").auth_type == "password"

    store.remove("10.0.0.1")
    assert store.get("10.0.0.1") is None
    assert store.count() == 0


def test_records_survive_reload(store):
    store.add("bigip-1.lab", "key")
    reopened = DeviceStore(store.json_file)
    assert [r.ip for r in reopened.all()] == ["bigip-1.lab"]


def test_duplicate_add_rejected(store):
    store.add("10.0.0.1", "unset")
    with pytest.raises(ValidationError):
        store.add("10.0.0.1", "unset")
    assert store.count() == 1


@pytest.mark.parametrize("ip", ["", "10.0.0.1; rm -rf /", "host name", "$(id)"])
def test_invalid_identifier_rejected(store, ip):
    with pytest.raises(ValidationError):
        store.add(ip, "unset")
    assert store.count() == 0


def test_invalid_auth_type_rejected(store):
    with pytest.raises(ValidationError):
        store.add("10.0.0.1", "token")


def test_update_merges_and_keeps_unknown_fields(tmp_path):
    path = tmp_path / "devices.json"
    path.write_text(json.dumps([{"ip": "10.0.0.1", "added": "2024-01-01T00:00:00Z",
                                 "status": "active", "auth_type": "password", "notes": "rack 4"}]))
    store = DeviceStore(path)

    record = store.update("10.0.0.1", {"status": "expiring", "days": 12})
    assert record.status == "expiring"
    assert record.days == 12
    assert record.auth_type == "password"
    assert record.added == "2024-01-01T00:00:00Z"

    saved = json.loads(path.read_text())[0]
    assert saved["notes"] == "rack 4"
    assert saved["days"] == 12


def test_update_touches_only_its_record(store):
    store.add("10.0.0.1", "unset")
    store.add("10.0.0.2", "unset")
    store.update("10.0.0.1", {"status": "expired"})
    assert store.get("10.0.0.1").status == "expired"
    assert store.get("10.0.0.2").status == "new"


def test_update_unknown_device(store):
    with pytest.raises(DeviceNotFound):
        store.update("10.9.9.9", {"status": "active"})


def test_update_cannot_change_ip(store):
    store.add("10.0.0.1", "unset")
    with pytest.raises(ValidationError):
        store.update("10.0.0.1", {"ip": "10.0.0.2"})


def test_remove_unknown_device(store):
    with pytest.raises(DeviceNotFound):
        store.remove("10.0.0.1")


def test_null_fields_from_older_files(tmp_path):
    path = tmp_path / "devices.json"
    path.write_text(json.dumps([{"ip": "10.0.0.1", "expires": None, "svc_check_date": None}]))
    record = DeviceStore(path).get("10.0.0.1")
    assert record.expires == ""
    assert record.svc_check_date == ""
    assert record.auth_type == "unset"


@pytest.mark.parametrize("content", [
    "{not json",
    '{"ip": "10.0.0.1"}',
    "[1, 2]",
    '[{"name": "x"}]',
    '[{"ip": 10}]',
])
def test_corrupt_file_is_quarantined(tmp_path, content):
    path = tmp_path / "devices.json"
    path.write_text(content)

    assert load_device_data(path) == []
    assert json.loads(path.read_text()) == []
    backups = list(tmp_path.glob("devices.json.bak.*"))
    assert len(backups) == 1
    assert backups[0].read_text() == content


def test_failed_write_keeps_previous_file(store, monkeypatch):
    store.add("10.0.0.1", "unset")
    before = store.json_file.read_text()

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(data.os, "replace", broken_replace)
    with pytest.raises(StoreError):
        store.add("10.0.0.2", "unset")

    assert store.json_file.read_text() == before
    assert store.count() == 1
    leftovers = [name for name in os.listdir(store.json_file.parent) if name.endswith(".tmp")]
    assert leftovers == []


def test_history_events_logged(store, caplog):
    with caplog.at_level("INFO", logger="history"):
        store.add("10.0.0.1", "key")
        store.remove("10.0.0.1")
    messages = [r.getMessage() for r in caplog.records if r.name == "history"]
    assert messages == ["ADDED 10.0.0.1 (auth: key)", "REMOVED 10.0.0.1"]


def test_bad_items_never_reach_the_store(tmp_path):
    path = tmp_path / "devices.json"
    path.write_text('[{"ip": "10.0.0.1"}, 7]')
    store = DeviceStore(path)
    assert store.all() == []
    assert not store.exists("10.0.0.1")


def test_repeated_quarantine_keeps_every_backup(tmp_path):
    path = tmp_path / "devices.json"
    path.write_text("{first")
    quarantine_device_file(path)
    path.write_text("{second")
    quarantine_device_file(path)

    contents = sorted(p.read_text() for p in tmp_path.glob("devices.json.bak.*"))
    assert contents == ["{first", "{second"]
