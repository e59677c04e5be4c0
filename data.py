# data.py
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from device import AUTH_TYPES, STATUS_NEW, DeviceRecord
from errors import DeviceNotFound, StoreError, ValidationError
from utils import is_valid_host, log_event, utc_timestamp

logger = logging.getLogger(__name__)


def load_device_data(json_file: Path) -> List[Dict]:
    """Loads device data from the JSON file.

    A file that cannot be decoded, or that is not a list of objects with an
    ``ip``, is moved aside to ``<name>.bak.<timestamp>`` and replaced with an
    empty list.

    Args:
        json_file (Path): Path to the JSON file.

    Returns:
        List[Dict]: A list of dictionaries containing device data.
    """
    try:
        with json_file.open("r", encoding="utf-8") as file:
            data = json.load(file)
        if is_device_list(data):
            return data
        logger.warning("Device file %s does not hold a list of device records.", json_file)
    except FileNotFoundError:
        logger.debug("JSON file not found: %s. Creating an empty one.", json_file)
        save_device_data([], json_file)
        return []
    except (json.JSONDecodeError, UnicodeDecodeError) as err:
        logger.warning("Error decoding JSON data in %s: %s", json_file, err)
    except OSError as err:
        logger.warning("Could not read %s: %s", json_file, err)

    quarantine_device_file(json_file)
    return []


def is_device_list(data: Any) -> bool:
    """Checks that every item is an object carrying a string ``ip``."""
    return isinstance(data, list) and all(
        isinstance(item, dict) and isinstance(item.get("ip"), str) for item in data
    )


def quarantine_device_file(json_file: Path) -> Optional[Path]:
    """Renames a bad device file aside and writes an empty list in its place."""
    stamp = f"{datetime.now():%Y%m%d_%H%M%S_%f}"
    backup = json_file.with_name(f"{json_file.name}.bak.{stamp}")
    suffix = 1
    while backup.exists():
        backup = json_file.with_name(f"{json_file.name}.bak.{stamp}_{suffix}")
        suffix += 1
    try:
        os.replace(json_file, backup)
    except OSError as err:
        logger.warning("Could not move %s aside: %s", json_file, err)
        backup = None
    else:
        logger.warning("Device database corrupted, backup saved to: %s", backup)
    save_device_data([], json_file)
    return backup


def save_device_data(data: List[Dict], json_file: Path) -> None:
    """Saves device data to the JSON file atomically.

    The data is written to a temporary file next to ``json_file`` and then
    swapped in with ``os.replace``, so readers only ever see the old or the new
    content.

    Args:
        data (List[Dict]): A list of dictionaries to save.
        json_file (Path): Path to the JSON file.

    Raises:
        StoreError: if the file could not be written. The previous content is
            left untouched.
    """
    json_file.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{json_file.name}.", suffix=".tmp", dir=json_file.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as file:
            json.dump(data, file, indent=4)
            file.flush()
            os.fsync(file.fileno())
        os.replace(tmp_name, json_file)
    except (OSError, TypeError, ValueError) as err:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise StoreError(f"Could not save {json_file}: {err}") from err


class DeviceStore:
    """Ordered collection of device records backed by a single JSON file."""

    def __init__(self, json_file: Path):
        self.json_file = Path(json_file).expanduser()
        self._devices: List[Dict] = load_device_data(self.json_file)

    def _find(self, devices: List[Dict], ip: str) -> Optional[Dict]:
        for device in devices:
            if device.get("ip") == ip:
                return device
        return None

    def _commit(self, devices: List[Dict]) -> None:
        save_device_data(devices, self.json_file)
        self._devices = devices

    def reload(self) -> None:
        self._devices = load_device_data(self.json_file)

    def count(self) -> int:
        return len(self._devices)

    def exists(self, ip: str) -> bool:
        return bool(ip) and self._find(self._devices, ip) is not None

    def get(self, ip: str) -> Optional[DeviceRecord]:
        device = self._find(self._devices, ip)
        return DeviceRecord.from_dict(device) if device is not None else None

    def all(self) -> List[DeviceRecord]:
        return [DeviceRecord.from_dict(device) for device in self._devices]

    def add(self, ip: str, auth_type: str) -> DeviceRecord:
        """Adds a new device with status ``new``.

        Raises:
            ValidationError: if the identifier or auth type is malformed, or
                the device already exists.
        """
        if not is_valid_host(ip):
            raise ValidationError(f"Invalid IP/hostname: {ip!r}")
        if auth_type not in AUTH_TYPES:
            raise ValidationError(f"Invalid auth type: {auth_type!r} (expected one of {', '.join(AUTH_TYPES)})")
        if self.exists(ip):
            raise ValidationError(f"{ip} already exists")

        record = DeviceRecord(ip=ip, added=utc_timestamp(), status=STATUS_NEW, auth_type=auth_type)
        self._commit([dict(d) for d in self._devices] + [record.to_dict()])
        log_event(f"ADDED {ip} (auth: {auth_type})")
        return record

    def update(self, ip: str, patch: Dict[str, Any]) -> DeviceRecord:
        """Merges ``patch`` into the record for ``ip``; fields not named in the patch are kept."""
        if "ip" in patch and patch["ip"] != ip:
            raise ValidationError("The ip of a record cannot be changed")
        devices = [dict(d) for d in self._devices]
        device = self._find(devices, ip)
        if device is None:
            raise DeviceNotFound(ip)
        device.update(patch)
        self._commit(devices)
        return DeviceRecord.from_dict(device)

    def remove(self, ip: str) -> None:
        devices = [dict(d) for d in self._devices if d.get("ip") != ip]
        if len(devices) == len(self._devices):
            raise DeviceNotFound(ip)
        self._commit(devices)
        log_event(f"REMOVED {ip}")
