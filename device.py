# device.py
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional, Union

STATUS_NEW = "new"
STATUS_ACTIVE = "active"
STATUS_EXPIRING = "expiring"
STATUS_EXPIRED = "expired"
STATUS_PERPETUAL = "perpetual"
STATUS_UNKNOWN = "unknown"

AUTH_KEY = "key"
AUTH_PASSWORD = "password"
AUTH_UNSET = "unset"
AUTH_TYPES = (AUTH_KEY, AUTH_PASSWORD, AUTH_UNSET)


@dataclass
class DeviceRecord:
    ip: str
    added: Optional[str] = None
    checked: Optional[str] = None
    expires: str = ""
    days: Union[int, str, None] = None  # int, "perpetual" or "unknown"
    status: str = STATUS_NEW
    regkey: Optional[str] = None
    auth_type: str = AUTH_UNSET
    svc_check_date: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)  # fields we don't know about

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceRecord":
        known = {f.name for f in fields(cls)} - {"extra"}
        values = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}
        # Older stores wrote null for empty strings
        for name in ("expires", "svc_check_date"):
            if values.get(name) is None:
                values[name] = ""
        if not values.get("auth_type"):
            values["auth_type"] = AUTH_UNSET
        return cls(extra=extra, **values)

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "extra"}
        data.update(self.extra)
        return data
