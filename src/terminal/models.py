"""
Terminal data structures and models
"""

import json
from enum import Enum
from typing import Any, Dict, Optional
from dataclasses import dataclass, field


class IdentitySource(str, Enum):
    """How a device identity was extracted from the response body"""
    JSON = "json"
    XML = "xml"
    TEXT = "text"  # degraded: regex extraction from raw text


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str


@dataclass(frozen=True)
class DigestChallenge:
    """Parameters of a WWW-Authenticate: Digest challenge"""
    realm: str
    nonce: str
    qop: Optional[str] = None
    opaque: Optional[str] = None
    algorithm: str = "MD5"


@dataclass(frozen=True)
class DeviceIdentity:
    """Normalized /ISAPI/System/deviceInfo answer"""
    device_name: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    firmware_version: Optional[str] = None
    mac_address: Optional[str] = None
    raw: Any = None
    source: IdentitySource = IdentitySource.JSON

    def is_empty(self) -> bool:
        return not any([
            self.device_name, self.model, self.serial_number,
            self.firmware_version, self.mac_address,
        ])

    @property
    def degraded(self) -> bool:
        return self.source == IdentitySource.TEXT

    def raw_text(self) -> str:
        if self.raw is None:
            return ""
        if isinstance(self.raw, str):
            return self.raw
        return json.dumps(self.raw, default=str)

    def summary(self) -> Dict[str, Optional[str]]:
        return {
            'deviceName': self.device_name,
            'model': self.model,
            'serialNumber': self.serial_number,
            'macAddress': self.mac_address,
        }


@dataclass
class RawEvent:
    """One access-control scan as reported by the terminal (AcsEvent InfoList entry)"""
    person_id: str
    event_time_local: Optional[str]
    direction: Optional[str] = None
    door_no: Optional[int] = None
    event_type_code: Optional[int] = None
    event_type_name: Optional[str] = None
    name: Optional[str] = None
    card_no: Optional[str] = None
    device_serial: Optional[Any] = None
    captured_at: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
