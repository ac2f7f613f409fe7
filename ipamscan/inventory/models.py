"""Pydantic models and enums for the device inventory."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ipamscan.discovery.enumerator import parse_cidr
from ipamscan.exceptions import InvalidCIDR


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssignmentType(str, Enum):
    STATIC = "static"
    DHCP = "dhcp"


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class ActivityAction(str, Enum):
    SCAN_STARTED = "scan_started"
    SCAN_COMPLETED = "scan_completed"
    SCAN_FAILED = "scan_failed"
    SCAN_CANCELLED = "scan_cancelled"
    DEVICE_DISCOVERED = "device_discovered"
    DEVICE_ONLINE = "device_online"
    DEVICE_OFFLINE = "device_offline"
    MAC_CONFLICT = "mac_conflict"
    HOSTNAME_CONFLICT = "hostname_conflict"
    ALERT_SENT = "alert_sent"
    SUBNET_VLAN_ASSIGNED = "subnet_vlan_assigned"


class AlertType(str, Enum):
    DEVICE_OFFLINE = "device_offline"
    DEVICE_ONLINE = "device_online"
    SUBNET_SATURATION = "subnet_saturation"
    SCAN_FAILED = "scan_failed"


class Vlan(BaseModel):
    id: int = 0  # assigned by the store
    vlan_id: int = Field(ge=1, le=4094)  # 802.1Q tag
    name: str = ""
    description: str = ""


class Subnet(BaseModel):
    id: int = 0  # assigned by the store
    network: str  # CIDR, e.g. "192.168.1.0/24"
    gateway: Optional[str] = None
    description: str = ""
    vlan_id: Optional[int] = None  # Vlan.id, not the 802.1Q tag
    assignment_type: AssignmentType = AssignmentType.STATIC

    @field_validator("network")
    @classmethod
    def _check_network(cls, v: str) -> str:
        try:
            parse_cidr(v)
        except InvalidCIDR as e:
            raise ValueError(str(e)) from e
        return v


class Device(BaseModel):
    id: int = 0
    address: str
    subnet_id: Optional[int] = None
    hostname: Optional[str] = None
    mac: Optional[str] = None
    vendor: Optional[str] = None
    device_type: Optional[str] = None
    location: Optional[str] = None
    purpose: Optional[str] = None
    status: DeviceStatus = DeviceStatus.UNKNOWN
    last_seen: Optional[datetime] = None
    open_ports: list[int] = Field(default_factory=list)
    assignment_type: AssignmentType = AssignmentType.STATIC
    created_by: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    version: int = 0  # bumped by the store on every accepted write


class ActivityLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int = 0
    action: ActivityAction
    entity_type: str  # "device", "subnet", "scan"
    entity_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)


class AlertEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: AlertType
    device_or_subnet_id: str
    detail: str = ""
