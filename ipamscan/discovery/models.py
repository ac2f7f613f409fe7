"""Pydantic models and enums for host probing."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceCategory(str, Enum):
    CAMERA = "Camera"
    ENCODER = "Encoder / Decoder"
    SWITCH = "Network Switch"
    ROUTER = "Router"
    WEB_SERVER = "Web Server"
    SSH_SERVER = "SSH Server"
    TELNET = "Telnet Device"
    UNKNOWN = "Unknown"


class ProbeMethod(str, Enum):
    ICMP = "icmp"
    TCP = "tcp"
    NONE = "none"


class ProbeResult(BaseModel):
    """Outcome of probing one address.

    Identity fields are ``None`` when the step did not produce a value, so a
    missing hostname can never be mistaken for an empty one. The same holds
    for ``open_ports``: ``()`` means every port was probed and none is open.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["result"] = "result"
    address: str
    alive: bool
    rtt_ms: Optional[float] = None
    hostname: Optional[str] = None
    mac: Optional[str] = None
    vendor: Optional[str] = None
    open_ports: Optional[tuple[int, ...]] = None
    method: ProbeMethod = ProbeMethod.NONE
    observed_at: datetime = Field(default_factory=_utcnow)


class ProbeFailure(BaseModel):
    """Probe-level failure note: the address could not be probed at all."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["failure"] = "failure"
    address: str
    error: str
    observed_at: datetime = Field(default_factory=_utcnow)


ProbeOutcome = Annotated[Union[ProbeResult, ProbeFailure], Field(discriminator="kind")]
