"""Pydantic models and enums for scan jobs and progress events."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScanStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanStatus.COMPLETED, ScanStatus.FAILED, ScanStatus.CANCELLED)


class ScanTrigger(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class ScanPhase(str, Enum):
    STARTING = "starting"
    PROBING = "probing"
    FINALIZING = "finalizing"
    DONE = "done"


class EventType(str, Enum):
    SNAPSHOT = "snapshot"
    PHASE = "phase"
    PROGRESS = "progress"
    SUMMARY = "summary"
    IDLE = "idle"


class TargetProgress(BaseModel):
    network: str = ""
    total: int = 0
    completed: int = 0
    found: int = 0


class ScanJob(BaseModel):
    id: str
    subnet_ids: list[int]
    status: ScanStatus = ScanStatus.PENDING
    trigger: ScanTrigger = ScanTrigger.MANUAL
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    progress: dict[int, TargetProgress] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    devices_found: int = 0

    @property
    def total(self) -> int:
        return sum(p.total for p in self.progress.values())

    @property
    def completed(self) -> int:
        return sum(p.completed for p in self.progress.values())


class ScanSummary(BaseModel):
    job_id: str
    status: ScanStatus
    online_devices: int = 0
    devices_found: int = 0
    subnets_scanned: int = 0
    vendor_breakdown: dict[str, int] = Field(default_factory=dict)
    device_type_breakdown: dict[str, int] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_utcnow)


class ScanEvent(BaseModel):
    """One message on the progress channel.

    Which optional fields are set depends on ``type``: ``snapshot`` carries
    ``job``, ``progress`` carries the counters, ``summary`` and ``idle``
    carry ``summary`` (``idle`` only when a scan has finished before).
    """

    type: EventType
    sequence: int = 0  # assigned by the broadcaster
    job_id: Optional[str] = None
    phase: Optional[ScanPhase] = None
    current: int = 0
    total: int = 0
    current_address: Optional[str] = None
    newly_found_device: Optional[str] = None
    job: Optional[ScanJob] = None
    summary: Optional[ScanSummary] = None
    timestamp: datetime = Field(default_factory=_utcnow)
