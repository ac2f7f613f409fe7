"""InventoryStore collaborator: subnets, devices and the activity log."""

from __future__ import annotations

import json
import os
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from ipamscan.exceptions import PersistenceError, ReconciliationConflict
from ipamscan.inventory.models import ActivityAction, ActivityLogEntry, Device, Subnet, Vlan
from ipamscan.inventory.subnets import longest_prefix_match


class InventoryStore(ABC):
    """Abstract device inventory.

    Implementations must be safe to call from several threads. Devices are
    written through :meth:`upsert_device`, which rejects stale writes so
    concurrent writers never lose updates.
    """

    # ── subnets ───────────────────────────────────────────────────────

    @abstractmethod
    def list_subnets(self) -> list[Subnet]:
        """All configured subnets, ordered by id."""

    @abstractmethod
    def get_subnet(self, subnet_id: int) -> Subnet | None:
        """Subnet by id, or None."""

    @abstractmethod
    def add_subnet(self, subnet: Subnet) -> Subnet:
        """Store *subnet* (id assigned when 0) and reassign devices it now covers."""

    @abstractmethod
    def remove_subnet(self, subnet_id: int) -> bool:
        """Delete a subnet. Its devices move to the next most specific match or become unassigned."""

    @abstractmethod
    def update_subnet(self, subnet_id: int, changes: dict[str, Any]) -> Subnet | None:
        """Apply *changes* to a subnet. Returns the stored copy, or None for an unknown id."""

    # ── vlans ─────────────────────────────────────────────────────────

    @abstractmethod
    def list_vlans(self) -> list[Vlan]:
        """All VLAN definitions, ordered by id."""

    @abstractmethod
    def add_vlan(self, vlan: Vlan) -> Vlan:
        """Store *vlan* (id assigned when 0)."""

    # ── devices ───────────────────────────────────────────────────────

    @abstractmethod
    def get_device_by_address(self, address: str) -> Device | None:
        """Device at *address*, or None."""

    @abstractmethod
    def find_devices_by_mac(self, mac: str) -> list[Device]:
        """Devices whose MAC equals *mac*."""

    @abstractmethod
    def find_devices_by_hostname(self, hostname: str) -> list[Device]:
        """Devices whose hostname equals *hostname* (case-insensitive)."""

    @abstractmethod
    def list_devices(self, subnet_id: int | None = None) -> list[Device]:
        """All devices, or only those of *subnet_id*."""

    @abstractmethod
    def upsert_device(self, device: Device) -> Device:
        """Insert or update a device keyed by address.

        ``device.version`` must equal the stored version (0 for a new
        device), otherwise ReconciliationConflict is raised. Returns the
        stored copy with its id assigned and version bumped.
        """

    # ── activity ──────────────────────────────────────────────────────

    @abstractmethod
    def append_activity(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        """Append an immutable activity entry. Returns it with its id assigned."""

    @abstractmethod
    def list_activity(self, action: ActivityAction | None = None, limit: int | None = None) -> list[ActivityLogEntry]:
        """Activity entries in insertion order, newest last."""

    def flush(self) -> None:
        """Persist pending writes. Stores without deferred writes do nothing."""


class InMemoryInventoryStore(InventoryStore):
    """Thread-safe inventory held in process memory."""

    def __init__(self, max_activity: int = 10000):
        self.max_activity = max_activity
        self._lock = threading.RLock()
        self._subnets: dict[int, Subnet] = {}
        self._vlans: dict[int, Vlan] = {}
        self._devices: dict[str, Device] = {}
        self._activity: list[ActivityLogEntry] = []
        self._next_subnet_id = 1
        self._next_vlan_id = 1
        self._next_device_id = 1
        self._next_activity_id = 1

    def _changed(self) -> None:
        """Hook called with the lock held after every mutation."""

    # ── subnets ───────────────────────────────────────────────────────

    def list_subnets(self) -> list[Subnet]:
        with self._lock:
            return [s.model_copy() for _, s in sorted(self._subnets.items())]

    def get_subnet(self, subnet_id: int) -> Subnet | None:
        with self._lock:
            subnet = self._subnets.get(subnet_id)
            return subnet.model_copy() if subnet else None

    def add_subnet(self, subnet: Subnet) -> Subnet:
        with self._lock:
            subnet_id = subnet.id or self._next_subnet_id
            stored = subnet.model_copy(update={"id": subnet_id})
            self._subnets[subnet_id] = stored
            self._next_subnet_id = max(self._next_subnet_id, subnet_id + 1)
            moved = self._reassign_locked()
            logger.info(f"Subnet {subnet_id} ({stored.network}) added, {moved} device(s) reassigned")
            self._changed()
            return stored.model_copy()

    def remove_subnet(self, subnet_id: int) -> bool:
        with self._lock:
            subnet = self._subnets.pop(subnet_id, None)
            if subnet is None:
                return False
            moved = self._reassign_locked()
            logger.info(f"Subnet {subnet_id} ({subnet.network}) removed, {moved} device(s) reassigned")
            self._changed()
            return True

    def update_subnet(self, subnet_id: int, changes: dict[str, Any]) -> Subnet | None:
        with self._lock:
            current = self._subnets.get(subnet_id)
            if current is None:
                return None
            stored = Subnet.model_validate({**current.model_dump(), **changes, "id": subnet_id})
            self._subnets[subnet_id] = stored
            if stored.network != current.network:
                self._reassign_locked()
            self._changed()
            return stored.model_copy()

    def _reassign_locked(self) -> int:
        subnets = list(self._subnets.values())
        moved = 0
        now = datetime.now(timezone.utc)
        for address, device in self._devices.items():
            match = longest_prefix_match(address, subnets)
            subnet_id = match.id if match else None
            if subnet_id != device.subnet_id:
                self._devices[address] = device.model_copy(
                    update={"subnet_id": subnet_id, "version": device.version + 1, "updated_at": now}
                )
                moved += 1
        return moved

    # ── vlans ─────────────────────────────────────────────────────────

    def list_vlans(self) -> list[Vlan]:
        with self._lock:
            return [v.model_copy() for _, v in sorted(self._vlans.items())]

    def add_vlan(self, vlan: Vlan) -> Vlan:
        with self._lock:
            vlan_id = vlan.id or self._next_vlan_id
            stored = vlan.model_copy(update={"id": vlan_id})
            self._vlans[vlan_id] = stored
            self._next_vlan_id = max(self._next_vlan_id, vlan_id + 1)
            self._changed()
            return stored.model_copy()

    # ── devices ───────────────────────────────────────────────────────

    def get_device_by_address(self, address: str) -> Device | None:
        with self._lock:
            device = self._devices.get(address)
            return device.model_copy(deep=True) if device else None

    def find_devices_by_mac(self, mac: str) -> list[Device]:
        if not mac:
            return []
        mac = mac.lower()
        with self._lock:
            return [d.model_copy(deep=True) for d in self._devices.values() if d.mac and d.mac.lower() == mac]

    def find_devices_by_hostname(self, hostname: str) -> list[Device]:
        if not hostname:
            return []
        hostname = hostname.lower()
        with self._lock:
            return [
                d.model_copy(deep=True)
                for d in self._devices.values()
                if d.hostname and d.hostname.lower() == hostname
            ]

    def list_devices(self, subnet_id: int | None = None) -> list[Device]:
        with self._lock:
            devices = sorted(self._devices.values(), key=lambda d: d.id)
            if subnet_id is not None:
                devices = [d for d in devices if d.subnet_id == subnet_id]
            return [d.model_copy(deep=True) for d in devices]

    def upsert_device(self, device: Device) -> Device:
        with self._lock:
            current = self._devices.get(device.address)
            current_version = current.version if current else 0
            if device.version != current_version:
                raise ReconciliationConflict(
                    device.address,
                    f"Device {device.address} is at version {current_version}, write based on {device.version}",
                )
            update: dict[str, Any] = {
                "version": current_version + 1,
                "updated_at": datetime.now(timezone.utc),
            }
            if current is not None:
                update["id"] = current.id
                update["created_at"] = current.created_at
            else:
                update["id"] = self._next_device_id
                self._next_device_id += 1
            stored = device.model_copy(update=update, deep=True)
            self._devices[device.address] = stored
            self._changed()
            return stored.model_copy(deep=True)

    # ── activity ──────────────────────────────────────────────────────

    def append_activity(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        with self._lock:
            stored = entry.model_copy(update={"id": self._next_activity_id})
            self._next_activity_id += 1
            self._activity.append(stored)
            if len(self._activity) > self.max_activity:
                del self._activity[: len(self._activity) - self.max_activity]
            self._changed()
            return stored

    def list_activity(self, action: ActivityAction | None = None, limit: int | None = None) -> list[ActivityLogEntry]:
        with self._lock:
            entries = [e for e in self._activity if action is None or e.action == action]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    # ── serialisation ─────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "subnets": [s.model_dump(mode="json") for s in self._subnets.values()],
                "vlans": [v.model_dump(mode="json") for v in self._vlans.values()],
                "devices": [d.model_dump(mode="json") for d in self._devices.values()],
                "activity": [e.model_dump(mode="json") for e in self._activity],
            }

    def load_dict(self, data: dict[str, Any]) -> None:
        with self._lock:
            self._subnets = {s.id: s for s in (Subnet.model_validate(r) for r in data.get("subnets", []))}
            self._vlans = {v.id: v for v in (Vlan.model_validate(r) for r in data.get("vlans", []))}
            self._devices = {d.address: d for d in (Device.model_validate(r) for r in data.get("devices", []))}
            self._activity = [ActivityLogEntry.model_validate(r) for r in data.get("activity", [])]
            self._next_subnet_id = max(self._subnets, default=0) + 1
            self._next_vlan_id = max(self._vlans, default=0) + 1
            self._next_device_id = max((d.id for d in self._devices.values()), default=0) + 1
            self._next_activity_id = max((e.id for e in self._activity), default=0) + 1


class JsonInventoryStore(InMemoryInventoryStore):
    """In-memory inventory mirrored to a JSON file.

    Mutations mark the store dirty and are flushed at most once per
    *flush_interval* seconds (0 writes through on every mutation); callers
    call :meth:`flush` at the end of a batch. The file is rewritten through
    a temporary sibling and ``os.replace`` so a crash mid-write never leaves
    a truncated inventory behind. When a write fails, memory is rolled back
    to the last state that reached the disk and PersistenceError is raised.
    """

    def __init__(self, path: str | Path, max_activity: int = 10000, flush_interval: float = 1.0):
        super().__init__(max_activity=max_activity)
        self.path = Path(path)
        self.flush_interval = flush_interval
        self._persisted: dict[str, Any] = {}
        self._dirty = False
        self._last_flush = float("-inf")
        if self.path.exists():
            self._load()

    def _load(self) -> None:
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Cannot read inventory {self.path}: {e}") from e
        try:
            self.load_dict(data)
        except ValidationError as e:
            raise PersistenceError(f"Invalid inventory {self.path}: {e}") from e
        self._persisted = data
        logger.info(
            f"Loaded inventory {self.path}: {len(self._subnets)} subnet(s), {len(self._devices)} device(s)"
        )

    def _changed(self) -> None:
        self._dirty = True
        if time.monotonic() - self._last_flush >= self.flush_interval:
            self._flush_locked()

    def flush(self) -> None:
        with self._lock:
            if self._dirty:
                self._flush_locked()

    def _flush_locked(self) -> None:
        data = self.to_dict()
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2))
            os.replace(tmp, self.path)
        except OSError as e:
            logger.error(f"Cannot write inventory {self.path}, reverting to the last saved state: {e}")
            self.load_dict(self._persisted)
            self._dirty = False
            raise PersistenceError(f"Cannot write inventory {self.path}: {e}") from e
        self._persisted = data
        self._dirty = False
        self._last_flush = time.monotonic()
