"""ResultReconciler: merges probe results into the device inventory."""

from __future__ import annotations

import threading
from typing import Any, NamedTuple

from loguru import logger

from ipamscan.discovery.models import ProbeResult
from ipamscan.exceptions import ReconciliationConflict
from ipamscan.inventory.models import (
    ActivityAction,
    ActivityLogEntry,
    AlertEvent,
    AlertType,
    AssignmentType,
    Device,
    DeviceStatus,
    Subnet,
)
from ipamscan.inventory.notifications import Notifier
from ipamscan.inventory.store import InventoryStore
from ipamscan.inventory.subnets import longest_prefix_match

SYSTEM_SCAN = "system scan"


class ReconcileResult(NamedTuple):
    device: Device | None
    created: bool = False
    status_changed: bool = False
    previous_status: DeviceStatus | None = None


class ResultReconciler:
    """Upserts devices from probe results and records what changed.

    Writes for one address are serialised by a striped lock; different
    addresses proceed in parallel. The store's version check catches writers
    that bypass the lock, in which case the merge is recomputed from a fresh
    read up to ``max_retries`` times.
    """

    def __init__(
        self,
        store: InventoryStore,
        notifier: Notifier | None = None,
        stripes: int = 64,
        max_retries: int = 3,
    ):
        self.store = store
        self.notifier = notifier
        self.max_retries = max_retries
        self._locks = [threading.Lock() for _ in range(stripes)]
        self._seen_lock = threading.Lock()
        self._seen_conflicts: dict[str | None, set[tuple[str, ...]]] = {}

    def _lock_for(self, address: str) -> threading.Lock:
        return self._locks[hash(address) % len(self._locks)]

    def _log(self, action: ActivityAction, entity_type: str, entity_id: Any, **details: Any) -> None:
        self.store.append_activity(
            ActivityLogEntry(
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id is not None else None,
                details=details,
            )
        )

    def alert(self, event: AlertEvent) -> None:
        """Send *event* through the notifier and log successful deliveries."""
        if self.notifier is None:
            return
        try:
            delivered = self.notifier.notify(event)
        except Exception as e:
            logger.error(f"Alert delivery failed: {e}")
            return
        if delivered:
            self._log(
                ActivityAction.ALERT_SENT,
                "alert",
                event.device_or_subnet_id,
                event_type=event.event_type.value,
                detail=event.detail,
            )

    def forget_job(self, job_id: str | None) -> None:
        """Drop the conflict dedupe state of a finished job."""
        with self._seen_lock:
            self._seen_conflicts.pop(job_id, None)

    def _first_report(self, job_id: str | None, key: tuple[str, ...]) -> bool:
        with self._seen_lock:
            seen = self._seen_conflicts.setdefault(job_id, set())
            if key in seen:
                return False
            seen.add(key)
            return True

    def reconcile(
        self,
        result: ProbeResult,
        job_id: str | None = None,
        subnets: list[Subnet] | None = None,
        alerts: bool = True,
    ) -> ReconcileResult:
        """Merge *result* into the inventory.

        Args:
            result: Probe outcome for one address.
            job_id: Scan job the result belongs to; scopes conflict dedupe.
            subnets: Configured subnets; read from the store when omitted.
            alerts: Send device_online / device_offline alerts.

        Raises:
            ReconciliationConflict: the device kept changing underneath.
        """
        if subnets is None:
            subnets = self.store.list_subnets()
        with self._lock_for(result.address):
            for attempt in range(1, self.max_retries + 1):
                try:
                    outcome = self._merge(result, subnets)
                    break
                except ReconciliationConflict as e:
                    logger.debug(f"{e} (attempt {attempt}/{self.max_retries})")
            else:
                raise ReconciliationConflict(
                    result.address, f"Gave up reconciling {result.address} after {self.max_retries} attempts"
                )

        if outcome.device is not None:
            self._record(result, outcome, job_id, alerts)
        return outcome

    def _merge(self, result: ProbeResult, subnets: list[Subnet]) -> ReconcileResult:
        match = longest_prefix_match(result.address, subnets)
        subnet_id = match.id if match else None
        current = self.store.get_device_by_address(result.address)

        if current is None:
            if not result.alive:
                return ReconcileResult(None)
            device = Device(
                address=result.address,
                subnet_id=subnet_id,
                hostname=result.hostname,
                mac=result.mac,
                vendor=result.vendor,
                status=DeviceStatus.ONLINE,
                last_seen=result.observed_at,
                open_ports=list(result.open_ports or ()),
                assignment_type=match.assignment_type if match else AssignmentType.STATIC,
                created_by=SYSTEM_SCAN,
            )
            return ReconcileResult(self.store.upsert_device(device), created=True)

        # an older observation must not undo a newer one
        if current.last_seen is not None and result.observed_at < current.last_seen:
            return ReconcileResult(current)

        update: dict[str, Any] = {}
        if current.subnet_id != subnet_id:
            update["subnet_id"] = subnet_id
        if result.alive:
            for field in ("hostname", "mac", "vendor"):
                value = getattr(result, field)
                if value and value != getattr(current, field):
                    update[field] = value
            if current.last_seen != result.observed_at:
                update["last_seen"] = result.observed_at
            # None: the port step did not finish, keep what is stored
            if result.open_ports is not None and list(result.open_ports) != current.open_ports:
                update["open_ports"] = list(result.open_ports)

        new_status = DeviceStatus.ONLINE if result.alive else DeviceStatus.OFFLINE
        status_changed = new_status != current.status
        if status_changed:
            update["status"] = new_status

        if not update:
            return ReconcileResult(current)
        stored = self.store.upsert_device(current.model_copy(update=update))
        return ReconcileResult(stored, status_changed=status_changed, previous_status=current.status)

    def _record(self, result: ProbeResult, outcome: ReconcileResult, job_id: str | None, alerts: bool) -> None:
        device = outcome.device
        assert device is not None

        if outcome.created:
            logger.info(f"New device {device.address} ({device.hostname or device.mac or 'unnamed'})")
            self._log(
                ActivityAction.DEVICE_DISCOVERED,
                "device",
                device.id,
                address=device.address,
                hostname=device.hostname,
                mac=device.mac,
                vendor=device.vendor,
                job_id=job_id,
            )
        elif outcome.status_changed:
            online = device.status == DeviceStatus.ONLINE
            action = ActivityAction.DEVICE_ONLINE if online else ActivityAction.DEVICE_OFFLINE
            logger.info(f"Device {device.address} is now {device.status.value}")
            self._log(action, "device", device.id, address=device.address, job_id=job_id)
            # first sighting of an operator-entered device is not news
            if alerts and outcome.previous_status != DeviceStatus.UNKNOWN:
                name = device.hostname or device.address
                self.alert(
                    AlertEvent(
                        event_type=AlertType.DEVICE_ONLINE if online else AlertType.DEVICE_OFFLINE,
                        device_or_subnet_id=str(device.id),
                        detail=f"{name} ({device.address}) is {device.status.value}",
                    )
                )

        if result.alive:
            self._check_conflicts(result, device, job_id)

    def _check_conflicts(self, result: ProbeResult, device: Device, job_id: str | None) -> None:
        if result.mac:
            for other in self.store.find_devices_by_mac(result.mac):
                if other.address == device.address:
                    continue
                if self._first_report(job_id, ("mac", result.mac, *sorted((device.address, other.address)))):
                    logger.warning(f"MAC {result.mac} seen at {device.address} and {other.address}")
                    self._log(
                        ActivityAction.MAC_CONFLICT,
                        "device",
                        device.id,
                        mac=result.mac,
                        address=device.address,
                        other_address=other.address,
                        job_id=job_id,
                    )

        if result.hostname and result.mac:
            for other in self.store.find_devices_by_hostname(result.hostname):
                if other.address == device.address or not other.mac or other.mac == result.mac:
                    continue
                key = ("hostname", result.hostname.lower(), *sorted((device.address, other.address)))
                if self._first_report(job_id, key):
                    logger.warning(f"Hostname {result.hostname} claimed by {device.address} and {other.address}")
                    self._log(
                        ActivityAction.HOSTNAME_CONFLICT,
                        "device",
                        device.id,
                        hostname=result.hostname,
                        address=device.address,
                        other_address=other.address,
                        job_id=job_id,
                    )

    def reassign_devices(self) -> int:
        """Re-derive every device's subnet from the current subnet list. Returns devices moved."""
        subnets = self.store.list_subnets()
        moved = 0
        for device in self.store.list_devices():
            match = longest_prefix_match(device.address, subnets)
            subnet_id = match.id if match else None
            if subnet_id == device.subnet_id:
                continue
            with self._lock_for(device.address):
                for _ in range(self.max_retries):
                    current = self.store.get_device_by_address(device.address)
                    if current is None or current.subnet_id == subnet_id:
                        break
                    try:
                        self.store.upsert_device(current.model_copy(update={"subnet_id": subnet_id}))
                        moved += 1
                        break
                    except ReconciliationConflict:
                        continue
        if moved:
            logger.info(f"Reassigned {moved} device(s) to new subnets")
        return moved
