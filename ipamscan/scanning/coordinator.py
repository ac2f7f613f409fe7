"""ScanCoordinator: runs scan jobs from enumeration to summary."""

from __future__ import annotations

import threading
import time
from collections import Counter
from collections.abc import Callable, Iterator

from loguru import logger

from ipamscan.discovery.categorize import _categorize
from ipamscan.discovery.enumerator import AddressEnumerator
from ipamscan.discovery.models import ProbeFailure
from ipamscan.discovery.oui import OuiResolver
from ipamscan.discovery.probe import ProbeWorker, ProbeWorkerPool
from ipamscan.discovery.snmp import SnmpArpTable
from ipamscan.exceptions import (
    AlreadyTerminal,
    InvalidCIDR,
    InvalidSubnet,
    JobAborted,
    PersistenceError,
    ReconciliationConflict,
    ScanError,
)
from ipamscan.inventory.models import (
    ActivityAction,
    ActivityLogEntry,
    AlertEvent,
    AlertType,
    DeviceStatus,
    Subnet,
)
from ipamscan.inventory.notifications import LogNotifier, Notifier
from ipamscan.inventory.settings import ScanSettings, SettingsStore
from ipamscan.inventory.store import InventoryStore
from ipamscan.inventory.subnets import subnet_utilization
from ipamscan.inventory.vlans import assign_vlans
from ipamscan.scanning.broadcaster import ProgressBroadcaster
from ipamscan.scanning.models import ScanJob, ScanPhase, ScanStatus, ScanSummary, ScanTrigger, TargetProgress
from ipamscan.scanning.reconciler import ResultReconciler
from ipamscan.scanning.registry import ScanRegistry

_TERMINAL_ACTIONS = {
    ScanStatus.COMPLETED: ActivityAction.SCAN_COMPLETED,
    ScanStatus.FAILED: ActivityAction.SCAN_FAILED,
    ScanStatus.CANCELLED: ActivityAction.SCAN_CANCELLED,
}


class ScanCoordinator:
    """Owns the lifecycle of scan jobs.

    :meth:`start_scan` validates synchronously and returns a job id; the job
    then runs on its own thread: enumerate subnets, probe through a
    :class:`ProbeWorkerPool`, reconcile every result and finish with one
    summary event and one terminal activity entry. Everything after
    validation is reported through the job status and the broadcaster.
    """

    def __init__(
        self,
        store: InventoryStore,
        settings: SettingsStore,
        registry: ScanRegistry | None = None,
        broadcaster: ProgressBroadcaster | None = None,
        notifier: Notifier | None = None,
        reconciler: ResultReconciler | None = None,
        worker_factory: Callable[[ScanSettings], ProbeWorker] | None = None,
        oui: OuiResolver | None = None,
        progress_interval: float = 0.1,
    ):
        self.store = store
        self.settings = settings
        self.registry = registry or ScanRegistry()
        self.broadcaster = broadcaster or ProgressBroadcaster(self.registry)
        self.notifier = notifier or LogNotifier()
        self.reconciler = reconciler or ResultReconciler(store, self.notifier)
        self.worker_factory = worker_factory or self._default_worker
        self.oui = oui or OuiResolver()
        self.progress_interval = progress_interval
        self._lock = threading.Lock()
        self._threads: dict[str, threading.Thread] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._saturated: set[int] = set()
        self._closed = False

    def _default_worker(self, settings: ScanSettings) -> ProbeWorker:
        snmp_arp = SnmpArpTable(settings.snmp_routers) if settings.snmp_routers else None
        return ProbeWorker(
            ports=settings.probe_ports,
            probe_timeout=settings.probe_timeout,
            ping_timeout=settings.ping_timeout,
            port_timeout=settings.port_timeout,
            dns_timeout=settings.dns_timeout,
            scan_ports=settings.port_scanning,
            tcp_fallback=settings.tcp_fallback,
            oui=self.oui,
            snmp_arp=snmp_arp,
            lookup_workers=settings.probe_pool_size,
        )

    # ── public operations ─────────────────────────────────────────────

    def start_scan(
        self, subnet_ids: list[int] | None = None, trigger: ScanTrigger | str = ScanTrigger.MANUAL
    ) -> str:
        """Create and launch a scan job. An empty *subnet_ids* means every configured subnet.

        Raises:
            InvalidSubnet: unknown subnet ids, or no subnets configured.
            AlreadyRunning: a live job holds one of the subnets (``reject`` policy).
        """
        if self._closed:
            raise ScanError("Coordinator is shut down")
        trigger = ScanTrigger(trigger)
        settings = ScanSettings.from_store(self.settings)

        configured = {s.id for s in self.store.list_subnets()}
        if not configured:
            raise InvalidSubnet("No subnets configured")
        ids = list(dict.fromkeys(subnet_ids)) if subnet_ids else sorted(configured)
        unknown = [s for s in ids if s not in configured]
        if unknown:
            raise InvalidSubnet(f"Unknown subnet id(s): {', '.join(str(s) for s in unknown)}", unknown)

        job = self.registry.create(ids, trigger, queue=settings.scan_overlap_policy == "queue")
        cancel = threading.Event()
        thread = threading.Thread(target=self._run_job, args=(job.id, cancel), name=f"scan-{job.id}", daemon=True)
        with self._lock:
            self._cancel_events[job.id] = cancel
            self._threads[job.id] = thread
        logger.info(f"Scan job {job.id} ({trigger.value}) accepted for subnet(s) {ids}")
        thread.start()
        return job.id

    def cancel_scan(self, job_id: str) -> ScanJob:
        """Cancel a pending or running job. It is terminal on return.

        In-flight probes drain for ``cancel_grace`` seconds and what they
        found is still reconciled.

        Raises:
            JobNotFound: unknown id.
            AlreadyTerminal: the job already finished.
        """
        job = self.registry.transition(job_id, ScanStatus.CANCELLED)
        with self._lock:
            cancel = self._cancel_events.get(job_id)
        if cancel is not None:
            cancel.set()
        logger.info(f"Scan job {job_id} cancelled")
        return job

    def get_status(self, job_id: str) -> ScanJob:
        """Snapshot of the job.

        Long-finished jobs are returned without per-subnet progress. Raises
        JobNotFound for unknown ids or once the job aged out of the registry
        entirely (see ScanRegistry).
        """
        return self.registry.get(job_id)

    def list_jobs(self) -> list[ScanJob]:
        return self.registry.list_jobs()

    def wait(self, job_id: str, timeout: float | None = None) -> bool:
        """Block until the job's runner has exited. Returns False on timeout."""
        with self._lock:
            thread = self._threads.get(job_id)
        if thread is None:
            self.registry.get(job_id)
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def shutdown(self, wait: bool = True, timeout: float | None = None) -> None:
        """Cancel live jobs and stop accepting new ones."""
        self._closed = True
        for job in self.registry.live_jobs():
            try:
                self.cancel_scan(job.id)
            except AlreadyTerminal:
                pass
        if wait:
            with self._lock:
                threads = list(self._threads.values())
            for thread in threads:
                thread.join(timeout)
        try:
            self.store.flush()
        except PersistenceError as e:
            logger.error(f"Could not save inventory on shutdown: {e}")

    # ── job runner ────────────────────────────────────────────────────

    def _run_job(self, job_id: str, cancel: threading.Event) -> None:
        settings = ScanSettings()
        final: ScanStatus | None = None
        error: str | None = None
        try:
            settings = ScanSettings.from_store(self.settings)
            if self.registry.claim(job_id):
                self.registry.transition(job_id, ScanStatus.RUNNING)
                self._log(ActivityAction.SCAN_STARTED, job_id, subnet_ids=self.registry.get(job_id).subnet_ids)
                self.broadcaster.phase(job_id, ScanPhase.STARTING)
                self._execute(job_id, settings, cancel)
                final = ScanStatus.COMPLETED
        except AlreadyTerminal:
            pass
        except JobAborted as e:
            logger.error(f"Scan job {job_id} aborted: {e}")
            final, error = ScanStatus.FAILED, str(e)
        except Exception as e:
            logger.exception(f"Scan job {job_id} crashed: {e}")
            final, error = ScanStatus.FAILED, f"Internal error: {e}"
        finally:
            try:
                self._finish(job_id, final, error, settings)
            finally:
                self.registry.release(job_id)
                self.reconciler.forget_job(job_id)
                with self._lock:
                    self._cancel_events.pop(job_id, None)
                    self._threads.pop(job_id, None)

    def _enumerate(self, job_id: str, settings: ScanSettings) -> tuple[list[Subnet], list[tuple[int, AddressEnumerator]]]:
        job = self.registry.get(job_id)
        try:
            subnets = self.store.list_subnets()
        except PersistenceError as e:
            raise JobAborted(str(e)) from e
        by_id = {s.id: s for s in subnets}

        targets: list[tuple[int, AddressEnumerator]] = []
        progress: dict[int, TargetProgress] = {}
        errors: list[str] = []
        for sid in job.subnet_ids:
            subnet = by_id.get(sid)
            if subnet is None:
                errors.append(f"Subnet {sid} no longer exists")
                continue
            exclude = [subnet.gateway] if settings.skip_gateway and subnet.gateway else []
            try:
                enumerator = AddressEnumerator(subnet.network, exclude=exclude)
            except InvalidCIDR as e:
                logger.warning(f"Job {job_id}: skipping subnet {sid}: {e}")
                errors.append(f"Subnet {sid}: {e}")
                continue
            targets.append((sid, enumerator))
            progress[sid] = TargetProgress(network=str(enumerator.network), total=len(enumerator))

        def _apply(j: ScanJob) -> None:
            j.progress = progress
            j.errors.extend(errors)

        self.registry.update(job_id, _apply)
        if not targets:
            raise JobAborted("No subnet could be enumerated")
        return subnets, targets

    def _execute(self, job_id: str, settings: ScanSettings, cancel: threading.Event) -> None:
        subnets, targets = self._enumerate(job_id, settings)
        total = sum(len(e) for _, e in targets)
        logger.info(f"Job {job_id}: probing {total} address(es) in {len(targets)} subnet(s)")

        worker = self.worker_factory(settings)
        worker.prepare()
        pool = ProbeWorkerPool(worker, size=settings.probe_pool_size, cancel_grace=settings.cancel_grace)
        self.broadcaster.phase(job_id, ScanPhase.PROBING)

        def _addresses() -> Iterator[tuple[int, str]]:
            for sid, enumerator in targets:
                for address in enumerator:
                    yield sid, address

        completed = 0
        failures = 0
        last_publish = 0.0
        try:
            for sid, outcome in pool.run(_addresses(), cancel):
                completed += 1
                alive = False
                new_device: str | None = None
                if isinstance(outcome, ProbeFailure):
                    failures += 1
                    logger.debug(f"Job {job_id}: probe of {outcome.address} failed: {outcome.error}")
                else:
                    alive = outcome.alive
                    try:
                        result = self.reconciler.reconcile(
                            outcome,
                            job_id=job_id,
                            subnets=subnets,
                            alerts=settings.device_alerts,
                        )
                        if result.created:
                            new_device = outcome.address
                    except ReconciliationConflict as e:
                        logger.warning(f"Job {job_id}: skipping {outcome.address}: {e}")
                    except PersistenceError as e:
                        raise JobAborted(f"Inventory write failed: {e}") from e

                def _bump(j: ScanJob, sid: int = sid, alive: bool = alive) -> None:
                    p = j.progress[sid]
                    p.completed += 1
                    if alive:
                        p.found += 1
                        j.devices_found += 1

                if self.registry.update(job_id, _bump) is None:
                    continue  # cancelled: keep reconciling, counters are frozen

                now = time.monotonic()
                if new_device or completed == total or now - last_publish >= self.progress_interval:
                    last_publish = now
                    self.broadcaster.progress(job_id, completed, total, outcome.address, new_device)
        finally:
            worker.close()

        try:
            self.store.flush()
        except PersistenceError as e:
            raise JobAborted(f"Inventory write failed: {e}") from e
        if failures:
            logger.warning(f"Job {job_id}: {failures} address(es) could not be probed")
        self.broadcaster.phase(job_id, ScanPhase.FINALIZING)

    def _finish(self, job_id: str, final: ScanStatus | None, error: str | None, settings: ScanSettings) -> None:
        if final is not None:
            try:
                job = self.registry.transition(job_id, final, error)
            except AlreadyTerminal:
                job = self.registry.get(job_id)
        else:
            job = self.registry.get(job_id)

        summary = self._build_summary(job)
        action = _TERMINAL_ACTIONS[job.status]
        self._log(
            action,
            job_id,
            status=job.status.value,
            devices_found=job.devices_found,
            completed=job.completed,
            total=job.total,
            errors=job.errors,
        )
        logger.info(
            f"Scan job {job_id} {job.status.value}: {job.devices_found} alive, "
            f"{job.completed}/{job.total} probed, {len(job.errors)} error(s)"
        )
        self.broadcaster.phase(job_id, ScanPhase.DONE)
        self.broadcaster.summary(summary)

        if job.status == ScanStatus.FAILED:
            self.reconciler.alert(
                AlertEvent(
                    event_type=AlertType.SCAN_FAILED,
                    device_or_subnet_id=job_id,
                    detail="; ".join(job.errors) or "scan failed",
                )
            )
        elif settings.subnet_alerts:
            self._check_saturation(job, settings.alert_threshold)

        if job.status == ScanStatus.COMPLETED and settings.vlan_inference:
            try:
                assign_vlans(self.store, job.subnet_ids)
            except PersistenceError as e:
                logger.error(f"VLAN inference after job {job_id} failed: {e}")

        try:
            self.store.flush()
        except PersistenceError as e:
            logger.error(f"Could not save inventory after job {job_id}: {e}")

    def _log(self, action: ActivityAction, job_id: str, **details: object) -> None:
        try:
            self.store.append_activity(
                ActivityLogEntry(action=action, entity_type="scan", entity_id=job_id, details=details)
            )
        except PersistenceError as e:
            logger.error(f"Could not record {action.value} for job {job_id}: {e}")

    # ── summary and alerts ────────────────────────────────────────────

    def _build_summary(self, job: ScanJob) -> ScanSummary:
        scanned = [sid for sid, p in job.progress.items() if p.completed]
        try:
            devices = [
                d
                for d in self.store.list_devices()
                if d.status == DeviceStatus.ONLINE and d.subnet_id in job.subnet_ids
            ]
        except PersistenceError as e:
            logger.error(f"Could not read devices for summary of job {job.id}: {e}")
            devices = []

        vendors = Counter(d.vendor or "Unknown" for d in devices)
        types = Counter(d.device_type or _categorize(d.vendor, d.hostname, d.open_ports).value for d in devices)
        return ScanSummary(
            job_id=job.id,
            status=job.status,
            online_devices=len(devices),
            devices_found=job.devices_found,
            subnets_scanned=len(scanned),
            vendor_breakdown=dict(vendors.most_common()),
            device_type_breakdown=dict(types.most_common()),
            errors=list(job.errors),
        )

    def _check_saturation(self, job: ScanJob, threshold: float) -> None:
        """Alert once when a scanned subnet crosses *threshold* percent; re-arm when it drops below."""
        try:
            devices = self.store.list_devices()
            subnets = [s for s in self.store.list_subnets() if s.id in job.subnet_ids]
        except PersistenceError as e:
            logger.error(f"Could not check subnet utilisation: {e}")
            return
        for subnet in subnets:
            used, capacity, percent = subnet_utilization(subnet, devices)
            with self._lock:
                if percent < threshold:
                    self._saturated.discard(subnet.id)
                    continue
                if subnet.id in self._saturated:
                    continue
                self._saturated.add(subnet.id)
            logger.warning(f"Subnet {subnet.network} at {percent:.0f}% ({used}/{capacity})")
            self.reconciler.alert(
                AlertEvent(
                    event_type=AlertType.SUBNET_SATURATION,
                    device_or_subnet_id=str(subnet.id),
                    detail=f"{subnet.network} is {percent:.0f}% utilised ({used}/{capacity} hosts)",
                )
            )
