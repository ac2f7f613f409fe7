"""ScanScheduler: periodic full-fleet scans plus the manual trigger."""

from __future__ import annotations

import threading
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from ipamscan.exceptions import AlreadyRunning, InvalidSubnet
from ipamscan.inventory.settings import ScanSettings
from ipamscan.scanning.coordinator import ScanCoordinator
from ipamscan.scanning.models import ScanTrigger

SCAN_JOB_ID = "scheduled_scan"
WATCH_JOB_ID = "settings_watch"


class ScanScheduler:
    """Fires a scan of every subnet each ``scan_interval`` minutes.

    Runs on an APScheduler ``BackgroundScheduler``. A second job re-reads the
    settings every *poll* seconds and reschedules the scan when
    ``scan_interval`` changed; ``auto_discovery`` is checked on every fire.
    A fire that finds any job still live is skipped rather than queued.
    """

    def __init__(self, coordinator: ScanCoordinator, poll: float = 30.0):
        self.coordinator = coordinator
        self.poll = poll
        self.scheduler: BackgroundScheduler | None = None
        self.last_job_id: str | None = None
        self._interval: int | None = None
        self._lock = threading.Lock()

    def _settings(self) -> ScanSettings:
        return ScanSettings.from_store(self.coordinator.settings)

    def start(self, run_immediately: bool = False) -> None:
        if self.scheduler is not None:
            return
        self._interval = self._settings().scan_interval
        scheduler = BackgroundScheduler(daemon=True, timezone=timezone.utc)
        first_run = {"next_run_time": datetime.now(timezone.utc)} if run_immediately else {}
        scheduler.add_job(
            self._run_scheduled,
            trigger=IntervalTrigger(minutes=self._interval),
            id=SCAN_JOB_ID,
            name="Scheduled scan",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            **first_run,
        )
        scheduler.add_job(
            self.reschedule,
            trigger=IntervalTrigger(seconds=self.poll),
            id=WATCH_JOB_ID,
            name="Settings watch",
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self.scheduler = scheduler
        logger.info(f"Scan scheduler started: every {self._interval} minute(s)")

    def stop(self, wait: bool = True) -> None:
        if self.scheduler is None:
            return
        self.scheduler.shutdown(wait=wait)
        self.scheduler = None
        logger.info("Scan scheduler stopped")

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    @property
    def interval(self) -> int | None:
        """Minutes between scheduled scans, None while stopped."""
        return self._interval if self.scheduler is not None else None

    def reschedule(self) -> bool:
        """Apply a changed ``scan_interval``. Returns True when the scan job was rescheduled."""
        with self._lock:
            if self.scheduler is None:
                return False
            interval = self._settings().scan_interval
            if interval == self._interval:
                return False
            self.scheduler.reschedule_job(SCAN_JOB_ID, trigger=IntervalTrigger(minutes=interval))
            logger.info(f"Scan interval changed from {self._interval} to {interval} minute(s)")
            self._interval = interval
            return True

    def seconds_until_due(self) -> float:
        """Seconds until the next scheduled scan; 0 when stopped."""
        if self.scheduler is None:
            return 0.0
        job = self.scheduler.get_job(SCAN_JOB_ID)
        if job is None or job.next_run_time is None:
            return 0.0
        return max(0.0, (job.next_run_time - datetime.now(timezone.utc)).total_seconds())

    def _run_scheduled(self) -> None:
        try:
            if not self._settings().auto_discovery:
                logger.debug("Scheduled scan skipped: auto_discovery is off")
                return
            self.tick()
        except Exception as e:
            logger.exception(f"Scheduled scan failed: {e}")

    def tick(self) -> str | None:
        """Run one scheduled scan if nothing else is running. Returns the job id, if any."""
        if self.coordinator.registry.busy():
            logger.info("Scheduled scan skipped: a scan is still running")
            return None
        try:
            job_id = self.coordinator.start_scan([], trigger=ScanTrigger.SCHEDULED)
        except AlreadyRunning as e:
            logger.info(f"Scheduled scan skipped: {e}")
            return None
        except InvalidSubnet as e:
            logger.debug(f"Scheduled scan skipped: {e}")
            return None
        self.last_job_id = job_id
        return job_id

    def trigger_now(self, subnet_ids: list[int] | None = None) -> str:
        """Manual scan. Raises InvalidSubnet or AlreadyRunning like ``start_scan``."""
        return self.coordinator.start_scan(subnet_ids or [], trigger=ScanTrigger.MANUAL)
