"""Process-wide registry of scan jobs and subnet claims."""

from __future__ import annotations

import threading
import uuid
from collections import OrderedDict
from collections.abc import Callable
from datetime import datetime, timezone

from loguru import logger

from ipamscan.exceptions import AlreadyRunning, AlreadyTerminal, JobNotFound
from ipamscan.scanning.models import ScanJob, ScanStatus, ScanTrigger


class ScanRegistry:
    """Jobs by id plus the job currently claiming each subnet.

    A subnet is claimed from the moment its job is accepted (or, for queued
    jobs, dequeued) until the job's runner releases it, which may be after
    the job turned terminal while in-flight probes drain. Each job has its
    own lock; once a job is terminal :meth:`update` refuses to touch it.

    Only the newest *max_history* finished jobs are kept whole. Older ones
    leave a tombstone (the job without its per-subnet progress) so their
    terminal status stays readable for the last *max_tombstones* jobs.
    """

    def __init__(self, max_history: int = 100, max_tombstones: int = 10000):
        self.max_history = max_history
        self.max_tombstones = max_tombstones
        self._lock = threading.RLock()
        self._released = threading.Condition(self._lock)
        self._jobs: dict[str, ScanJob] = {}
        self._job_locks: dict[str, threading.Lock] = {}
        self._claims: dict[int, str] = {}
        self._tombstones: OrderedDict[str, ScanJob] = OrderedDict()

    def _entry(self, job_id: str) -> tuple[ScanJob, threading.Lock]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                tombstone = self._tombstones.get(job_id)
                if tombstone is not None:
                    raise AlreadyTerminal(job_id, tombstone.status.value)
                raise JobNotFound(job_id)
            return job, self._job_locks[job_id]

    def _conflicts(self, subnet_ids: list[int]) -> dict[int, str]:
        return {s: self._claims[s] for s in subnet_ids if s in self._claims}

    def create(self, subnet_ids: list[int], trigger: ScanTrigger = ScanTrigger.MANUAL, queue: bool = False) -> ScanJob:
        """Register a pending job for *subnet_ids*.

        Free subnets are claimed right away. When any of them is taken,
        AlreadyRunning is raised (no job created) unless *queue* is set, in
        which case the job is created unclaimed and must :meth:`claim`
        before running.
        """
        with self._lock:
            conflicts = self._conflicts(subnet_ids)
            if conflicts and not queue:
                raise AlreadyRunning(sorted(conflicts), next(iter(conflicts.values())))
            job = ScanJob(id=uuid.uuid4().hex[:12], subnet_ids=list(subnet_ids), trigger=trigger)
            self._jobs[job.id] = job
            self._job_locks[job.id] = threading.Lock()
            if not conflicts:
                for s in subnet_ids:
                    self._claims[s] = job.id
            else:
                logger.info(f"Job {job.id} queued behind job(s) {sorted(set(conflicts.values()))}")
            self._prune()
            return job.model_copy(deep=True)

    def claim(self, job_id: str, poll: float = 0.5) -> bool:
        """Block until every subnet of *job_id* is free, then claim them.

        Returns False if the job turned terminal (cancelled) while waiting.
        """
        job, _ = self._entry(job_id)
        with self._released:
            while True:
                if job.status.is_terminal:
                    return False
                conflicts = {s: j for s, j in self._conflicts(job.subnet_ids).items() if j != job_id}
                if not conflicts:
                    for s in job.subnet_ids:
                        self._claims[s] = job_id
                    return True
                self._released.wait(timeout=poll)

    def release(self, job_id: str) -> None:
        """Drop every subnet claim held by *job_id* and wake queued jobs."""
        with self._released:
            for s in [s for s, j in self._claims.items() if j == job_id]:
                del self._claims[s]
            self._released.notify_all()

    def get(self, job_id: str) -> ScanJob:
        """Deep copy of the job, or of its tombstone once pruned.

        Raises JobNotFound for unknown ids and for jobs older than the last
        ``max_tombstones`` pruned ones.
        """
        try:
            job, lock = self._entry(job_id)
        except AlreadyTerminal:
            with self._lock:
                tombstone = self._tombstones.get(job_id)
            if tombstone is None:
                raise JobNotFound(job_id) from None
            return tombstone.model_copy(deep=True)
        with lock:
            return job.model_copy(deep=True)

    def update(self, job_id: str, mutate: Callable[[ScanJob], None]) -> ScanJob | None:
        """Apply *mutate* to a non-terminal job. Returns the new snapshot, or None if terminal."""
        try:
            job, lock = self._entry(job_id)
        except AlreadyTerminal:
            return None
        with lock:
            if job.status.is_terminal:
                return None
            mutate(job)
            return job.model_copy(deep=True)

    def transition(self, job_id: str, status: ScanStatus, error: str | None = None) -> ScanJob:
        """Move a job to *status*. Raises AlreadyTerminal if it already finished."""
        job, lock = self._entry(job_id)
        with lock:
            if job.status.is_terminal:
                raise AlreadyTerminal(job_id, job.status.value)
            now = datetime.now(timezone.utc)
            job.status = status
            if status == ScanStatus.RUNNING and job.started_at is None:
                job.started_at = now
            if status.is_terminal:
                job.finished_at = now
            if error:
                job.errors.append(error)
            snapshot = job.model_copy(deep=True)
        if status.is_terminal:
            with self._released:
                self._released.notify_all()
        logger.debug(f"Job {job_id} -> {status.value}")
        return snapshot

    def list_jobs(self) -> list[ScanJob]:
        with self._lock:
            ids = list(self._jobs)
        return [self.get(job_id) for job_id in ids]

    def live_jobs(self) -> list[ScanJob]:
        """Pending and running jobs."""
        return [job for job in self.list_jobs() if not job.status.is_terminal]

    def claimed_by(self, subnet_id: int) -> str | None:
        with self._lock:
            return self._claims.get(subnet_id)

    def busy(self) -> bool:
        """True while any job is live or any subnet is still claimed."""
        with self._lock:
            if self._claims:
                return True
        return bool(self.live_jobs())

    def _prune(self) -> None:
        finished = [j for j in self._jobs.values() if j.status.is_terminal]
        excess = len(finished) - self.max_history
        if excess <= 0:
            return
        finished.sort(key=lambda j: j.created_at)
        for job in finished[:excess]:
            if job.id in self._claims.values():
                continue
            del self._jobs[job.id]
            del self._job_locks[job.id]
            self._tombstones[job.id] = job.model_copy(update={"progress": {}}, deep=True)
        while len(self._tombstones) > self.max_tombstones:
            self._tombstones.popitem(last=False)
