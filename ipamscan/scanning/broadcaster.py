"""ProgressBroadcaster: fan-out of scan events to live subscribers."""

from __future__ import annotations

import queue
import threading
from collections.abc import Iterator

from loguru import logger

from ipamscan.scanning.models import EventType, ScanEvent, ScanPhase, ScanSummary
from ipamscan.scanning.registry import ScanRegistry

_CLOSED = object()


class Subscription:
    """Bounded per-observer event queue. Iterate it, or poll with :meth:`get`."""

    def __init__(self, broadcaster: ProgressBroadcaster, maxsize: int):
        self._broadcaster = broadcaster
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self.closed = False

    def _offer(self, event: ScanEvent) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            return False

    def _shutdown(self) -> None:
        if self.closed:
            return
        self.closed = True
        while True:
            try:
                self._queue.put_nowait(_CLOSED)
                return
            except queue.Full:
                # make room for the end marker; the reader is gone anyway
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def get(self, timeout: float | None = None) -> ScanEvent | None:
        """Next event, or None on timeout or once the subscription is closed."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def drain(self) -> list[ScanEvent]:
        """All events queued right now, without blocking."""
        events = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                return events
            events.append(item)

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)

    def __iter__(self) -> Iterator[ScanEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


class ProgressBroadcaster:
    """Publish/subscribe channel with replay-on-subscribe.

    A new subscriber first receives a ``snapshot`` event per live job (or one
    ``idle`` event carrying the last summary), then every event published
    afterwards. Both happen under one lock, so nothing falls in between.
    Subscribers that fall ``maxsize`` events behind are dropped.
    """

    def __init__(self, registry: ScanRegistry, maxsize: int = 1000):
        self.registry = registry
        self.maxsize = maxsize
        self._lock = threading.Lock()
        self._subscribers: list[Subscription] = []
        self._sequence = 0
        self._last_summary: ScanSummary | None = None

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    @property
    def last_summary(self) -> ScanSummary | None:
        return self._last_summary

    def _stamp(self, event: ScanEvent) -> ScanEvent:
        self._sequence += 1
        return event.model_copy(update={"sequence": self._sequence})

    def subscribe(self, maxsize: int | None = None) -> Subscription:
        sub = Subscription(self, maxsize or self.maxsize)
        with self._lock:
            live = self.registry.live_jobs()
            if live:
                for job in live:
                    sub._offer(self._stamp(ScanEvent(type=EventType.SNAPSHOT, job_id=job.id, job=job)))
            else:
                sub._offer(self._stamp(ScanEvent(type=EventType.IDLE, summary=self._last_summary)))
            self._subscribers.append(sub)
        logger.debug(f"Subscriber added ({len(self._subscribers)} total)")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)
        sub._shutdown()

    def publish(self, event: ScanEvent) -> ScanEvent:
        """Stamp *event* with the next sequence number and deliver it to every subscriber."""
        dropped: list[Subscription] = []
        with self._lock:
            event = self._stamp(event)
            if event.type == EventType.SUMMARY and event.summary is not None:
                self._last_summary = event.summary
            for sub in self._subscribers:
                if not sub._offer(event):
                    dropped.append(sub)
            for sub in dropped:
                self._subscribers.remove(sub)
        for sub in dropped:
            logger.warning("Dropping slow progress subscriber")
            sub._shutdown()
        return event

    def phase(self, job_id: str, phase: ScanPhase) -> ScanEvent:
        return self.publish(ScanEvent(type=EventType.PHASE, job_id=job_id, phase=phase))

    def progress(
        self,
        job_id: str,
        current: int,
        total: int,
        current_address: str | None = None,
        newly_found_device: str | None = None,
    ) -> ScanEvent:
        return self.publish(
            ScanEvent(
                type=EventType.PROGRESS,
                job_id=job_id,
                phase=ScanPhase.PROBING,
                current=current,
                total=total,
                current_address=current_address,
                newly_found_device=newly_found_device,
            )
        )

    def summary(self, summary: ScanSummary) -> ScanEvent:
        return self.publish(ScanEvent(type=EventType.SUMMARY, job_id=summary.job_id, summary=summary))

    def close(self) -> None:
        with self._lock:
            subs = list(self._subscribers)
            self._subscribers.clear()
        for sub in subs:
            sub._shutdown()
