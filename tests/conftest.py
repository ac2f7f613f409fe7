"""Shared fixtures for the ipamscan test suite."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from ipamscan.discovery.models import ProbeFailure, ProbeResult
from ipamscan.inventory.models import Device, DeviceStatus, Subnet
from ipamscan.inventory.settings import InMemorySettingsStore
from ipamscan.inventory.store import InMemoryInventoryStore
from ipamscan.scanning.coordinator import ScanCoordinator

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeProbeWorker:
    """Stand-in for ProbeWorker answering from a dict; unknown addresses are dead.

    ``gate`` (when given) blocks every probe until it is set, so tests can
    hold a job in the running state.
    """

    def __init__(self, results=None, failures=(), gate: threading.Event | None = None, observed_at=T0):
        self.results = dict(results or {})
        self.failures = set(failures)
        self.gate = gate
        self.observed_at = observed_at
        self.probed: list[str] = []
        self.prepared = False
        self.closed = False
        self._lock = threading.Lock()

    def prepare(self):
        self.prepared = True

    def close(self):
        self.closed = True

    def probe(self, address, cancel=None):
        if self.gate is not None:
            self.gate.wait(5)
        with self._lock:
            self.probed.append(address)
        if address in self.failures:
            return ProbeFailure(address=address, error="boom")
        result = self.results.get(address)
        if result is not None:
            return result
        return ProbeResult(address=address, alive=False, observed_at=self.observed_at)


# ── discovery fixtures ────────────────────────────────────────────────


@pytest.fixture()
def sample_probe_result():
    """Factory fixture returning a live ProbeResult with customizable fields."""

    def _make(**kwargs):
        defaults = {
            "address": "192.168.1.50",
            "alive": True,
            "rtt_ms": 1.2,
            "observed_at": T0,
        }
        defaults.update(kwargs)
        return ProbeResult(**defaults)

    return _make


@pytest.fixture()
def fake_worker_cls():
    return FakeProbeWorker


# ── inventory fixtures ────────────────────────────────────────────────


@pytest.fixture()
def inventory_store():
    """Empty in-memory inventory."""
    return InMemoryInventoryStore()


@pytest.fixture()
def sample_device():
    """Factory fixture returning a Device with customizable fields."""

    def _make(**kwargs):
        defaults = {
            "address": "10.0.0.20",
            "status": DeviceStatus.ONLINE,
            "last_seen": T0 - timedelta(minutes=5),
        }
        defaults.update(kwargs)
        return Device(**defaults)

    return _make


@pytest.fixture()
def settings_store():
    """Settings tuned for fast tests, isolated from the process environment."""
    return InMemorySettingsStore(
        {"probe_pool_size": "4", "cancel_grace": "1", "probe_timeout": "1"},
        environ={},
    )


# ── scanning fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def make_coordinator(inventory_store, settings_store):
    """Factory fixture: coordinator over the shared store with a FakeProbeWorker.

    Returns ``(coordinator, worker, notifier)``.
    """
    created: list[ScanCoordinator] = []

    def _make(subnets=("192.168.1.0/24",), worker=None, **settings):
        for cidr in subnets:
            inventory_store.add_subnet(Subnet(network=cidr))
        for key, value in settings.items():
            settings_store.set(key, str(value))
        worker = worker or FakeProbeWorker()
        notifier = MagicMock()
        notifier.notify.return_value = True
        coordinator = ScanCoordinator(
            inventory_store,
            settings_store,
            notifier=notifier,
            worker_factory=lambda _settings: worker,
            oui=MagicMock(),
            progress_interval=0.0,
        )
        created.append(coordinator)
        return coordinator, worker, notifier

    yield _make

    for coordinator in created:
        coordinator.shutdown(timeout=5)
