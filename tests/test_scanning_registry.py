"""Tests for ipamscan/scanning/registry.py"""

import threading

import pytest

from ipamscan.exceptions import AlreadyRunning, AlreadyTerminal, JobNotFound
from ipamscan.scanning.models import ScanStatus, ScanTrigger
from ipamscan.scanning.registry import ScanRegistry


class TestCreate:
    """Tests for job creation and subnet claims."""

    def test_create_claims_subnets(self):
        """Test a new job is pending and claims its subnets."""
        registry = ScanRegistry()
        job = registry.create([1, 2], ScanTrigger.SCHEDULED)

        assert job.status == ScanStatus.PENDING
        assert job.trigger == ScanTrigger.SCHEDULED
        assert registry.claimed_by(1) == job.id
        assert registry.claimed_by(2) == job.id
        assert registry.busy() is True

    def test_overlap_rejected(self):
        """Test an overlapping job raises AlreadyRunning and is not created."""
        registry = ScanRegistry()
        first = registry.create([1, 2])

        with pytest.raises(AlreadyRunning) as exc:
            registry.create([2, 3])

        assert exc.value.job_id == first.id
        assert exc.value.subnet_ids == [2]
        assert len(registry.list_jobs()) == 1
        assert registry.claimed_by(3) is None

    def test_disjoint_jobs_coexist(self):
        """Test jobs on different subnets run side by side."""
        registry = ScanRegistry()
        registry.create([1])
        registry.create([2])

        assert len(registry.live_jobs()) == 2

    def test_unknown_job(self):
        """Test lookups of unknown ids raise JobNotFound."""
        with pytest.raises(JobNotFound):
            ScanRegistry().get("nope")


class TestTransitions:
    """Tests for status transitions and terminal freezing."""

    def test_running_sets_started_at(self):
        """Test moving to running stamps started_at."""
        registry = ScanRegistry()
        job = registry.create([1])

        running = registry.transition(job.id, ScanStatus.RUNNING)

        assert running.started_at is not None
        assert running.finished_at is None

    def test_terminal_is_final(self):
        """Test a terminal job cannot transition again."""
        registry = ScanRegistry()
        job = registry.create([1])
        registry.transition(job.id, ScanStatus.CANCELLED)

        with pytest.raises(AlreadyTerminal) as exc:
            registry.transition(job.id, ScanStatus.COMPLETED)
        assert exc.value.status == "cancelled"

    def test_update_frozen_after_terminal(self):
        """Test update returns None and leaves counters untouched once terminal."""
        registry = ScanRegistry()
        job = registry.create([1])

        def _bump(j):
            j.devices_found += 1

        assert registry.update(job.id, _bump).devices_found == 1
        registry.transition(job.id, ScanStatus.CANCELLED)

        assert registry.update(job.id, _bump) is None
        assert registry.get(job.id).devices_found == 1

    def test_claim_outlives_terminal_until_release(self):
        """Test a cancelled job keeps its claim until the runner releases it."""
        registry = ScanRegistry()
        job = registry.create([1])
        registry.transition(job.id, ScanStatus.CANCELLED)

        assert registry.busy() is True
        with pytest.raises(AlreadyRunning):
            registry.create([1])

        registry.release(job.id)
        assert registry.busy() is False
        registry.create([1])

    def test_get_returns_copy(self):
        """Test snapshots are detached from the registry."""
        registry = ScanRegistry()
        job = registry.create([1])
        snapshot = registry.get(job.id)
        snapshot.errors.append("x")

        assert registry.get(job.id).errors == []


class TestQueue:
    """Tests for the queue overlap policy."""

    def test_queued_job_waits_for_release(self):
        """Test a queued job claims its subnets only after the holder releases them."""
        registry = ScanRegistry()
        first = registry.create([1])
        second = registry.create([1], queue=True)
        claimed = threading.Event()

        def _claim():
            if registry.claim(second.id, poll=0.05):
                claimed.set()

        thread = threading.Thread(target=_claim)
        thread.start()
        assert not claimed.wait(0.2)

        registry.transition(first.id, ScanStatus.COMPLETED)
        registry.release(first.id)
        thread.join(2)

        assert claimed.is_set()
        assert registry.claimed_by(1) == second.id

    def test_cancelled_while_queued(self):
        """Test claim gives up when the queued job is cancelled."""
        registry = ScanRegistry()
        registry.create([1])
        queued = registry.create([1], queue=True)
        registry.transition(queued.id, ScanStatus.CANCELLED)

        assert registry.claim(queued.id, poll=0.05) is False


class TestHistory:
    """Tests for pruning of finished jobs."""

    def test_prune_keeps_max_history(self):
        """Test only the newest finished jobs are kept."""
        registry = ScanRegistry(max_history=2)
        for subnet_id in range(4):
            job = registry.create([subnet_id])
            registry.transition(job.id, ScanStatus.COMPLETED)
            registry.release(job.id)
        registry.create([99])

        jobs = registry.list_jobs()
        assert len([j for j in jobs if j.status.is_terminal]) == 2
        assert len(jobs) == 3

    def test_pruned_job_keeps_terminal_status(self):
        """Test a pruned job still reports its terminal status without progress."""
        registry = ScanRegistry(max_history=1)
        first = registry.create([1])
        registry.update(first.id, lambda j: setattr(j, "devices_found", 3))
        registry.transition(first.id, ScanStatus.FAILED, "boom")
        registry.release(first.id)
        for subnet_id in (2, 3):
            job = registry.create([subnet_id])
            registry.transition(job.id, ScanStatus.COMPLETED)
            registry.release(job.id)
        registry.create([4])

        pruned = registry.get(first.id)
        assert pruned.status == ScanStatus.FAILED
        assert pruned.devices_found == 3
        assert pruned.errors == ["boom"]
        assert pruned.progress == {}
        assert registry.update(first.id, lambda j: None) is None
        with pytest.raises(AlreadyTerminal):
            registry.transition(first.id, ScanStatus.CANCELLED)

    def test_tombstones_bounded(self):
        """Test only the newest max_tombstones pruned jobs stay readable."""
        registry = ScanRegistry(max_history=1, max_tombstones=1)
        ids = []
        for subnet_id in range(4):
            job = registry.create([subnet_id])
            registry.transition(job.id, ScanStatus.COMPLETED)
            registry.release(job.id)
            ids.append(job.id)
        registry.create([99])

        with pytest.raises(JobNotFound):
            registry.get(ids[0])
        assert registry.get(ids[2]).status == ScanStatus.COMPLETED
