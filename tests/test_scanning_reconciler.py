"""Tests for ipamscan/scanning/reconciler.py"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from ipamscan.discovery.models import ProbeResult
from ipamscan.exceptions import ReconciliationConflict
from ipamscan.inventory.models import (
    ActivityAction,
    AlertEvent,
    AlertType,
    AssignmentType,
    Device,
    DeviceStatus,
    Subnet,
)
from ipamscan.scanning.reconciler import SYSTEM_SCAN, ResultReconciler

# matches observed_at of the sample_probe_result fixture
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def notifier():
    mock = MagicMock()
    mock.notify.return_value = True
    return mock


@pytest.fixture()
def reconciler(inventory_store, notifier):
    return ResultReconciler(inventory_store, notifier)


def _actions(store, action):
    return store.list_activity(action=action)


class TestNewDevices:
    """Tests for device creation."""

    def test_live_result_creates_device(self, inventory_store, reconciler, sample_probe_result):
        """Test a live host at an unknown address becomes an online device."""
        subnet = inventory_store.add_subnet(
            Subnet(network="192.168.1.0/24", assignment_type=AssignmentType.DHCP)
        )
        result = sample_probe_result(hostname="nvr-1", mac="00:40:8c:aa:bb:cc", vendor="Axis", open_ports=(80,))

        outcome = reconciler.reconcile(result, job_id="j1")

        assert outcome.created is True
        device = inventory_store.get_device_by_address("192.168.1.50")
        assert device.status == DeviceStatus.ONLINE
        assert device.subnet_id == subnet.id
        assert device.hostname == "nvr-1"
        assert device.open_ports == [80]
        assert device.last_seen == T0
        assert device.created_by == SYSTEM_SCAN
        assert device.assignment_type == AssignmentType.DHCP
        assert len(_actions(inventory_store, ActivityAction.DEVICE_DISCOVERED)) == 1

    def test_dead_result_creates_nothing(self, inventory_store, reconciler):
        """Test a dead host at an unknown address leaves the inventory untouched."""
        outcome = reconciler.reconcile(ProbeResult(address="192.168.1.9", alive=False, observed_at=T0))

        assert outcome.device is None
        assert inventory_store.list_devices() == []
        assert inventory_store.list_activity() == []

    def test_most_specific_subnet(self, inventory_store, reconciler, sample_probe_result):
        """Test a new device is assigned by longest prefix match."""
        inventory_store.add_subnet(Subnet(network="10.0.0.0/24"))
        narrow = inventory_store.add_subnet(Subnet(network="10.0.0.0/25"))

        reconciler.reconcile(sample_probe_result(address="10.0.0.5"))

        assert inventory_store.get_device_by_address("10.0.0.5").subnet_id == narrow.id

    def test_idempotent(self, inventory_store, reconciler, sample_probe_result):
        """Test reconciling the same result twice changes nothing the second time."""
        result = sample_probe_result(hostname="nvr-1")
        first = reconciler.reconcile(result, job_id="j1")
        second = reconciler.reconcile(result, job_id="j1")

        assert second.created is False
        assert second.device.version == first.device.version
        assert len(inventory_store.list_activity()) == 1


class TestStatusChanges:
    """Tests for online/offline transitions."""

    def test_offline_flip_logged_once(self, inventory_store, reconciler, notifier, sample_device):
        """Test an online device that stops answering goes offline with exactly one entry and alert."""
        inventory_store.upsert_device(sample_device(hostname="cam-3"))
        dead = ProbeResult(address="10.0.0.20", alive=False, observed_at=T0)

        outcome = reconciler.reconcile(dead, job_id="j1")
        reconciler.reconcile(dead, job_id="j1")

        assert outcome.status_changed is True
        assert outcome.previous_status == DeviceStatus.ONLINE
        device = inventory_store.get_device_by_address("10.0.0.20")
        assert device.status == DeviceStatus.OFFLINE
        assert device.last_seen == T0 - timedelta(minutes=5)
        assert len(_actions(inventory_store, ActivityAction.DEVICE_OFFLINE)) == 1
        notifier.notify.assert_called_once()
        event = notifier.notify.call_args[0][0]
        assert event.event_type == AlertType.DEVICE_OFFLINE
        assert "cam-3" in event.detail
        assert len(_actions(inventory_store, ActivityAction.ALERT_SENT)) == 1

    def test_back_online(self, inventory_store, reconciler, notifier, sample_device, sample_probe_result):
        """Test an offline device that answers again goes online and refreshes last_seen."""
        inventory_store.upsert_device(sample_device(status=DeviceStatus.OFFLINE))

        reconciler.reconcile(sample_probe_result(address="10.0.0.20"))

        device = inventory_store.get_device_by_address("10.0.0.20")
        assert device.status == DeviceStatus.ONLINE
        assert device.last_seen == T0
        assert notifier.notify.call_args[0][0].event_type == AlertType.DEVICE_ONLINE

    def test_no_alert_from_unknown(self, inventory_store, reconciler, notifier, sample_device, sample_probe_result):
        """Test the first sighting of an operator-entered device logs but does not alert."""
        inventory_store.upsert_device(sample_device(status=DeviceStatus.UNKNOWN, last_seen=None))

        reconciler.reconcile(sample_probe_result(address="10.0.0.20"))

        assert len(_actions(inventory_store, ActivityAction.DEVICE_ONLINE)) == 1
        notifier.notify.assert_not_called()

    def test_alerts_disabled(self, inventory_store, reconciler, notifier, sample_device):
        """Test alerts=False records the change without notifying."""
        inventory_store.upsert_device(sample_device())

        reconciler.reconcile(ProbeResult(address="10.0.0.20", alive=False, observed_at=T0), alerts=False)

        assert len(_actions(inventory_store, ActivityAction.DEVICE_OFFLINE)) == 1
        notifier.notify.assert_not_called()

    def test_stale_observation_ignored(self, inventory_store, reconciler, sample_device):
        """Test an observation older than last_seen does not undo the newer state."""
        inventory_store.upsert_device(sample_device(last_seen=T0))

        reconciler.reconcile(ProbeResult(address="10.0.0.20", alive=False, observed_at=T0 - timedelta(minutes=1)))

        assert inventory_store.get_device_by_address("10.0.0.20").status == DeviceStatus.ONLINE
        assert inventory_store.list_activity() == []


class TestMerge:
    """Tests for field merging."""

    def test_identity_fields_only_overwritten_when_present(
        self, inventory_store, reconciler, sample_device, sample_probe_result
    ):
        """Test missing identity fields keep the stored values."""
        inventory_store.upsert_device(sample_device(hostname="cam-3", mac="aa:bb:cc:dd:ee:ff", location="roof"))

        reconciler.reconcile(sample_probe_result(address="10.0.0.20", vendor="Axis"))

        device = inventory_store.get_device_by_address("10.0.0.20")
        assert device.hostname == "cam-3"
        assert device.mac == "aa:bb:cc:dd:ee:ff"
        assert device.vendor == "Axis"
        assert device.location == "roof"

    def test_ports_kept_when_not_scanned(self, inventory_store, reconciler, sample_device, sample_probe_result):
        """Test stored open ports survive a result whose port step did not finish."""
        inventory_store.upsert_device(sample_device(open_ports=[22, 80]))

        reconciler.reconcile(sample_probe_result(address="10.0.0.20", open_ports=None))
        assert inventory_store.get_device_by_address("10.0.0.20").open_ports == [22, 80]

        later = sample_probe_result(address="10.0.0.20", observed_at=T0 + timedelta(seconds=1), open_ports=())
        reconciler.reconcile(later)
        assert inventory_store.get_device_by_address("10.0.0.20").open_ports == []

    def test_new_device_without_port_data(self, inventory_store, reconciler, sample_probe_result):
        """Test a new device from a result without port data starts with no ports."""
        reconciler.reconcile(sample_probe_result(address="10.0.0.21"))

        assert inventory_store.get_device_by_address("10.0.0.21").open_ports == []


class TestConflicts:
    """Tests for MAC and hostname conflict detection."""

    def test_mac_conflict_deduped_per_job(self, inventory_store, reconciler, sample_device, sample_probe_result):
        """Test a duplicate MAC is logged once per job."""
        inventory_store.upsert_device(sample_device(address="10.0.0.1", mac="aa:bb:cc:dd:ee:ff"))
        result = sample_probe_result(address="10.0.0.2", mac="aa:bb:cc:dd:ee:ff")

        reconciler.reconcile(result, job_id="j1")
        reconciler.reconcile(result, job_id="j1")
        assert len(_actions(inventory_store, ActivityAction.MAC_CONFLICT)) == 1

        reconciler.forget_job("j1")
        reconciler.reconcile(result, job_id="j2")
        entries = _actions(inventory_store, ActivityAction.MAC_CONFLICT)
        assert len(entries) == 2
        assert entries[-1].details["other_address"] == "10.0.0.1"

    def test_hostname_conflict(self, inventory_store, reconciler, sample_device, sample_probe_result):
        """Test the same hostname on two different MACs is logged."""
        inventory_store.upsert_device(sample_device(address="10.0.0.1", hostname="nvr-1", mac="aa:aa:aa:aa:aa:aa"))

        reconciler.reconcile(
            sample_probe_result(address="10.0.0.2", hostname="NVR-1", mac="bb:bb:bb:bb:bb:bb"), job_id="j1"
        )

        entries = _actions(inventory_store, ActivityAction.HOSTNAME_CONFLICT)
        assert len(entries) == 1
        assert entries[0].details["address"] == "10.0.0.2"

    def test_dead_hosts_never_conflict(self, inventory_store, reconciler, sample_device):
        """Test conflict checks only run for live results."""
        inventory_store.upsert_device(sample_device(address="10.0.0.1", mac="aa:bb:cc:dd:ee:ff"))
        inventory_store.upsert_device(sample_device(address="10.0.0.2", mac="aa:bb:cc:dd:ee:ff"))

        reconciler.reconcile(ProbeResult(address="10.0.0.2", alive=False, mac="aa:bb:cc:dd:ee:ff", observed_at=T0))

        assert _actions(inventory_store, ActivityAction.MAC_CONFLICT) == []


class TestRetry:
    """Tests for version-conflict retries."""

    def test_retries_then_succeeds(self, inventory_store, reconciler, sample_probe_result):
        """Test a concurrent write is retried from a fresh read."""
        real_upsert = inventory_store.upsert_device
        attempts = []

        def _flaky(device):
            attempts.append(device)
            if len(attempts) == 1:
                raise ReconciliationConflict(device.address)
            return real_upsert(device)

        with patch.object(inventory_store, "upsert_device", side_effect=_flaky):
            outcome = reconciler.reconcile(sample_probe_result())

        assert len(attempts) == 2
        assert outcome.created is True

    def test_gives_up(self, inventory_store, reconciler, sample_probe_result):
        """Test persistent conflicts surface after max_retries attempts."""
        with patch.object(
            inventory_store, "upsert_device", side_effect=ReconciliationConflict("192.168.1.50")
        ) as mock_upsert:
            with pytest.raises(ReconciliationConflict):
                reconciler.reconcile(sample_probe_result())

        assert mock_upsert.call_count == 3
        assert inventory_store.list_activity() == []


class TestAlertsAndReassign:
    """Tests for alert delivery and subnet reassignment."""

    def test_undelivered_alert_not_logged(self, inventory_store, reconciler, notifier):
        """Test ALERT_SENT is only recorded on successful delivery."""
        notifier.notify.return_value = False
        reconciler.alert(AlertEvent(event_type=AlertType.SCAN_FAILED, device_or_subnet_id="j1"))

        assert inventory_store.list_activity() == []

    def test_notifier_exception_contained(self, inventory_store, reconciler, notifier):
        """Test a raising notifier does not propagate."""
        notifier.notify.side_effect = RuntimeError("down")
        reconciler.alert(AlertEvent(event_type=AlertType.SCAN_FAILED, device_or_subnet_id="j1"))

        assert inventory_store.list_activity() == []

    def test_reassign_devices(self, inventory_store, reconciler):
        """Test devices with a stale subnet are moved to their longest prefix match."""
        subnet = inventory_store.add_subnet(Subnet(network="10.0.0.0/24"))
        inventory_store.upsert_device(Device(address="10.0.0.7", subnet_id=None))
        inventory_store.upsert_device(Device(address="10.0.0.8", subnet_id=subnet.id))

        assert reconciler.reassign_devices() == 1
        assert inventory_store.get_device_by_address("10.0.0.7").subnet_id == subnet.id
