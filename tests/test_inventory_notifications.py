"""Tests for ipamscan/inventory/notifications.py"""

from unittest.mock import MagicMock

import requests

from ipamscan.inventory.models import AlertEvent, AlertType
from ipamscan.inventory.notifications import CompositeNotifier, LogNotifier, WebhookNotifier


def _event():
    return AlertEvent(event_type=AlertType.DEVICE_OFFLINE, device_or_subnet_id="7", detail="cam-3 is offline")


class TestWebhookNotifier:
    """Tests for WebhookNotifier."""

    def test_posts_event_json(self):
        """Test the event is POSTed as JSON."""
        session = MagicMock()
        notifier = WebhookNotifier("http://hooks.example/ipam", timeout=2.0, session=session)

        assert notifier.notify(_event()) is True

        session.post.assert_called_once_with(
            "http://hooks.example/ipam",
            json={"event_type": "device_offline", "device_or_subnet_id": "7", "detail": "cam-3 is offline"},
            timeout=2.0,
        )

    def test_delivery_error_is_swallowed(self):
        """Test HTTP errors are logged and reported as False, not raised."""
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")
        notifier = WebhookNotifier("http://hooks.example/ipam", session=session)

        assert notifier.notify(_event()) is False

    def test_http_status_error(self):
        """Test non-2xx responses count as failed delivery."""
        session = MagicMock()
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("500")
        notifier = WebhookNotifier("http://hooks.example/ipam", session=session)

        assert notifier.notify(_event()) is False


class TestCompositeNotifier:
    """Tests for CompositeNotifier."""

    def test_fans_out_and_isolates_errors(self):
        """Test every notifier is called and one raising does not stop the rest."""
        broken = MagicMock()
        broken.notify.side_effect = RuntimeError("bug")
        working = MagicMock()
        working.notify.return_value = True

        assert CompositeNotifier([broken, working]).notify(_event()) is True
        working.notify.assert_called_once()

    def test_log_notifier(self):
        """Test LogNotifier always succeeds."""
        assert LogNotifier().notify(_event()) is True
