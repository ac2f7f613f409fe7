"""Notifier collaborator: alert delivery for device and subnet events."""

from __future__ import annotations

from abc import ABC, abstractmethod

import requests
from loguru import logger

from ipamscan.inventory.models import AlertEvent


class Notifier(ABC):
    """Delivers alert events. Implementations must not raise into the caller."""

    @abstractmethod
    def notify(self, event: AlertEvent) -> bool:
        """Deliver *event*. Returns True on success."""


class LogNotifier(Notifier):
    """Writes alerts to the log."""

    def notify(self, event: AlertEvent) -> bool:
        logger.warning(f"ALERT [{event.event_type.value}] {event.device_or_subnet_id}: {event.detail}")
        return True


class WebhookNotifier(Notifier):
    """POSTs the alert as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 5.0, session: requests.Session | None = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def notify(self, event: AlertEvent) -> bool:
        try:
            response = self.session.post(self.url, json=event.model_dump(mode="json"), timeout=self.timeout)
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.error(f"Webhook delivery to {self.url} failed: {e}")
            return False


class CompositeNotifier(Notifier):
    """Fans an alert out to several notifiers; succeeds if any of them does."""

    def __init__(self, notifiers: list[Notifier]):
        self.notifiers = notifiers

    def notify(self, event: AlertEvent) -> bool:
        delivered = False
        for notifier in self.notifiers:
            try:
                delivered = notifier.notify(event) or delivered
            except Exception as e:
                logger.error(f"{type(notifier).__name__} failed: {e}")
        return delivered
