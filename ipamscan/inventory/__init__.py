"""Device inventory subpackage: subnets, devices, activity log, settings and alerts."""

from ipamscan.inventory.models import (
    ActivityAction,
    ActivityLogEntry,
    AlertEvent,
    AlertType,
    AssignmentType,
    Device,
    DeviceStatus,
    Subnet,
    Vlan,
)
from ipamscan.inventory.notifications import CompositeNotifier, LogNotifier, Notifier, WebhookNotifier
from ipamscan.inventory.settings import DEFAULT_SETTINGS, InMemorySettingsStore, ScanSettings, SettingsStore
from ipamscan.inventory.store import InMemoryInventoryStore, InventoryStore, JsonInventoryStore
from ipamscan.inventory.subnets import longest_prefix_match, subnet_utilization
from ipamscan.inventory.vlans import assign_vlans, infer_vlan

__all__ = [
    "ActivityAction",
    "ActivityLogEntry",
    "AlertEvent",
    "AlertType",
    "AssignmentType",
    "Device",
    "DeviceStatus",
    "Subnet",
    "Vlan",
    "CompositeNotifier",
    "LogNotifier",
    "Notifier",
    "WebhookNotifier",
    "DEFAULT_SETTINGS",
    "InMemorySettingsStore",
    "ScanSettings",
    "SettingsStore",
    "InMemoryInventoryStore",
    "InventoryStore",
    "JsonInventoryStore",
    "longest_prefix_match",
    "subnet_utilization",
    "assign_vlans",
    "infer_vlan",
]
