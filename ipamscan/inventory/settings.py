"""Settings collaborator: string key/value store with a validated scan view."""

from __future__ import annotations

import os
import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

ENV_PREFIX = "IPAMSCAN_"

DEFAULT_SETTINGS: dict[str, str] = {
    # operator settings
    "scan_interval": "5",  # minutes
    "ping_timeout": "2",  # seconds
    "auto_discovery": "true",
    "port_scanning": "true",
    "device_alerts": "true",
    "subnet_alerts": "true",
    "alert_threshold": "90",  # percent
    # engine tuning
    "probe_timeout": "5",
    "port_timeout": "1",
    "dns_timeout": "2",
    "probe_ports": "22,23,80,443,554,1935,8080,9000",
    "probe_pool_size": "64",
    "tcp_fallback": "true",
    "skip_gateway": "false",
    "cancel_grace": "5",
    "scan_overlap_policy": "reject",
    "snmp_routers": "",
    "webhook_url": "",
    "vlan_inference": "true",
}


class SettingsStore(ABC):
    """String-valued settings, read on every use so edits apply without restart."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Current value of *key*, or None when unset."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Persist *value* for *key*."""

    @abstractmethod
    def all(self) -> dict[str, str]:
        """Snapshot of every setting."""


class InMemorySettingsStore(SettingsStore):
    """Settings seeded from DEFAULT_SETTINGS.

    ``IPAMSCAN_<KEY>`` environment variables win over stored values, so a
    deployment can pin a setting regardless of what operators store.
    """

    def __init__(self, initial: Mapping[str, str] | None = None, environ: Mapping[str, str] | None = None):
        self._values = dict(DEFAULT_SETTINGS)
        if initial:
            self._values.update({k: str(v) for k, v in initial.items()})
        self._environ = os.environ if environ is None else environ
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        override = self._environ.get(ENV_PREFIX + key.upper())
        if override is not None:
            return override
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = str(value)
        logger.debug(f"Setting {key} = {value}")

    def all(self) -> dict[str, str]:
        with self._lock:
            keys = list(self._values)
        return {k: v for k in keys if (v := self.get(k)) is not None}


def _split_list(value: Any) -> Any:
    if isinstance(value, str):
        return [p.strip() for p in value.split(",") if p.strip()]
    return value


class ScanSettings(BaseModel):
    """Typed, validated view of the settings the engine reads."""

    scan_interval: int = Field(5, ge=1)
    ping_timeout: float = Field(2.0, gt=0)
    auto_discovery: bool = True
    port_scanning: bool = True
    device_alerts: bool = True
    subnet_alerts: bool = True
    alert_threshold: float = Field(90.0, ge=0, le=100)
    probe_timeout: float = Field(5.0, gt=0)
    port_timeout: float = Field(1.0, gt=0)
    dns_timeout: float = Field(2.0, gt=0)
    probe_ports: list[int] = Field(default_factory=lambda: [22, 23, 80, 443, 554, 1935, 8080, 9000])
    probe_pool_size: int = Field(64, ge=1, le=1024)
    tcp_fallback: bool = True
    skip_gateway: bool = False
    cancel_grace: float = Field(5.0, ge=0)
    scan_overlap_policy: Literal["reject", "queue"] = "reject"
    snmp_routers: list[tuple[str, str]] = Field(default_factory=list)
    webhook_url: str = ""
    vlan_inference: bool = True

    @field_validator("probe_ports", mode="before")
    @classmethod
    def _parse_ports(cls, v: Any) -> Any:
        return _split_list(v)

    @field_validator("probe_ports")
    @classmethod
    def _check_ports(cls, v: list[int]) -> list[int]:
        for port in v:
            if not 0 < port < 65536:
                raise ValueError(f"port {port} out of range")
        return list(dict.fromkeys(v))

    @field_validator("snmp_routers", mode="before")
    @classmethod
    def _parse_routers(cls, v: Any) -> Any:
        routers = []
        for part in _split_list(v):
            if isinstance(part, str):
                ip, _, community = part.partition(":")
                routers.append((ip, community or "public"))
            else:
                routers.append(part)
        return routers

    @classmethod
    def from_store(cls, store: SettingsStore) -> ScanSettings:
        """Read and validate *store*. Invalid values fall back to their defaults with a warning."""
        values = {k: v for k, v in store.all().items() if k in cls.model_fields}
        try:
            return cls.model_validate(values)
        except ValidationError as e:
            bad = {str(err["loc"][0]) for err in e.errors() if err["loc"]}
            for key in sorted(bad):
                logger.warning(f"Invalid setting {key}={values.get(key)!r}, using default")
            return cls.model_validate({k: v for k, v in values.items() if k not in bad})
