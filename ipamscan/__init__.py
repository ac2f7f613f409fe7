"""IPAM network discovery and scan orchestration engine.

Sweeps configured subnets, probes every host for liveness and identity,
streams scan progress to subscribers and reconciles the results into a
device inventory.
"""

__version__ = "0.1.0"

import os
import sys
from typing import Any, Callable, Dict

from loguru import logger as glogger

glogger.disable(__name__)


def _loguru_skiplog_filter(record: dict) -> bool:  # type: ignore[type-arg]
    """Filter function to hide records with ``extra['skiplog']`` set."""
    return not record.get("extra", {}).get("skiplog", False)


def configure_logging(
    loguru_filter: Callable[[Dict[str, Any]], bool] = _loguru_skiplog_filter,
) -> None:
    """Configure a default ``loguru`` sink and enable the package logger."""
    os.environ["LOGURU_LEVEL"] = os.getenv("LOGURU_LEVEL", "INFO")
    glogger.remove()
    logger_fmt: str = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{module}</cyan>::<cyan>{extra[classname]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    )
    glogger.add(sys.stderr, level=os.getenv("LOGURU_LEVEL"), format=logger_fmt, filter=loguru_filter)  # type: ignore[arg-type]
    glogger.configure(extra={"classname": "None", "skiplog": False})
    glogger.enable(__name__)


from ipamscan.exceptions import (  # noqa: E402
    AlreadyRunning,
    AlreadyTerminal,
    InvalidCIDR,
    InvalidSubnet,
    JobAborted,
    JobNotFound,
    PersistenceError,
    ProbeTimeout,
    ReconciliationConflict,
    ScanError,
)

__all__ = [
    "glogger",
    "configure_logging",
    "ScanError",
    "InvalidCIDR",
    "InvalidSubnet",
    "AlreadyRunning",
    "AlreadyTerminal",
    "JobNotFound",
    "ProbeTimeout",
    "ReconciliationConflict",
    "JobAborted",
    "PersistenceError",
]
