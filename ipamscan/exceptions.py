"""Exception hierarchy for scan orchestration."""

from __future__ import annotations


class ScanError(Exception):
    """Base exception for all discovery and scan errors."""


class InvalidCIDR(ScanError):
    """Subnet notation could not be parsed or its prefix is out of range."""

    def __init__(self, cidr: str, reason: str = ""):
        self.cidr = cidr
        message = f"Invalid CIDR '{cidr}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class InvalidSubnet(ScanError):
    """Scan requested for subnet ids that are not configured."""

    def __init__(self, message: str, subnet_ids: list[int] | None = None):
        self.subnet_ids = subnet_ids or []
        super().__init__(message)


class AlreadyRunning(ScanError):
    """A live job already covers one of the requested subnets."""

    def __init__(self, subnet_ids: list[int], job_id: str):
        self.subnet_ids = subnet_ids
        self.job_id = job_id
        ids = ", ".join(str(s) for s in subnet_ids)
        super().__init__(f"Subnet(s) {ids} already being scanned by job {job_id}")


class JobNotFound(ScanError):
    """No job with the given id is known to the registry."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Scan job {job_id} not found")


class AlreadyTerminal(ScanError):
    """The job already completed, failed or was cancelled."""

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Scan job {job_id} is already {status}")


class ProbeTimeout(ScanError):
    """A single probe step ran out of its time budget."""

    def __init__(self, address: str, step: str):
        self.address = address
        self.step = step
        super().__init__(f"{step} timed out for {address}")


class ReconciliationConflict(ScanError):
    """A device row changed underneath a reconciliation write."""

    def __init__(self, address: str, message: str = ""):
        self.address = address
        super().__init__(message or f"Concurrent update of device {address}")


class JobAborted(ScanError):
    """Coordinator-level failure that ends the whole job."""


class PersistenceError(ScanError):
    """The inventory store could not be read or written."""
