"""
Exception taxonomy for the scan engine.

Probe-level failures (ProbeError) never escape the orchestrator. Systemic
failures fail a whole scan. The remaining errors are caller-facing and are
raised by the ScanManager API only.
"""
from typing import Optional

from .models import ProbeFailureReason


class ScanEngineError(Exception):
    """Base class for everything the engine raises on purpose."""


class InvalidTarget(ScanEngineError):
    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Invalid target {target!r}: {reason}")


class ProbeError(ScanEngineError):
    """
    Raised by a probe to report a classified failure.

    Probes may raise anything; the orchestrator converts unknown exceptions
    into UNEXPECTED_EXCEPTION. Raising ProbeError lets a probe choose the
    reason itself (e.g. NETWORK_FAILURE after exhausting its own retries).
    """

    def __init__(self, name: str, reason: ProbeFailureReason, detail: str = ""):
        self.name = name
        self.reason = reason
        self.detail = detail
        super().__init__(f"{name}: {reason.value}{f' ({detail})' if detail else ''}")


class SystemicFailure(ScanEngineError):
    """A precondition for the whole scan failed; no probe result is meaningful."""


class DuplicateProbeName(ScanEngineError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Probe {name!r} is already registered")


class RegistryLocked(ScanEngineError):
    """The registry is read-only while scans hold it."""


class ScanRequestError(ScanEngineError):
    """Base for errors returned to API callers about a specific scan."""

    def __init__(self, scan_id: str, message: Optional[str] = None):
        self.scan_id = scan_id
        super().__init__(message or f"{type(self).__name__}: {scan_id}")


class NotFound(ScanRequestError):
    def __init__(self, scan_id: str):
        super().__init__(scan_id, f"Scan {scan_id} not found")


class NotCancellable(ScanRequestError):
    def __init__(self, scan_id: str, status):
        self.status = status
        super().__init__(scan_id, f"Scan {scan_id} is already {status.value} and cannot be cancelled")


class NotCompleted(ScanRequestError):
    def __init__(self, scan_id: str, status):
        self.status = status
        super().__init__(scan_id, f"Scan {scan_id} is {status.value}, results are only available once Completed")


class ScanActive(ScanRequestError):
    def __init__(self, scan_id: str, status):
        self.status = status
        super().__init__(scan_id, f"Scan {scan_id} is still {status.value}; cancel it first")


class InvalidTransition(ScanEngineError):
    """A status change the scan state machine does not allow."""

    def __init__(self, scan_id: str, current, requested):
        self.scan_id = scan_id
        self.current = current
        self.requested = requested
        super().__init__(f"Scan {scan_id}: cannot move from {current.value} to {requested.value}")
