"""
reconscan: probe-orchestration engine for web reconnaissance scans.
"""
from .cancellation import CancellationToken
from .errors import (
    DuplicateProbeName,
    InvalidTarget,
    NotCancellable,
    NotCompleted,
    NotFound,
    ProbeError,
    ScanActive,
    SystemicFailure,
)
from .manager import ScanManager
from .models import Finding, ProbeFailureReason, ScanOptions, ScanRecord, ScanStatus, Severity
from .orchestrator import ScanOrchestrator
from .registry import ProbeDescriptor, ProbeRegistry

__version__ = "0.1.0"

__all__ = [
    "CancellationToken",
    "DuplicateProbeName",
    "Finding",
    "InvalidTarget",
    "NotCancellable",
    "NotCompleted",
    "NotFound",
    "ProbeDescriptor",
    "ProbeError",
    "ProbeFailureReason",
    "ProbeRegistry",
    "ScanActive",
    "ScanManager",
    "ScanOptions",
    "ScanOrchestrator",
    "ScanRecord",
    "ScanStatus",
    "Severity",
    "SystemicFailure",
]
