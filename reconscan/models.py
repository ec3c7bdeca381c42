"""
Centralized Pydantic Data Models for reconscan
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Severity(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    INFO = "Info"


class ScanStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ScanStatus.COMPLETED, ScanStatus.FAILED, ScanStatus.CANCELLED})


class ProbeFailureReason(str, Enum):
    TIMEOUT = "Timeout"
    NETWORK_FAILURE = "NetworkFailure"
    UNEXPECTED_EXCEPTION = "UnexpectedException"
    DEADLINE_EXCEEDED = "DeadlineExceeded"


class ScanType(str, Enum):
    FULL = "full"
    QUICK = "quick"
    CUSTOM = "custom"


class Finding(BaseModel):
    """A single issue reported by a probe. Immutable once produced."""
    model_config = ConfigDict(frozen=True)

    probe_name: str = ""
    severity: Severity
    title: str
    description: str = ""
    evidence: str = ""
    remediation: str = ""


class ProbeErrorRecord(BaseModel):
    """Why one probe produced no findings."""
    model_config = ConfigDict(frozen=True)

    probe_name: str
    reason: ProbeFailureReason
    detail: str = ""


class ScanRecord(BaseModel):
    """
    The canonical state of one scan.

    Records are immutable values; every change produces a new record via
    model_copy(), so a reader always holds a consistent snapshot.
    Derived figures (severity counts, totals, duration) are computed on read.
    """
    model_config = ConfigDict(frozen=True)

    scan_id: str
    target: str
    status: ScanStatus = ScanStatus.PENDING
    scan_type: ScanType = ScanType.FULL
    enabled_categories: Optional[Tuple[str, ...]] = None
    probe_names: Tuple[str, ...] = ()
    concurrency: int = 5
    deadline_seconds: float = 300.0
    grace_seconds: float = 2.0
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    probes_total: int = 0
    probes_completed: int = 0
    findings: Tuple[Finding, ...] = ()
    probe_errors: Tuple[ProbeErrorRecord, ...] = ()
    failure_reason: Optional[str] = None

    @computed_field
    @property
    def severity_counts(self) -> Dict[str, int]:
        counts = {severity.value: 0 for severity in Severity}
        for finding in self.findings:
            counts[finding.severity.value] += 1
        return counts

    @computed_field
    @property
    def total_findings(self) -> int:
        return len(self.findings)

    @computed_field
    @property
    def probe_error_count(self) -> int:
        return len(self.probe_errors)

    @computed_field
    @property
    def duration_ms(self) -> Optional[int]:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)


class ScanProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    scan_id: str
    status: ScanStatus
    probes_completed: int
    probes_total: int


class ScanOptions(BaseModel):
    """Per-scan knobs. Unset values fall back to Settings."""
    enabled_categories: Optional[List[str]] = None
    scan_type: ScanType = ScanType.FULL
    concurrency: Optional[int] = Field(default=None, ge=1, le=100)
    deadline_seconds: Optional[float] = Field(default=None, gt=0)
    grace_seconds: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _custom_needs_categories(self):
        if self.scan_type == ScanType.CUSTOM and not self.enabled_categories:
            raise ValueError("custom scans need enabled_categories")
        return self


class StartScanRequest(ScanOptions):
    """Body of POST /scans"""
    target_url: str


class ScanPage(BaseModel):
    """One page of GET /scans, newest first."""
    items: List[ScanRecord]
    total: int
    page: int
    limit: int
