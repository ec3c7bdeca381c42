"""
Result Aggregator

Folds orchestrator outcomes into a ScanRecord one probe at a time. Every
apply() swaps in a new immutable record, so a probe's findings land all at
once and readers never see half a batch.
"""
import logging

from .models import ScanRecord, ScanStatus
from .orchestrator import ProbeOutcome

logger = logging.getLogger(__name__)


class ResultAggregator:
    def __init__(self, record: ScanRecord):
        self._record = record

    @property
    def record(self) -> ScanRecord:
        return self._record

    def apply(self, outcome: ProbeOutcome) -> ScanRecord:
        current = self._record
        if current.status != ScanStatus.RUNNING:
            raise RuntimeError(f"Cannot fold results into a {current.status.value} scan")

        update = {"probes_completed": current.probes_completed + 1}
        if outcome.error is not None:
            update["probe_errors"] = current.probe_errors + (outcome.error,)
        elif outcome.findings:
            update["findings"] = current.findings + outcome.findings

        self._record = current.model_copy(update=update)
        logger.debug(
            "Scan %s: %s folded (%d/%d)",
            current.scan_id, outcome.probe_name, self._record.probes_completed, self._record.probes_total,
        )
        return self._record
