"""
Celery tasks: run a scan out of process, and recover scans whose worker died.

The API creates the Pending record and dispatches run_scan_task with the scan
id; the worker drives the scan with the same ScanManager, reading and writing
the shared redis store and polling the cancel flag.
"""
import asyncio
import logging
from datetime import timedelta
from functools import lru_cache

from celery.exceptions import SoftTimeLimitExceeded

from .celery_app import celery_app
from .config import get_settings
from .manager import ScanManager
from .probes import build_default_registry
from .store import build_store

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_worker_manager() -> ScanManager:
    settings = get_settings()
    return ScanManager(
        registry=build_default_registry(timeout=settings.probe_timeout_seconds),
        store=build_store(settings),
        settings=settings,
        watch_store_cancel=True,
    )


@celery_app.task(bind=True, name="scan.run_scan")
def run_scan_task(self, scan_id: str) -> dict:
    """Execute one Pending scan to completion inside the worker."""
    manager = get_worker_manager()
    logger.info("Worker picked up scan %s (task %s)", scan_id, self.request.id)
    try:
        record = asyncio.run(manager.execute(scan_id))
    except SoftTimeLimitExceeded:
        logger.error("Scan %s hit the worker time limit", scan_id)
        record = manager.mark_failed(scan_id, "worker time limit exceeded")

    return {
        "scan_id": scan_id,
        "status": record.status.value,
        "probes_completed": record.probes_completed,
        "probes_total": record.probes_total,
        "total_findings": record.total_findings,
    }


@celery_app.task(name="scan.sweep_stale_scans")
def sweep_stale_scans() -> dict:
    """
    Stale Job Sweeper: Recovers from worker crashes.

    Scans stuck in Running longer than STALE_SCAN_MINUTES belong to a worker
    that was killed (OOM, redeploy) and will never finish; mark them Failed.
    """
    manager = get_worker_manager()
    swept = manager.sweep_stale(timedelta(minutes=manager.settings.stale_scan_minutes))
    return {"swept_count": len(swept), "scan_ids": swept}
