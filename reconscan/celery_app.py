"""
Celery Worker Configuration for reconscan

- Redis broker and result backend (TLS checked in production)
- JSON-only task serialization
- Task time limits sized from the scan deadline
- Beat schedule for the stale scan sweeper
"""
import logging

from celery import Celery

from .config import configure_logging, get_settings

logger = logging.getLogger(__name__)

configure_logging()
settings = get_settings()
settings.check_redis_tls()

celery_app = Celery(
    "reconscan",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["reconscan.tasks"],
)

# Hard limit leaves room for the grace period and final persistence.
_soft_limit = int(settings.scan_deadline_seconds + settings.scan_grace_seconds) + 60

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    task_track_started=True,
    task_soft_time_limit=_soft_limit,
    task_time_limit=_soft_limit + 100,
    worker_concurrency=4,
    broker_connection_retry_on_startup=True,
)

celery_app.conf.task_annotations = {
    "scan.run_scan": {
        "rate_limit": "10/m",  # Don't DoS targets
    },
}

celery_app.conf.beat_schedule = {
    "sweep-stale-scans": {
        "task": "scan.sweep_stale_scans",
        "schedule": 600.0,  # Every 10 minutes
    },
}
