from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from celery.exceptions import SoftTimeLimitExceeded

from reconscan.manager import STALE_REASON
from reconscan.models import ScanRecord, ScanStatus, utcnow
from reconscan.tasks import run_scan_task, sweep_stale_scans

pytestmark = pytest.mark.unit


@pytest.fixture
def worker_manager(mocker, make_manager, probe_kit):
    manager = make_manager(
        probe_kit.returning("p1", count=2),
        probe_kit.raising("p2", RuntimeError("boom")),
        watch_store_cancel=True,
    )
    mocker.patch("reconscan.tasks.get_worker_manager", return_value=manager)
    return manager


def test_run_scan_task_completes_scan(worker_manager):
    record = worker_manager.create("https://example.com")

    # .run() executes the task body without a broker
    result = run_scan_task.run(record.scan_id)

    assert result == {
        "scan_id": record.scan_id,
        "status": "Completed",
        "probes_completed": 2,
        "probes_total": 2,
        "total_findings": 2,
    }
    final = worker_manager.status(record.scan_id)
    assert final.probe_error_count == 1


def test_run_scan_task_honours_cancel_requested_before_pickup(worker_manager):
    record = worker_manager.create("https://example.com")
    worker_manager.store.request_cancel(record.scan_id)

    result = run_scan_task.run(record.scan_id)

    assert result["status"] == "Cancelled"
    assert result["probes_completed"] == 0


def test_soft_time_limit_marks_scan_failed(worker_manager, mocker):
    record = worker_manager.create("https://example.com")
    mocker.patch.object(worker_manager, "execute", side_effect=SoftTimeLimitExceeded())

    result = run_scan_task.run(record.scan_id)

    assert result["status"] == "Failed"
    assert worker_manager.status(record.scan_id).failure_reason == "worker time limit exceeded"


def test_sweep_stale_scans(worker_manager):
    stale = ScanRecord(
        scan_id="stale-1",
        target="https://example.com",
        status=ScanStatus.RUNNING,
        start_time=utcnow() - timedelta(hours=2),
    )
    fresh = ScanRecord(scan_id="fresh-1", target="https://example.com", status=ScanStatus.RUNNING)
    worker_manager.store.save(stale)
    worker_manager.store.save(fresh)

    result = sweep_stale_scans.run()

    assert result == {"swept_count": 1, "scan_ids": ["stale-1"]}
    swept = worker_manager.status("stale-1")
    assert swept.status == ScanStatus.FAILED
    assert swept.failure_reason == STALE_REASON
    assert worker_manager.status("fresh-1").status == ScanStatus.RUNNING


def test_result_is_json_serializable(mocker):
    manager = MagicMock()
    record = ScanRecord(scan_id="s1", target="https://example.com", status=ScanStatus.COMPLETED)

    async def execute(scan_id):
        return record

    manager.execute = execute
    mocker.patch("reconscan.tasks.get_worker_manager", return_value=manager)

    result = run_scan_task.run("s1")

    assert result["status"] == "Completed"
    assert all(isinstance(v, (str, int)) for v in result.values())
