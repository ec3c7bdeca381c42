from datetime import timedelta
from unittest.mock import Mock

import pytest
import redis

from reconscan.errors import NotFound
from reconscan.models import Finding, ScanRecord, ScanStatus, Severity, utcnow
from reconscan.scan_logger import ScanLogger
from reconscan.store import INDEX_KEY, InMemoryScanStore, RedisScanStore

pytestmark = pytest.mark.unit


def record(scan_id, offset=0, **kwargs):
    return ScanRecord(
        scan_id=scan_id,
        target="https://example.com",
        start_time=utcnow() + timedelta(seconds=offset),
        **kwargs,
    )


class TestRedisScanStore:

    @pytest.fixture
    def store(self, mock_redis_client):
        return RedisScanStore(mock_redis_client, ttl=3600)

    def test_save_and_load(self, store, mock_redis_client):
        original = record("abc", status=ScanStatus.RUNNING,
                          findings=(Finding(probe_name="p", severity=Severity.HIGH, title="t"),))
        store.save(original)

        mock_redis_client.set.assert_called_once()
        args, kwargs = mock_redis_client.set.call_args
        assert args[0] == "scan:abc:record"
        assert kwargs == {"ex": 3600}
        assert store.load("abc") == original

    def test_load_missing_raises_not_found(self, store):
        with pytest.raises(NotFound):
            store.load("nope")

    def test_list_records_newest_first_and_drops_expired(self, store, mock_redis_client):
        store.save(record("old", offset=-10))
        store.save(record("new", offset=0))
        store.save(record("gone", offset=5))
        del mock_redis_client.storage["scan:gone:record"]

        assert [r.scan_id for r in store.list_records()] == ["new", "old"]
        mock_redis_client.zrem.assert_called_with(INDEX_KEY, "gone")

    def test_logs_are_appended_with_ttl(self, store, mock_redis_client):
        store.append_log("abc", "line 1")
        store.append_log("abc", "line 2")

        assert store.logs("abc") == ["line 1", "line 2"]
        mock_redis_client.expire.assert_called_with("scan:abc:logs", 3600)

    def test_cancel_flag(self, store):
        assert not store.cancel_requested("abc")
        store.request_cancel("abc")
        assert store.cancel_requested("abc")

    def test_delete_removes_everything(self, store, mock_redis_client):
        store.save(record("abc"))
        store.append_log("abc", "line")
        store.request_cancel("abc")

        assert store.delete("abc") is True
        assert mock_redis_client.storage == {}
        assert store.list_records() == []
        assert store.delete("abc") is False

    def test_save_if_active_updates_live_scan(self, store, mock_redis_client):
        store.save(record("abc", status=ScanStatus.RUNNING))
        updated = record("abc", status=ScanStatus.RUNNING, concurrency=2)

        assert store.save_if_active(updated) is True
        assert store.load("abc") == updated
        mock_redis_client.pipeline.assert_called_once()

    def test_save_if_active_refuses_finished_or_missing_scan(self, store):
        finished = record("abc", status=ScanStatus.FAILED, failure_reason="worker time limit exceeded")
        store.save(finished)

        assert store.save_if_active(record("abc", status=ScanStatus.COMPLETED)) is False
        assert store.load("abc") == finished
        assert store.save_if_active(record("missing", status=ScanStatus.RUNNING)) is False
        with pytest.raises(NotFound):
            store.load("missing")

    def test_save_if_active_rechecks_after_concurrent_write(self, store, mock_redis_client):
        store.save(record("abc", status=ScanStatus.RUNNING))
        pipe = mock_redis_client.pipeline()
        mock_redis_client.pipeline = Mock(return_value=pipe)
        finished = record("abc", status=ScanStatus.FAILED, failure_reason="stale: worker lost")

        def concurrent_write():
            store.save(finished)
            raise redis.WatchError("scan:abc:record changed")

        pipe.execute.side_effect = concurrent_write

        assert store.save_if_active(record("abc", status=ScanStatus.RUNNING, concurrency=2)) is False
        assert store.load("abc") == finished
        assert pipe.watch.call_count == 2
        pipe.unwatch.assert_called_once()


class TestInMemoryScanStore:

    def test_contract(self):
        store = InMemoryScanStore()
        store.save(record("a", offset=-1))
        store.save(record("b"))
        store.append_log("a", "hello")
        store.request_cancel("a")

        assert [r.scan_id for r in store.list_records()] == ["b", "a"]
        assert store.logs("a") == ["hello"]
        assert store.cancel_requested("a")
        assert store.delete("a")
        assert store.logs("a") == []
        assert not store.cancel_requested("a")
        with pytest.raises(NotFound):
            store.load("a")

    def test_save_if_active(self):
        store = InMemoryScanStore()
        store.save(record("a", status=ScanStatus.RUNNING))
        store.save(record("b", status=ScanStatus.CANCELLED))

        assert store.save_if_active(record("a", status=ScanStatus.COMPLETED))
        assert store.load("a").status == ScanStatus.COMPLETED
        assert not store.save_if_active(record("a", status=ScanStatus.FAILED))
        assert store.load("a").status == ScanStatus.COMPLETED
        assert not store.save_if_active(record("b", status=ScanStatus.FAILED))
        assert not store.save_if_active(record("c", status=ScanStatus.RUNNING))


class TestScanLogger:

    def test_log_line_format(self, mock_redis_client):
        store = RedisScanStore(mock_redis_client)
        entry = ScanLogger("test-scan-id", store).log("INFO", "Test message")

        mock_redis_client.rpush.assert_called_once()
        args = mock_redis_client.rpush.call_args
        assert args[0][0] == "scan:test-scan-id:logs"
        assert "[INFO] Test message" in args[0][1]
        assert entry == args[0][1]
        mock_redis_client.expire.assert_called_once_with("scan:test-scan-id:logs", 86400)

    def test_phase_is_logged_as_system(self):
        store = InMemoryScanStore()
        ScanLogger("s1", store).phase("Running")

        assert store.logs("s1")[0].endswith("[SYSTEM] Status updated to: Running")
