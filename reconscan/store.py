"""
Scan persistence.

The engine only needs a small key-value contract (ScanStore). Two backends:
InMemoryScanStore for a single process and tests, RedisScanStore for
sharing state between the API and Celery workers.

Redis layout (all keys expire after the configured TTL):
  scan:{id}:record   JSON ScanRecord
  scan:{id}:logs     list of formatted log lines
  scan:{id}:cancel   present when a cancel was requested
  scans:index        sorted set of scan ids scored by start time

Status changes made while a scan is live go through save_if_active, a
WATCH/MULTI compare-and-set, so a finished scan is never overwritten by a
slower writer.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List

import redis

from .errors import NotFound
from .models import ScanRecord

logger = logging.getLogger(__name__)

DEFAULT_TTL = 86400
INDEX_KEY = "scans:index"


class ScanStore(ABC):
    @abstractmethod
    def save(self, record: ScanRecord) -> None:
        ...

    @abstractmethod
    def save_if_active(self, record: ScanRecord) -> bool:
        """
        Save only if the stored record exists and is not terminal.

        Returns False, writing nothing, when another writer already finished
        or deleted the scan.
        """

    @abstractmethod
    def load(self, scan_id: str) -> ScanRecord:
        """Raises NotFound when no record exists."""

    @abstractmethod
    def delete(self, scan_id: str) -> bool:
        ...

    @abstractmethod
    def list_records(self) -> List[ScanRecord]:
        """All records, newest first."""

    @abstractmethod
    def append_log(self, scan_id: str, line: str) -> None:
        ...

    @abstractmethod
    def logs(self, scan_id: str) -> List[str]:
        ...

    @abstractmethod
    def request_cancel(self, scan_id: str) -> None:
        ...

    @abstractmethod
    def cancel_requested(self, scan_id: str) -> bool:
        ...


class InMemoryScanStore(ScanStore):
    def __init__(self):
        self._records: Dict[str, ScanRecord] = {}
        self._logs: Dict[str, List[str]] = {}
        self._cancel_flags = set()

    def save(self, record: ScanRecord) -> None:
        self._records[record.scan_id] = record

    def save_if_active(self, record: ScanRecord) -> bool:
        current = self._records.get(record.scan_id)
        if current is None or current.status.is_terminal:
            return False
        self._records[record.scan_id] = record
        return True

    def load(self, scan_id: str) -> ScanRecord:
        try:
            return self._records[scan_id]
        except KeyError:
            raise NotFound(scan_id) from None

    def delete(self, scan_id: str) -> bool:
        self._logs.pop(scan_id, None)
        self._cancel_flags.discard(scan_id)
        return self._records.pop(scan_id, None) is not None

    def list_records(self) -> List[ScanRecord]:
        return sorted(self._records.values(), key=lambda r: r.start_time, reverse=True)

    def append_log(self, scan_id: str, line: str) -> None:
        self._logs.setdefault(scan_id, []).append(line)

    def logs(self, scan_id: str) -> List[str]:
        return list(self._logs.get(scan_id, []))

    def request_cancel(self, scan_id: str) -> None:
        self._cancel_flags.add(scan_id)

    def cancel_requested(self, scan_id: str) -> bool:
        return scan_id in self._cancel_flags


class RedisScanStore(ScanStore):
    def __init__(self, client, ttl: int = DEFAULT_TTL):
        self.client = client
        self.ttl = ttl

    @classmethod
    def from_url(cls, url: str, ttl: int = DEFAULT_TTL) -> "RedisScanStore":
        return cls(redis.from_url(url, decode_responses=True), ttl=ttl)

    @staticmethod
    def _key(scan_id: str, suffix: str) -> str:
        return f"scan:{scan_id}:{suffix}"

    def save(self, record: ScanRecord) -> None:
        self.client.set(self._key(record.scan_id, "record"), record.model_dump_json(), ex=self.ttl)
        self.client.zadd(INDEX_KEY, {record.scan_id: record.start_time.timestamp()})

    def save_if_active(self, record: ScanRecord) -> bool:
        key = self._key(record.scan_id, "record")
        with self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None or ScanRecord.model_validate_json(raw).status.is_terminal:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.set(key, record.model_dump_json(), ex=self.ttl)
                    pipe.zadd(INDEX_KEY, {record.scan_id: record.start_time.timestamp()})
                    pipe.execute()
                    return True
                except redis.WatchError:
                    logger.debug("Scan %s changed during save; retrying", record.scan_id)
                    continue

    def load(self, scan_id: str) -> ScanRecord:
        raw = self.client.get(self._key(scan_id, "record"))
        if raw is None:
            raise NotFound(scan_id)
        return ScanRecord.model_validate_json(raw)

    def delete(self, scan_id: str) -> bool:
        removed = self.client.delete(
            self._key(scan_id, "record"), self._key(scan_id, "logs"), self._key(scan_id, "cancel"),
        )
        self.client.zrem(INDEX_KEY, scan_id)
        return bool(removed)

    def list_records(self) -> List[ScanRecord]:
        records = []
        for scan_id in self.client.zrevrange(INDEX_KEY, 0, -1):
            try:
                records.append(self.load(scan_id))
            except NotFound:
                # Record expired; drop the dangling index entry.
                self.client.zrem(INDEX_KEY, scan_id)
        return records

    def append_log(self, scan_id: str, line: str) -> None:
        key = self._key(scan_id, "logs")
        self.client.rpush(key, line)
        self.client.expire(key, self.ttl)

    def logs(self, scan_id: str) -> List[str]:
        return list(self.client.lrange(self._key(scan_id, "logs"), 0, -1))

    def request_cancel(self, scan_id: str) -> None:
        self.client.set(self._key(scan_id, "cancel"), "1", ex=self.ttl)

    def cancel_requested(self, scan_id: str) -> bool:
        return bool(self.client.exists(self._key(scan_id, "cancel")))


def build_store(settings) -> ScanStore:
    if settings.scan_store == "redis":
        logger.info("Using redis scan store")
        return RedisScanStore.from_url(settings.redis_url, ttl=settings.scan_ttl_seconds)
    return InMemoryScanStore()
