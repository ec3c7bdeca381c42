# Test configuration
# Shared pytest fixtures: an in-memory redis double, fake probes, and a
# ScanManager wired to them.

import asyncio
from typing import List
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest

from reconscan.cancellation import CancellationToken
from reconscan.config import Settings
from reconscan.manager import ScanManager
from reconscan.models import Finding, Severity
from reconscan.registry import ProbeDescriptor, ProbeRegistry
from reconscan.store import InMemoryScanStore


# ============================================================================
# Mock Redis Client
# ============================================================================

@pytest.fixture
def mock_redis_client():
    """Mock Redis client for testing without actual Redis connection."""
    mock_client = MagicMock()

    # In-memory storage for testing
    storage = {}
    sorted_sets = {}

    def mock_get(key):
        return storage.get(key, None)

    def mock_set(key, value, ex=None):
        storage[key] = value
        return True

    def mock_rpush(key, value):
        storage.setdefault(key, []).append(value)
        return len(storage[key])

    def mock_lrange(key, start, end):
        if key not in storage:
            return []
        return storage[key][start:end + 1] if end != -1 else storage[key][start:]

    def mock_delete(*keys):
        removed = 0
        for key in keys:
            if key in storage:
                del storage[key]
                removed += 1
        return removed

    def mock_exists(key):
        return int(key in storage)

    def mock_zadd(key, mapping):
        sorted_sets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def mock_zrem(key, *members):
        zset = sorted_sets.get(key, {})
        return sum(1 for m in members if zset.pop(m, None) is not None)

    def mock_zrevrange(key, start, end):
        ordered = sorted(sorted_sets.get(key, {}).items(), key=lambda item: item[1], reverse=True)
        members = [member for member, _ in ordered]
        return members[start:end + 1] if end != -1 else members[start:]

    def mock_pipeline():
        # WATCH/MULTI pipeline: reads are immediate, writes wait for execute()
        pipe = MagicMock()
        queued = []
        pipe.__enter__.return_value = pipe
        pipe.__exit__.return_value = False
        pipe.get = Mock(side_effect=mock_get)
        pipe.set = Mock(side_effect=lambda *args, **kwargs: queued.append((mock_set, args, kwargs)))
        pipe.zadd = Mock(side_effect=lambda *args, **kwargs: queued.append((mock_zadd, args, kwargs)))

        def execute():
            ops = list(queued)
            queued.clear()
            return [op(*args, **kwargs) for op, args, kwargs in ops]

        pipe.execute = Mock(side_effect=execute)
        return pipe

    # Bind mock methods
    mock_client.get = Mock(side_effect=mock_get)
    mock_client.set = Mock(side_effect=mock_set)
    mock_client.rpush = Mock(side_effect=mock_rpush)
    mock_client.lrange = Mock(side_effect=mock_lrange)
    mock_client.delete = Mock(side_effect=mock_delete)
    mock_client.exists = Mock(side_effect=mock_exists)
    mock_client.expire = Mock(return_value=True)
    mock_client.zadd = Mock(side_effect=mock_zadd)
    mock_client.zrem = Mock(side_effect=mock_zrem)
    mock_client.zrevrange = Mock(side_effect=mock_zrevrange)
    mock_client.pipeline = Mock(side_effect=mock_pipeline)
    mock_client.ping = Mock(return_value=True)
    mock_client.storage = storage

    return mock_client


# ============================================================================
# Fake Probes
# ============================================================================

class ProbeKit:
    """Builds ProbeDescriptors with scripted behaviour."""

    def make(self, name, run, timeout=1.0, category="test") -> ProbeDescriptor:
        return ProbeDescriptor(name=name, category=category, timeout=timeout, run=run)

    def finding(self, title="Test finding", severity=Severity.LOW) -> Finding:
        return Finding(severity=severity, title=title, description="desc", evidence="ev", remediation="fix")

    def returning(self, name, count=1, delay=0.0, **kwargs) -> ProbeDescriptor:
        async def run(target: str, token: CancellationToken) -> List[Finding]:
            if delay:
                await asyncio.sleep(delay)
            return [self.finding(f"{name} #{i}") for i in range(count)]
        return self.make(name, run, **kwargs)

    def raising(self, name, exc, **kwargs) -> ProbeDescriptor:
        async def run(target, token):
            raise exc
        return self.make(name, run, **kwargs)

    def hanging(self, name, **kwargs) -> ProbeDescriptor:
        async def run(target, token):
            await asyncio.Event().wait()
        return self.make(name, run, **kwargs)

    def stubborn(self, name, hold=0.5, **kwargs) -> ProbeDescriptor:
        """Swallows cancellation and keeps running for `hold` seconds."""
        async def run(target, token):
            loop = asyncio.get_running_loop()
            until = loop.time() + hold
            while loop.time() < until:
                try:
                    await asyncio.sleep(0.01)
                except asyncio.CancelledError:
                    continue
            return [self.finding("late")]
        return self.make(name, run, **kwargs)

    def returning_value(self, name, value, **kwargs) -> ProbeDescriptor:
        async def run(target, token):
            return value
        return self.make(name, run, **kwargs)


@pytest.fixture
def probe_kit():
    return ProbeKit()


# ============================================================================
# Engine Fixtures
# ============================================================================

@pytest.fixture
def settings():
    return Settings(
        scan_concurrency=3,
        scan_deadline_seconds=5.0,
        scan_grace_seconds=0.05,
        cancel_poll_seconds=0.01,
        allowed_origins=["http://localhost:3000"],
    )


@pytest.fixture
def store():
    return InMemoryScanStore()


@pytest.fixture
def preflight():
    return AsyncMock(return_value=None)


@pytest.fixture
def make_manager(store, settings, preflight):
    """Build a ScanManager around the given probes."""
    def _make(*probes, **kwargs) -> ScanManager:
        kwargs.setdefault("store", store)
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("preflight", preflight)
        return ScanManager(registry=ProbeRegistry(probes), **kwargs)
    return _make
