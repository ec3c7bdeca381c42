import logging

import pytest
from pydantic import ValidationError

from reconscan.config import Settings
from reconscan.store import InMemoryScanStore, RedisScanStore, build_store

pytestmark = pytest.mark.unit


def test_defaults_from_empty_environment(monkeypatch):
    for name in ("ENVIRONMENT", "SCAN_CONCURRENCY", "ALLOWED_ORIGINS", "ALLOW_PRIVATE_TARGETS", "EXECUTION_MODE"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.environment == "development"
    assert settings.scan_concurrency == 5
    assert settings.execution_mode == "inline"
    assert settings.allow_private_targets is False
    assert settings.allowed_origins == ["http://localhost:3000", "http://localhost:3001"]


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("SCAN_CONCURRENCY", "8")
    monkeypatch.setenv("SCAN_DEADLINE_SECONDS", "60")
    monkeypatch.setenv("ALLOW_PRIVATE_TARGETS", "yes")
    monkeypatch.setenv("ALLOWED_ORIGINS", "https://app.example.com, https://admin.example.com ,")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.scan_concurrency == 8
    assert settings.scan_deadline_seconds == 60.0
    assert settings.allow_private_targets is True
    assert settings.allowed_origins == ["https://app.example.com", "https://admin.example.com"]
    assert settings.log_level == "DEBUG"


def test_invalid_values_are_rejected(monkeypatch):
    monkeypatch.setenv("SCAN_CONCURRENCY", "0")
    with pytest.raises(ValidationError):
        Settings.from_env()

    with pytest.raises(ValidationError):
        Settings(execution_mode="threads")


class TestProductionChecks:

    def test_http_origins_rejected_in_production(self):
        settings = Settings(environment="production", allowed_origins=["http://app.example.com"])
        with pytest.raises(ValueError, match="HTTPS required"):
            settings.check_origins()

    def test_https_and_localhost_origins_allowed(self):
        Settings(
            environment="production",
            allowed_origins=["https://app.example.com", "http://localhost:3000"],
        ).check_origins()

    def test_plain_redis_warns_in_production(self, caplog):
        settings = Settings(environment="production", redis_url="redis://cache:6379/0")
        with caplog.at_level(logging.WARNING, logger="reconscan.config"):
            assert settings.check_redis_tls() is False
        assert "Redis TLS recommended" in caplog.text

        assert Settings(environment="production", redis_url="rediss://cache:6380/0").check_redis_tls()
        assert Settings(redis_url="redis://cache:6379/0").check_redis_tls()


def test_build_store_backend_selection(mocker):
    from_url = mocker.patch("reconscan.store.redis.from_url")

    assert isinstance(build_store(Settings()), InMemoryScanStore)
    store = build_store(Settings(scan_store="redis", redis_url="redis://cache:6379/1", scan_ttl_seconds=60))

    assert isinstance(store, RedisScanStore)
    assert store.ttl == 60
    from_url.assert_called_once_with("redis://cache:6379/1", decode_responses=True)
