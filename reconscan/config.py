"""
Environment-driven configuration for reconscan.

Every knob is read once from the environment by Settings.from_env(); the
process-wide instance is cached by get_settings().
"""
import logging
import os
import sys
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    environment: str = "development"
    redis_url: str = "redis://localhost:6379/0"
    scan_store: str = Field(default="memory", pattern="^(memory|redis)$")
    execution_mode: str = Field(default="inline", pattern="^(inline|celery)$")

    scan_concurrency: int = Field(default=5, ge=1)
    scan_deadline_seconds: float = Field(default=300.0, gt=0)
    scan_grace_seconds: float = Field(default=2.0, gt=0)
    probe_timeout_seconds: float = Field(default=30.0, gt=0)
    scan_ttl_seconds: int = Field(default=86400, gt=0)
    allow_private_targets: bool = False
    cancel_poll_seconds: float = Field(default=0.5, gt=0)
    stale_scan_minutes: int = Field(default=45, gt=0)

    rate_limit_default: str = "60/minute"
    scan_rate_limit: str = "10/minute"
    allowed_origins: List[str] = ["http://localhost:3000", "http://localhost:3001"]

    log_level: str = "INFO"
    audit_log_file: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:3001")
        return cls(
            environment=os.getenv("ENVIRONMENT", "development"),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            scan_store=os.getenv("SCAN_STORE", "memory"),
            execution_mode=os.getenv("EXECUTION_MODE", "inline"),
            scan_concurrency=int(os.getenv("SCAN_CONCURRENCY", "5")),
            scan_deadline_seconds=float(os.getenv("SCAN_DEADLINE_SECONDS", "300")),
            scan_grace_seconds=float(os.getenv("SCAN_GRACE_SECONDS", "2.0")),
            probe_timeout_seconds=float(os.getenv("PROBE_TIMEOUT_SECONDS", "30")),
            scan_ttl_seconds=int(os.getenv("SCAN_TTL_SECONDS", "86400")),
            allow_private_targets=_env_bool("ALLOW_PRIVATE_TARGETS"),
            cancel_poll_seconds=float(os.getenv("CANCEL_POLL_SECONDS", "0.5")),
            stale_scan_minutes=int(os.getenv("STALE_SCAN_MINUTES", "45")),
            rate_limit_default=os.getenv("RATE_LIMIT_DEFAULT", "60/minute"),
            scan_rate_limit=os.getenv("SCAN_RATE_LIMIT", "10/minute"),
            allowed_origins=[origin.strip() for origin in origins.split(",") if origin.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            audit_log_file=os.getenv("AUDIT_LOG_FILE") or None,
        )

    def check_origins(self) -> None:
        """In production every non-localhost CORS origin must be HTTPS."""
        if not self.is_production:
            return
        for origin in self.allowed_origins:
            if origin.startswith("http://") and "localhost" not in origin:
                raise ValueError(
                    f"HTTPS required in production, invalid origin: {origin}"
                )

    def check_redis_tls(self) -> bool:
        """Warn when a production redis URL carries no TLS settings."""
        if not self.is_production:
            return True
        url = self.redis_url.lower()
        if not url.startswith("rediss://") and "ssl=true" not in url and "ssl_cert_reqs" not in url:
            logger.warning("Redis TLS recommended in production; use rediss:// or SSL parameters")
            return False
        return True


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        stream=sys.stdout,
        level=level or get_settings().log_level,
        format=LOG_FORMAT,
    )
