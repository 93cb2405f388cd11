"""Runtime tunables read from environment variables.

Values are read on every call so tests can patch ``os.environ`` without
reloading modules.
"""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)

DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_RATE_LIMIT_THRESHOLD = 100
DEFAULT_DISPATCH_GROUP_SIZE = 5
DEFAULT_DISPATCH_GROUP_DELAY_SECONDS = 2
DEFAULT_ZOMBIE_THRESHOLD_MINUTES = 10
DEFAULT_JOB_RETENTION_HOURS = 1
DEFAULT_WEBHOOK_RETENTION_DAYS = 7
DEFAULT_DB_POOL_SIZE = 5
DEFAULT_DB_MAX_OVERFLOW = 10


def _get_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default
    return max(minimum, value)


def get_db_pool_settings() -> tuple[int, int]:
    """(pool_size, max_overflow) for the worker and API engine."""
    return (
        _get_int("DB_POOL_SIZE", DEFAULT_DB_POOL_SIZE, 1),
        _get_int("DB_MAX_OVERFLOW", DEFAULT_DB_MAX_OVERFLOW),
    )


def get_github_api_url() -> str:
    return os.getenv("GITHUB_API_URL", DEFAULT_GITHUB_API_URL).rstrip("/")


def get_rate_limit_threshold() -> int:
    """Remaining-request budget at or below which backfill pauses."""
    return _get_int("SYNC_RATE_LIMIT_THRESHOLD", DEFAULT_RATE_LIMIT_THRESHOLD)


def get_dispatch_group_size() -> int:
    return _get_int("SYNC_DISPATCH_GROUP_SIZE", DEFAULT_DISPATCH_GROUP_SIZE, 1)


def get_dispatch_group_delay_seconds() -> int:
    return _get_int(
        "SYNC_DISPATCH_GROUP_DELAY_SECONDS", DEFAULT_DISPATCH_GROUP_DELAY_SECONDS
    )


def get_zombie_threshold_minutes() -> int:
    return _get_int(
        "SYNC_ZOMBIE_THRESHOLD_MINUTES", DEFAULT_ZOMBIE_THRESHOLD_MINUTES, 1
    )


def get_job_retention_hours() -> int:
    return _get_int("SYNC_JOB_RETENTION_HOURS", DEFAULT_JOB_RETENTION_HOURS)


def get_webhook_retention_days() -> int:
    return _get_int("WEBHOOK_RETENTION_DAYS", DEFAULT_WEBHOOK_RETENTION_DAYS)


def get_webhook_secrets() -> tuple[str | None, str | None]:
    """Return (current, previous) webhook secrets; previous is for rotation."""
    return (
        os.getenv("GITHUB_WEBHOOK_SECRET") or None,
        os.getenv("GITHUB_WEBHOOK_SECRET_PREVIOUS") or None,
    )


def get_github_app_credentials() -> tuple[str | None, str | None]:
    private_key = os.getenv("GITHUB_APP_PRIVATE_KEY")
    if private_key and "\\n" in private_key:
        private_key = private_key.replace("\\n", "\n")
    return os.getenv("GITHUB_APP_ID") or None, private_key or None


def get_redis_url() -> str:
    return os.getenv("REDIS_URL") or os.getenv("CELERY_BROKER_URL") or ""
