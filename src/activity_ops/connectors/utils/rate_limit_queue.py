"""Shared rate-limit gates, keyed per GitHub App installation.

All ingestion jobs of one installation draw from the same API budget. When
one job learns that the budget is spent (and when it refills) the others
should stop calling the API until then instead of each discovering the
limit on its own.

``RateLimitGate`` keeps the "next allowed at" instant in process memory.
``DistributedRateLimitGate`` shares it across Celery workers through a Redis
key updated with an atomic max, and falls back to the process-local
behaviour when Redis is unavailable.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from activity_ops.config import get_redis_url

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    initial_backoff_seconds: float = 60.0
    max_backoff_seconds: float = 3600.0
    backoff_factor: float = 2.0


class RateLimitGate:
    """Thread-safe, process-local gate."""

    def __init__(self, config: Optional[RateLimitConfig] = None) -> None:
        self._config = config or RateLimitConfig()
        self._lock = threading.Lock()
        self._next_allowed_at = 0.0
        self._current_backoff = self._config.initial_backoff_seconds

    def _next_backoff(self) -> float:
        delay = min(self._current_backoff, self._config.max_backoff_seconds)
        self._current_backoff = min(
            self._current_backoff * self._config.backoff_factor,
            self._config.max_backoff_seconds,
        )
        return delay

    def penalize_until(self, reset_at: Optional[datetime]) -> datetime:
        """Push the shared next-allowed instant to ``reset_at``.

        Without a reset time (secondary limits, abuse detection) exponential
        backoff is applied instead. Returns the effective next-allowed
        instant, which never moves backwards.
        """
        with self._lock:
            if reset_at is None:
                proposed = time.time() + self._next_backoff()
            else:
                proposed = reset_at.timestamp()
        applied = self._store(proposed)
        return datetime.fromtimestamp(applied, tz=timezone.utc)

    def _store(self, proposed: float) -> float:
        with self._lock:
            self._next_allowed_at = max(self._next_allowed_at, proposed)
            return self._next_allowed_at

    def _load(self) -> float:
        with self._lock:
            return self._next_allowed_at

    def blocked_until(self) -> Optional[datetime]:
        """Future instant before which calls should not be made, if any."""
        next_allowed = self._load()
        if next_allowed <= time.time():
            return None
        return datetime.fromtimestamp(next_allowed, tz=timezone.utc)

    def reset(self) -> None:
        with self._lock:
            self._current_backoff = self._config.initial_backoff_seconds
            self._next_allowed_at = 0.0


# Atomic max: keep the later of the stored and proposed instants.
_PENALIZE_LUA = """\
local key = KEYS[1]
local proposed = tonumber(ARGV[1])
local ttl = tonumber(ARGV[2])
local current = tonumber(redis.call('GET', key) or '0') or 0
if proposed > current then
    redis.call('SET', key, tostring(proposed))
    redis.call('EXPIRE', key, ttl)
    return tostring(proposed)
end
redis.call('EXPIRE', key, ttl)
return tostring(current)
"""


class DistributedRateLimitGate(RateLimitGate):
    """Redis-backed gate with process-local fallback."""

    def __init__(
        self,
        installation_id: int | str,
        config: Optional[RateLimitConfig] = None,
        *,
        redis_client: Any = None,
    ) -> None:
        super().__init__(config=config)
        self._redis_key = f"rate_limit:github:installation:{installation_id}"
        self._ttl = int(self._config.max_backoff_seconds * 2)

        self._redis: Any = None
        self._redis_available = True
        self._warned = False
        self._lua_sha: Any = None

        if redis_client is not None:
            self._redis = redis_client
            try:
                self._lua_sha = redis_client.script_load(_PENALIZE_LUA)
            except Exception:
                self._redis_available = False
                self._warn_once("Failed to load Lua script into Redis")
        else:
            self._connect()

    def _connect(self) -> None:
        redis_url = get_redis_url()
        if not redis_url:
            self._redis_available = False
            self._warn_once("No REDIS_URL or CELERY_BROKER_URL configured")
            return
        try:
            import redis as _redis_mod

            client = _redis_mod.from_url(redis_url, decode_responses=True)
            client.ping()
            self._redis = client
            self._lua_sha = client.script_load(_PENALIZE_LUA)
        except Exception as exc:
            self._redis_available = False
            self._warn_once(f"Redis unavailable, using local fallback: {exc}")

    def _warn_once(self, msg: str) -> None:
        if not self._warned:
            logger.warning(msg)
            self._warned = True

    def _penalize_redis(self, proposed: float) -> float:
        args = (1, self._redis_key, str(proposed), str(self._ttl))
        try:
            raw = self._redis.evalsha(self._lua_sha, *args)
        except Exception:
            # Script cache flushed (e.g. Redis restart): send the source.
            raw = self._redis.eval(_PENALIZE_LUA, *args)
        return float(raw)

    def _store(self, proposed: float) -> float:
        if self._redis_available and self._redis is not None:
            try:
                applied = self._penalize_redis(proposed)
                with self._lock:
                    self._next_allowed_at = max(self._next_allowed_at, applied)
                return applied
            except Exception as exc:
                self._redis_available = False
                self._warn_once(f"Redis penalize failed, falling back to local: {exc}")
        return super()._store(proposed)

    def _load(self) -> float:
        if self._redis_available and self._redis is not None:
            try:
                raw = self._redis.get(self._redis_key)
                return float(raw) if raw is not None else 0.0
            except Exception as exc:
                self._redis_available = False
                self._warn_once(f"Redis read failed, falling back to local: {exc}")
        return super()._load()

    def reset(self) -> None:
        super().reset()
        if self._redis_available and self._redis is not None:
            try:
                self._redis.delete(self._redis_key)
            except Exception as exc:
                self._redis_available = False
                self._warn_once(f"Redis reset failed, falling back to local: {exc}")


_redis_unavailable_until: float = 0.0
_factory_lock = threading.Lock()


def create_rate_limit_gate(
    installation_id: int | str,
    config: Optional[RateLimitConfig] = None,
) -> RateLimitGate:
    """Create a gate for one installation, preferring the Redis-backed one.

    A failed Redis connection is remembered for 60 seconds so a burst of
    jobs does not retry the connection one by one.
    """
    global _redis_unavailable_until  # noqa: PLW0603

    with _factory_lock:
        if time.time() < _redis_unavailable_until:
            return RateLimitGate(config=config)

    gate = DistributedRateLimitGate(installation_id, config=config)
    if gate._redis_available:
        return gate
    with _factory_lock:
        _redis_unavailable_until = time.time() + 60.0
    return RateLimitGate(config=config)
