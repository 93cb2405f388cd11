"""Rate-limit guard for outbound GitHub calls.

Every response carries ``x-ratelimit-remaining`` and ``x-ratelimit-reset``
(epoch seconds). The guard turns those into a ``RateLimitSnapshot`` and
decides whether a backfill may keep paging or must pause until the reset.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Mapping, Optional

from activity_ops.config import get_rate_limit_threshold
from activity_ops.connectors.exceptions import RateLimitException
from activity_ops.utils.datetime import from_epoch_seconds

logger = logging.getLogger(__name__)

DEFAULT_BLOCKED_DELAY = timedelta(minutes=5)


class BudgetLevel(str, Enum):
    HEALTHY = "healthy"
    LOW = "low"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class RateLimitSnapshot:
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None

    @property
    def is_known(self) -> bool:
        return self.remaining is not None


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value


def parse_rate_limit(headers: Mapping[str, str]) -> RateLimitSnapshot:
    """Read the rate-limit headers; unparseable values are treated as absent."""
    remaining: Optional[int] = None
    raw_remaining = _header(headers, "x-ratelimit-remaining")
    if raw_remaining is not None:
        try:
            remaining = int(raw_remaining)
        except ValueError:
            remaining = None

    reset_at = None
    raw_reset = _header(headers, "x-ratelimit-reset")
    if raw_reset is not None:
        reset_at = from_epoch_seconds(raw_reset)

    return RateLimitSnapshot(remaining=remaining, reset_at=reset_at)


def extract_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    raw = _header(headers, "retry-after")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def resume_time(
    reset_at: Optional[datetime], now: Optional[datetime] = None
) -> datetime:
    """Instant a paused job should resume; falls back to a fixed delay."""
    now = now or datetime.now(timezone.utc)
    if reset_at is None or reset_at <= now:
        return now + DEFAULT_BLOCKED_DELAY
    return reset_at


class RateLimitGuard:
    """Classifies remaining budget and signals when paging must pause.

    Args:
        threshold: Remaining requests at or below which paging pauses.
            Defaults to ``SYNC_RATE_LIMIT_THRESHOLD``.
    """

    def __init__(self, threshold: Optional[int] = None) -> None:
        self.threshold = get_rate_limit_threshold() if threshold is None else threshold

    def classify(self, snapshot: RateLimitSnapshot) -> BudgetLevel:
        if snapshot.remaining is None:
            return BudgetLevel.HEALTHY
        if snapshot.remaining <= 0:
            return BudgetLevel.EXHAUSTED
        if snapshot.remaining <= self.threshold:
            return BudgetLevel.LOW
        return BudgetLevel.HEALTHY

    def should_pause(self, snapshot: RateLimitSnapshot) -> bool:
        return self.classify(snapshot) is not BudgetLevel.HEALTHY

    def check(self, snapshot: RateLimitSnapshot) -> None:
        """Raise ``RateLimitException`` when the budget is too low to continue."""
        if self.should_pause(snapshot):
            logger.info(
                "Rate-limit budget low: remaining=%s reset_at=%s threshold=%s",
                snapshot.remaining,
                snapshot.reset_at,
                self.threshold,
            )
            raise RateLimitException(
                "Rate-limit budget below safety threshold",
                reset_at=snapshot.reset_at,
                remaining=snapshot.remaining,
            )
