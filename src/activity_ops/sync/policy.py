"""Sync policy: may a sync start for this account right now?

``evaluate`` is a pure function of the account snapshot, the trigger and
the current time. It never touches the database and never mutates its
inputs; the orchestrator acts on the returned ``Decision``.

Checks run in a fixed order, first match wins:

1. account not linked to a user                      -> skip(no_user)
2. no repositories selected                          -> skip(no_repositories)
3. non-manual trigger while a sync is running        -> skip(already_syncing)
4. manual trigger inside the cooldown window         -> skip(cooldown_active)
5. remaining API budget below threshold, reset ahead -> block(rate_limited)
6. otherwise                                         -> start
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Sequence

from activity_ops.config import get_rate_limit_threshold
from activity_ops.models.accounts import SyncStatus

MANUAL_SYNC_COOLDOWN = timedelta(minutes=5)
STALE_BYPASS_THRESHOLD = timedelta(hours=48)
SCHEDULED_BUDGET_RESERVE = 500
DEFAULT_SYNC_WINDOW = timedelta(days=30)
MAX_SYNC_WINDOW = timedelta(days=90)


class SyncTrigger(str, Enum):
    MANUAL = "manual"
    CRON = "cron"
    WEBHOOK = "webhook"
    MAINTENANCE = "maintenance"
    RECOVERY = "recovery"


class DecisionAction(str, Enum):
    START = "start"
    SKIP = "skip"
    BLOCK = "block"


class SyncReason(str, Enum):
    READY = "ready"
    NO_USER = "no_user"
    NO_REPOSITORIES = "no_repositories"
    COOLDOWN_ACTIVE = "cooldown_active"
    ALREADY_SYNCING = "already_syncing"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class AccountState:
    """Snapshot of the account fields the policy looks at."""

    user_id: Optional[str]
    repositories: Sequence[str]
    sync_status: str = SyncStatus.IDLE.value
    last_synced_at: Optional[datetime] = None
    last_manual_sync_at: Optional[datetime] = None
    rate_limit_remaining: Optional[int] = None
    rate_limit_reset: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Any) -> "AccountState":
        return cls(
            user_id=account.user_id,
            repositories=tuple(account.repositories or ()),
            sync_status=account.sync_status,
            last_synced_at=account.last_synced_at,
            last_manual_sync_at=account.last_manual_sync_at,
            rate_limit_remaining=account.rate_limit_remaining,
            rate_limit_reset=account.rate_limit_reset,
        )


@dataclass(frozen=True)
class Decision:
    action: DecisionAction
    reason: SyncReason
    details: dict = field(default_factory=dict)

    @classmethod
    def start(cls) -> "Decision":
        return cls(DecisionAction.START, SyncReason.READY)

    @classmethod
    def skip(cls, reason: SyncReason, **details: Any) -> "Decision":
        return cls(DecisionAction.SKIP, reason, details)

    @classmethod
    def block(cls, reason: SyncReason, **details: Any) -> "Decision":
        return cls(DecisionAction.BLOCK, reason, details)


def can_start(decision: Decision) -> bool:
    return decision.action is DecisionAction.START


def required_budget(trigger: SyncTrigger, threshold: int) -> int:
    """Budget a trigger needs before it may start.

    Scheduled triggers keep a reserve so webhook-driven work still has
    headroom after a cron sync starts.
    """
    if trigger in (SyncTrigger.CRON, SyncTrigger.MAINTENANCE):
        return threshold + SCHEDULED_BUDGET_RESERVE
    return threshold


def _cooldown_remaining(
    state: AccountState, now: datetime
) -> Optional[timedelta]:
    if state.last_synced_at is None:
        return None
    if now - state.last_synced_at >= STALE_BYPASS_THRESHOLD:
        return None
    if state.last_manual_sync_at is None:
        return None
    elapsed = now - state.last_manual_sync_at
    if elapsed >= MANUAL_SYNC_COOLDOWN:
        return None
    return MANUAL_SYNC_COOLDOWN - elapsed


def evaluate(
    state: AccountState,
    trigger: SyncTrigger | str,
    now: datetime,
    threshold: Optional[int] = None,
) -> Decision:
    trigger = SyncTrigger(trigger)
    threshold = get_rate_limit_threshold() if threshold is None else threshold

    if not state.user_id:
        return Decision.skip(SyncReason.NO_USER)

    if not state.repositories:
        return Decision.skip(SyncReason.NO_REPOSITORIES)

    if trigger is not SyncTrigger.MANUAL and state.sync_status == SyncStatus.SYNCING.value:
        return Decision.skip(SyncReason.ALREADY_SYNCING)

    if trigger is SyncTrigger.MANUAL:
        remaining = _cooldown_remaining(state, now)
        if remaining is not None:
            return Decision.skip(
                SyncReason.COOLDOWN_ACTIVE,
                cooldown_ms=int(remaining.total_seconds() * 1000),
            )

    if (
        state.rate_limit_remaining is not None
        and state.rate_limit_reset is not None
        and state.rate_limit_reset > now
        and state.rate_limit_remaining < required_budget(trigger, threshold)
    ):
        return Decision.block(
            SyncReason.RATE_LIMITED, blocked_until=state.rate_limit_reset
        )

    return Decision.start()


def calculate_sync_since(
    last_synced_at: Optional[datetime], now: datetime
) -> datetime:
    """Start of the fetch window.

    The previous sync time, or the default window for a first sync. Never
    earlier than ``MAX_SYNC_WINDOW`` before ``now``.
    """
    floor = now - MAX_SYNC_WINDOW
    if last_synced_at is None:
        return now - DEFAULT_SYNC_WINDOW
    return max(last_synced_at, floor)


_MESSAGES = {
    SyncReason.READY: "Sync started",
    SyncReason.NO_USER: "Installation not linked to a user",
    SyncReason.NO_REPOSITORIES: "No repositories selected for sync",
    SyncReason.ALREADY_SYNCING: "Sync already in progress",
    SyncReason.RATE_LIMITED: "GitHub API rate limit reached. Please try again later.",
}


def reason_to_user_message(
    reason: SyncReason | str, details: Optional[dict] = None
) -> str:
    reason = SyncReason(reason)
    if reason is SyncReason.COOLDOWN_ACTIVE:
        cooldown_ms = (details or {}).get("cooldown_ms")
        if cooldown_ms:
            minutes = max(1, math.ceil(cooldown_ms / 60000))
            unit = "minute" if minutes == 1 else "minutes"
            return f"Please wait {minutes} {unit} before syncing again"
        return "Please wait before syncing again"
    return _MESSAGES[reason]
