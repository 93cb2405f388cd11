"""Sync orchestrator: the single entry point that starts a sync.

Every trigger (manual request, cron sweep, installation webhook,
maintenance catch-up, recovery) goes through ``request``. It decides via
the policy whether a sync may start and, if so, creates one batch with one
pending job per repository and hands the jobs to the dispatcher.

At most one batch per account is ever active. The read-side check below is
only the fast path; the unique ``(account_id, active_slot)`` constraint is
what actually rejects a concurrent second batch.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from activity_ops.config import (
    get_dispatch_group_delay_seconds,
    get_dispatch_group_size,
)
from activity_ops.models.accounts import SyncStatus
from activity_ops.sync import accounts, batches
from activity_ops.sync.policy import (
    DEFAULT_SYNC_WINDOW,
    AccountState,
    DecisionAction,
    SyncReason,
    SyncTrigger,
    calculate_sync_since,
    evaluate,
    reason_to_user_message,
)
from activity_ops.utils.logging import emit_metric

logger = logging.getLogger(__name__)

ALREADY_IN_PROGRESS = "Sync already in progress"
START_FAILED = "Sync failed to start. Please try again."
CATCH_UP_STALE_AFTER = timedelta(hours=24)

Dispatcher = Callable[[uuid.UUID, float], Any]


@dataclass
class SyncResult:
    started: bool
    message: str
    details: dict = field(default_factory=dict)


def dispatch_staggered(
    job_ids: list[uuid.UUID],
    dispatch: Dispatcher,
    group_size: Optional[int] = None,
    group_delay: Optional[float] = None,
) -> None:
    """Schedule jobs in groups, each group ``group_delay`` seconds after the last.

    Spreads the first page of every repository over time so a large account
    does not open all its jobs against the database at once.
    """
    group_size = group_size or get_dispatch_group_size()
    group_delay = get_dispatch_group_delay_seconds() if group_delay is None else group_delay
    for index, job_id in enumerate(job_ids):
        countdown = (index // group_size) * group_delay
        dispatch(job_id, float(countdown))


def _result(outcome: str, started: bool, message: str, **details: Any) -> SyncResult:
    emit_metric("sync.request", outcome=outcome)
    return SyncResult(started=started, message=message, details=details)


def request(
    session: Session,
    account_id: uuid.UUID,
    trigger: SyncTrigger | str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    force_full_sync: bool = False,
    dispatch: Optional[Dispatcher] = None,
    now: Optional[datetime] = None,
) -> SyncResult:
    """Request a sync for one account.

    Args:
        session: SQLAlchemy synchronous session; committed on start
        account_id: Account to sync
        trigger: What asked for the sync
        since: Explicit window start, overrides the computed one
        until: Explicit window end, defaults to ``now``
        force_full_sync: Use the default window regardless of last sync
        dispatch: Callable scheduling one job with a countdown in seconds;
            when None the jobs are created but left for the caller
        now: Override for the current time

    Returns:
        SyncResult describing whether a batch was started
    """
    trigger = SyncTrigger(trigger)
    now = now or datetime.now(timezone.utc)

    account = accounts.get_account(session, account_id)
    if account is None:
        return _result("not_found", False, "Account not found")

    active = batches.get_active_batch(session, account.id)
    if active is not None:
        return _result(
            "already_has_batch",
            False,
            ALREADY_IN_PROGRESS,
            job_id=str(active.id),
            job_ids=[str(job_id) for job_id in active.job_ids],
        )

    if account.sync_status == SyncStatus.SYNCING.value:
        logger.warning(
            "Account %s marked syncing without an active batch; resetting to idle",
            account.id,
        )
        account.sync_status = SyncStatus.IDLE.value
        session.flush()

    decision = evaluate(AccountState.from_account(account), trigger, now)
    if decision.action is DecisionAction.BLOCK:
        account.sync_status = SyncStatus.RATE_LIMITED.value
        account.next_sync_at = decision.details.get("blocked_until")
        session.commit()
    if decision.action is not DecisionAction.START:
        details = dict(decision.details)
        if isinstance(details.get("blocked_until"), datetime):
            details["blocked_until"] = details["blocked_until"].isoformat()
        return _result(
            decision.reason.value,
            False,
            reason_to_user_message(decision.reason, decision.details),
            reason=decision.reason.value,
            **details,
        )

    window_end = until or now
    if since is not None:
        window_start = since
    elif force_full_sync:
        window_start = window_end - DEFAULT_SYNC_WINDOW
    else:
        window_start = calculate_sync_since(account.last_synced_at, window_end)

    repositories = list(account.repositories or [])
    try:
        with session.begin_nested():
            batch = batches.create_batch(
                session,
                account,
                trigger=trigger.value,
                since=window_start,
                until=window_end,
                repositories=repositories,
            )
        account.sync_status = SyncStatus.SYNCING.value
        account.last_sync_error = None
        account.next_sync_at = None
        if trigger is SyncTrigger.MANUAL:
            account.last_manual_sync_at = now
        job_ids = list(batch.job_ids)
        session.commit()
    except IntegrityError:
        # Another trigger created the account's active batch first.
        session.rollback()
        active = batches.get_active_batch(session, account_id)
        details = {"job_id": str(active.id)} if active is not None else {}
        return _result("already_has_batch", False, ALREADY_IN_PROGRESS, **details)
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Failed to create sync batch for account %s", account_id)
        account = accounts.get_account(session, account_id)
        if account is not None:
            account.sync_status = SyncStatus.ERROR.value
            account.last_sync_error = START_FAILED
            session.commit()
        return _result("error", False, START_FAILED, error=str(exc))

    logger.info(
        "Started %s sync batch %s for account %s: %d repo(s), since=%s",
        trigger.value,
        batch.id,
        account_id,
        len(job_ids),
        window_start.isoformat(),
    )
    if dispatch is not None:
        dispatch_staggered(job_ids, dispatch)

    return _result(
        "started",
        True,
        reason_to_user_message(SyncReason.READY),
        job_id=str(batch.id),
        job_ids=[str(job_id) for job_id in job_ids],
        since=window_start.isoformat(),
        until=window_end.isoformat(),
    )


def link_installation(
    session: Session,
    installation_id: int,
    user_id: str,
    dispatch: Optional[Dispatcher] = None,
) -> SyncResult:
    """Record the owning user of an installation and start its first backfill.

    Called by the identity layer once it knows who installed the app. The
    link is committed before the sync request so a lost batch race cannot
    roll it back. Re-linking the same user does not request another sync.
    """
    account, newly_linked = accounts.link_user(session, installation_id, user_id)
    session.commit()
    logger.info(
        "Installation %s linked to user (account %s, new_link=%s)",
        installation_id,
        account.id,
        newly_linked,
    )
    if not newly_linked or not account.is_active or not account.repositories:
        return SyncResult(
            started=False,
            message="Installation linked",
            details={"account_id": str(account.id)},
        )
    result = request(
        session,
        account.id,
        trigger=SyncTrigger.WEBHOOK,
        force_full_sync=True,
        dispatch=dispatch,
    )
    result.details.setdefault("account_id", str(account.id))
    return result
