"""Sync batch bookkeeping.

Batch counters are never incremented in place by workers. They are
recomputed from the batch's jobs (``compute_batch_state``), so jobs that
finish in any order, or twice, always converge on the same numbers.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from activity_ops.models.accounts import Account, SyncStatus
from activity_ops.models.ingestion import (
    ACTIVE_SLOT,
    BatchStatus,
    IngestionJob,
    JobStatus,
    SyncBatch,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchState:
    total: int
    pending: int
    running: int
    blocked: int
    completed: int
    failed: int
    events_ingested: int

    @property
    def is_finished(self) -> bool:
        return self.total > 0 and self.completed + self.failed == self.total


def get_batch(session: Session, batch_id: uuid.UUID) -> Optional[SyncBatch]:
    return session.query(SyncBatch).filter(SyncBatch.id == batch_id).first()


def get_active_batch(session: Session, account_id: uuid.UUID) -> Optional[SyncBatch]:
    return (
        session.query(SyncBatch)
        .filter(
            SyncBatch.account_id == account_id,
            SyncBatch.active_slot == ACTIVE_SLOT,
        )
        .first()
    )


def create_batch(
    session: Session,
    account: Account,
    trigger: str,
    since: datetime,
    until: datetime,
    repositories: Sequence[str],
) -> SyncBatch:
    """Insert a running batch plus one pending job per repository.

    The batch row is flushed first on its own: if another batch for the
    same account is still active, the unique ``(account_id, active_slot)``
    constraint raises ``IntegrityError`` before any job is written. Callers
    wrap this in a SAVEPOINT.
    """
    batch = SyncBatch(
        id=uuid.uuid4(),
        account_id=account.id,
        trigger=trigger,
        status=BatchStatus.RUNNING,
        active_slot=ACTIVE_SLOT,
        since=since,
        until=until,
        total_repos=len(repositories),
    )
    session.add(batch)
    session.flush()

    for repo_full_name in repositories:
        batch.jobs.append(
            IngestionJob(
                id=uuid.uuid4(),
                batch_id=batch.id,
                account_id=account.id,
                repo_full_name=repo_full_name,
                status=JobStatus.PENDING,
                since=since,
                until=until,
            )
        )
    session.flush()
    return batch


def compute_batch_state(session: Session, batch_id: uuid.UUID) -> BatchState:
    jobs = session.query(IngestionJob).filter(IngestionJob.batch_id == batch_id).all()
    counts = {status: 0 for status in JobStatus}
    events = 0
    for job in jobs:
        counts[JobStatus(job.status)] += 1
        events += job.events_ingested or 0
    return BatchState(
        total=len(jobs),
        pending=counts[JobStatus.PENDING],
        running=counts[JobStatus.RUNNING],
        blocked=counts[JobStatus.BLOCKED],
        completed=counts[JobStatus.COMPLETED],
        failed=counts[JobStatus.FAILED],
        events_ingested=events,
    )


def maybe_finalize_batch(
    session: Session,
    batch_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> Optional[SyncBatch]:
    """Refresh counters and close the batch once every job is terminal.

    A batch fails only when every job failed. Finalizing releases the
    account's active slot and moves the account back to ``idle`` (or
    ``error`` when some repositories failed). ``last_synced_at`` advances to
    the batch window end when at least one repository completed.

    Returns:
        The batch when it was finalized by this call, otherwise None
    """
    batch = get_batch(session, batch_id)
    if batch is None or batch.is_terminal:
        return None

    state = compute_batch_state(session, batch_id)
    batch.completed_repos = state.completed
    batch.failed_repos = state.failed
    batch.events_ingested = state.events_ingested
    if not state.is_finished:
        session.flush()
        return None

    now = now or datetime.now(timezone.utc)
    all_failed = state.failed == state.total
    batch.status = BatchStatus.FAILED if all_failed else BatchStatus.COMPLETED
    batch.active_slot = None
    batch.completed_at = now

    account = session.query(Account).filter(Account.id == batch.account_id).first()
    if account is not None:
        if state.failed:
            account.sync_status = SyncStatus.ERROR.value
            account.last_sync_error = f"{state.failed} repo(s) failed to sync"
        else:
            account.sync_status = SyncStatus.IDLE.value
            account.last_sync_error = None
        if state.completed:
            account.last_synced_at = batch.until

    session.flush()
    logger.info(
        "Finalized sync batch %s: status=%s completed=%d failed=%d events=%d",
        batch.id,
        BatchStatus(batch.status).name.lower(),
        state.completed,
        state.failed,
        state.events_ingested,
    )
    return batch


def finalize_complete_batches(
    session: Session, now: Optional[datetime] = None
) -> int:
    """Sweep running batches and finalize those whose jobs all finished.

    Catches batches whose last job transition did not reach
    ``maybe_finalize_batch`` (worker killed between commit and finalize,
    jobs failed by the zombie sweep).
    """
    running = (
        session.query(SyncBatch.id)
        .filter(SyncBatch.status == BatchStatus.RUNNING)
        .all()
    )
    finalized = 0
    for (batch_id,) in running:
        if maybe_finalize_batch(session, batch_id, now=now) is not None:
            finalized += 1
    return finalized
