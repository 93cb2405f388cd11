"""Data-access functions for IngestionJob records.

Jobs carry all resumable state of a repository backfill, so every state
transition here is persisted immediately by the caller committing the
session. Terminal jobs (completed, failed) are never touched again except
by ``clear_terminal_jobs``; every mutating helper below refuses to move a
terminal job.

Transitions::

    pending  -> running                      (worker picks the job up)
    running  -> completed | failed | blocked
    blocked  -> running                      (scheduled resume runs the worker)
    blocked  -> pending -> running           (safety-net sweep, see resume_job)
    running | blocked -> failed              (zombie and long-blocked sweeps)

A job the sweep re-dispatched is ``pending``, so ``find_stuck_blocked_jobs``
no longer returns it.

All functions use synchronous SQLAlchemy sessions and are designed to run
inside Celery tasks via get_postgres_session_sync().
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from activity_ops.connectors.github import cursor_position
from activity_ops.models.ingestion import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    IngestionJob,
    JobStatus,
    SyncBatch,
)

ZOMBIE_ERROR = "Job timed out (zombie detection)"
LONG_BLOCKED_ERROR = "Job blocked for too long"
STUCK_BLOCKED_LIMIT = 100
CLEANUP_LIMIT = 1000


class TerminalJobError(RuntimeError):
    """Raised when a caller tries to mutate a completed or failed job."""


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def get_job(session: Session, job_id: uuid.UUID) -> Optional[IngestionJob]:
    return session.query(IngestionJob).filter(IngestionJob.id == job_id).first()


def _require_mutable(session: Session, job_id: uuid.UUID) -> IngestionJob:
    job = get_job(session, job_id)
    if job is None:
        raise ValueError(f"Ingestion job {job_id} not found")
    if job.status in TERMINAL_JOB_STATUSES:
        raise TerminalJobError(
            f"Ingestion job {job_id} is {JobStatus(job.status).name.lower()}"
        )
    return job


def mark_running(
    session: Session,
    job_id: uuid.UUID,
    worker_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> IngestionJob:
    """Move a pending or blocked job to RUNNING.

    ``started_at`` is only set the first time; a resumed job keeps it,
    together with its cursor and counters.

    Raises:
        ValueError: If job not found
        TerminalJobError: If the job already finished
    """
    now = _now(now)
    job = _require_mutable(session, job_id)
    job.status = JobStatus.RUNNING
    job.blocked_until = None
    job.worker_id = worker_id
    job.last_updated_at = now
    if job.started_at is None:
        job.started_at = now
    session.flush()
    return job


def update_progress(
    session: Session,
    job_id: uuid.UUID,
    cursor: Optional[str],
    inserted: int = 0,
    duplicates: int = 0,
    errors: int = 0,
    progress: Optional[int] = None,
    rate_limit_remaining: Optional[int] = None,
    rate_limit_reset: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> IngestionJob:
    """Persist one page worth of progress.

    Counters are incremented, never overwritten, and the cursor may only
    advance.

    Args:
        session: SQLAlchemy synchronous session
        job_id: Job being advanced
        cursor: Cursor of the next page to fetch
        inserted: Facts inserted from this page
        duplicates: Facts that already existed
        errors: Items that failed to persist
        progress: Optional progress percentage (0-99 while running)
        rate_limit_remaining: Budget snapshot from the page response
        rate_limit_reset: Reset instant from the page response
        now: Override for the current time

    Raises:
        ValueError: If the job is missing or the cursor would regress
        TerminalJobError: If the job already finished
    """
    job = _require_mutable(session, job_id)
    if (
        cursor is not None
        and job.cursor is not None
        and cursor_position(cursor) < cursor_position(job.cursor)
    ):
        raise ValueError(
            f"Cursor for job {job_id} would regress from {job.cursor} to {cursor}"
        )
    if cursor is not None:
        job.cursor = cursor
    job.events_ingested += inserted
    job.duplicates += duplicates
    job.errors += errors
    job.pages_fetched += 1
    if progress is not None:
        job.progress = max(job.progress, min(progress, 99))
    if rate_limit_remaining is not None:
        job.rate_limit_remaining = rate_limit_remaining
    if rate_limit_reset is not None:
        job.rate_limit_reset = rate_limit_reset
    job.last_updated_at = _now(now)
    session.flush()
    return job


def mark_blocked(
    session: Session,
    job_id: uuid.UUID,
    blocked_until: datetime,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> IngestionJob:
    """Park a job until ``blocked_until``; cursor and counters are kept."""
    job = _require_mutable(session, job_id)
    job.status = JobStatus.BLOCKED
    job.blocked_until = blocked_until
    job.rate_limit_reset = blocked_until
    job.last_error = reason
    job.last_updated_at = _now(now)
    session.flush()
    return job


def resume_job(
    session: Session, job_id: uuid.UUID, now: Optional[datetime] = None
) -> IngestionJob:
    """Release a blocked job back to PENDING so it can be dispatched again.

    Raises:
        ValueError: If the job is missing or not blocked
    """
    job = _require_mutable(session, job_id)
    if job.status != JobStatus.BLOCKED:
        raise ValueError(
            f"Ingestion job {job_id} is not blocked "
            f"({JobStatus(job.status).name.lower()})"
        )
    job.status = JobStatus.PENDING
    job.blocked_until = None
    job.last_updated_at = _now(now)
    session.flush()
    return job


def mark_completed(
    session: Session, job_id: uuid.UUID, now: Optional[datetime] = None
) -> IngestionJob:
    """Finish a job: progress 100, cursor cleared."""
    now = _now(now)
    job = _require_mutable(session, job_id)
    job.status = JobStatus.COMPLETED
    job.progress = 100
    job.cursor = None
    job.blocked_until = None
    job.last_error = None
    job.completed_at = now
    job.last_updated_at = now
    session.flush()
    return job


def mark_failed(
    session: Session,
    job_id: uuid.UUID,
    error: str,
    now: Optional[datetime] = None,
) -> IngestionJob:
    now = _now(now)
    job = _require_mutable(session, job_id)
    job.status = JobStatus.FAILED
    job.last_error = error
    job.blocked_until = None
    job.completed_at = now
    job.last_updated_at = now
    session.flush()
    return job


def get_active_jobs_for_account(
    session: Session, account_id: uuid.UUID
) -> list[IngestionJob]:
    return (
        session.query(IngestionJob)
        .filter(
            IngestionJob.account_id == account_id,
            IngestionJob.status.in_([s.value for s in ACTIVE_JOB_STATUSES]),
        )
        .order_by(IngestionJob.created_at)
        .all()
    )


def find_stuck_blocked_jobs(
    session: Session,
    now: Optional[datetime] = None,
    limit: int = STUCK_BLOCKED_LIMIT,
) -> list[IngestionJob]:
    """Blocked jobs whose resume time has passed without them resuming."""
    return (
        session.query(IngestionJob)
        .filter(
            IngestionJob.status == JobStatus.BLOCKED,
            IngestionJob.blocked_until <= _now(now),
        )
        .order_by(IngestionJob.blocked_until)
        .limit(limit)
        .all()
    )


def fail_zombie_jobs(
    session: Session,
    stale_threshold_minutes: int = 10,
    now: Optional[datetime] = None,
) -> list[IngestionJob]:
    """Fail RUNNING jobs that stopped reporting progress.

    A worker persists progress after every page, so a running job whose
    ``last_updated_at`` is older than the threshold has crashed or been
    killed.

    Args:
        session: SQLAlchemy synchronous session
        stale_threshold_minutes: Age threshold in minutes (default 10)
        now: Override for the current time

    Returns:
        The jobs that were failed
    """
    now = _now(now)
    cutoff = now - timedelta(minutes=stale_threshold_minutes)
    zombies = (
        session.query(IngestionJob)
        .filter(
            IngestionJob.status == JobStatus.RUNNING,
            IngestionJob.last_updated_at < cutoff,
        )
        .all()
    )
    for job in zombies:
        job.status = JobStatus.FAILED
        job.last_error = ZOMBIE_ERROR
        job.completed_at = now
        job.last_updated_at = now
    session.flush()
    return zombies


def fail_long_blocked_jobs(
    session: Session,
    max_blocked_hours: int = 24,
    now: Optional[datetime] = None,
) -> list[IngestionJob]:
    """Fail jobs that have been blocked for longer than ``max_blocked_hours``."""
    now = _now(now)
    cutoff = now - timedelta(hours=max_blocked_hours)
    stale = (
        session.query(IngestionJob)
        .filter(
            IngestionJob.status == JobStatus.BLOCKED,
            IngestionJob.last_updated_at < cutoff,
        )
        .all()
    )
    for job in stale:
        job.status = JobStatus.FAILED
        job.last_error = LONG_BLOCKED_ERROR
        job.blocked_until = None
        job.completed_at = now
        job.last_updated_at = now
    session.flush()
    return stale


def clear_terminal_jobs(
    session: Session,
    older_than_hours: int = 1,
    now: Optional[datetime] = None,
    limit: int = CLEANUP_LIMIT,
) -> int:
    """Delete completed/failed jobs whose batch is finalized and that aged out.

    Returns:
        Number of jobs deleted
    """
    cutoff = _now(now) - timedelta(hours=older_than_hours)
    candidates = (
        session.query(IngestionJob)
        .outerjoin(SyncBatch, IngestionJob.batch_id == SyncBatch.id)
        .filter(
            IngestionJob.status.in_([s.value for s in TERMINAL_JOB_STATUSES]),
            IngestionJob.last_updated_at < cutoff,
            SyncBatch.active_slot.is_(None),
        )
        .limit(limit)
        .all()
    )
    for job in candidates:
        session.delete(job)
    session.flush()
    return len(candidates)
