"""Ingestion job worker: backfill one repository, page by page.

A job is resumable. After every page the cursor, counters, progress and the
account's rate-limit snapshot are committed, so a worker that dies, or a job
that gets blocked on the rate limit, picks up exactly where it stopped.

State machine::

    pending --> running --> completed
                   |  ^
                   v  |  (resume at blocked_until)
                 blocked
                   |
    any non-terminal --> failed

Terminal jobs are left untouched: running a completed or failed job again
is a no-op, which makes duplicate task deliveries harmless.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from activity_ops.connectors.exceptions import RateLimitException
from activity_ops.connectors.rate_limit import (
    RateLimitGuard,
    RateLimitSnapshot,
    resume_time,
)
from activity_ops.ingest.canonicalize import RepoRef, canonicalize
from activity_ops.ingest.facts import upsert_fact
from activity_ops.models.ingestion import JobStatus
from activity_ops.sync import accounts, batches, jobs
from activity_ops.utils.logging import emit_metric, sanitize_for_log

logger = logging.getLogger(__name__)

ACCOUNT_MISSING_ERROR = "Account not found for ingestion job"
MAX_PAGES_PER_RUN = 500

ResumeScheduler = Callable[[uuid.UUID, datetime], Any]


@dataclass
class JobOutcome:
    job_id: uuid.UUID
    status: JobStatus
    pages: int = 0
    inserted: int = 0
    duplicates: int = 0
    errors: int = 0
    blocked_until: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class _PageTally:
    inserted: int = 0
    duplicates: int = 0
    errors: int = 0


def _ingest_items(
    session: Session,
    page: Any,
    repo: RepoRef,
    account_id: uuid.UUID,
    job_id: uuid.UUID,
) -> _PageTally:
    tally = _PageTally()
    for item in page.items:
        try:
            fact = canonicalize(item.kind, item.payload, repo_context=repo)
            if fact is None:
                continue
            result = upsert_fact(session, fact, account_id=account_id)
        except Exception as exc:
            tally.errors += 1
            logger.warning(
                "Skipping %s item in job %s: %s",
                item.kind.value,
                job_id,
                sanitize_for_log(str(exc), 300),
            )
            continue
        if result.inserted:
            tally.inserted += 1
        else:
            tally.duplicates += 1
    return tally


def _progress(job: Any, page: Any, tally: _PageTally) -> Optional[int]:
    """Percent of the search total seen, counting the page just ingested."""
    if not page.total_count:
        return None
    seen = job.events_ingested + job.duplicates + tally.inserted + tally.duplicates
    return int(min(99, seen * 100 / page.total_count))


def _finish(
    session: Session, outcome: JobOutcome, batch_id: Optional[uuid.UUID]
) -> JobOutcome:
    if batch_id is not None:
        batches.maybe_finalize_batch(session, batch_id)
    session.commit()
    return outcome


def _block(
    session: Session,
    outcome: JobOutcome,
    blocked_until: datetime,
    reason: str,
    schedule_resume: Optional[ResumeScheduler],
    gate: Any,
    reset_at: Optional[datetime],
) -> JobOutcome:
    job = jobs.mark_blocked(session, outcome.job_id, blocked_until, reason=reason)
    account = accounts.get_account(session, job.account_id)
    if account is not None and account.rate_limit_reset is None:
        account.rate_limit_reset = blocked_until
    session.commit()

    if gate is not None and reset_at is not None:
        try:
            gate.penalize_until(reset_at)
        except Exception as exc:
            logger.warning("Failed to penalize rate-limit gate: %s", exc)
    if schedule_resume is not None:
        schedule_resume(outcome.job_id, blocked_until)

    outcome.status = JobStatus.BLOCKED
    outcome.blocked_until = blocked_until
    logger.info(
        "Ingestion job %s blocked until %s: %s",
        outcome.job_id,
        blocked_until.isoformat(),
        reason,
    )
    return outcome


def run_ingestion_job(
    session: Session,
    job_id: uuid.UUID,
    client: Any,
    schedule_resume: Optional[ResumeScheduler] = None,
    gate: Any = None,
    guard: Optional[RateLimitGuard] = None,
    worker_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> JobOutcome:
    """Run (or resume) one ingestion job until it completes, blocks or fails.

    Args:
        session: SQLAlchemy synchronous session; committed after every page
        job_id: Job to run
        client: Installation client exposing ``get_repository`` and
            ``fetch_page``
        schedule_resume: Called once with ``(job_id, blocked_until)`` when
            the job blocks
        gate: Shared per-installation rate-limit gate, optional
        guard: Budget guard, defaults to the configured threshold
        worker_id: Identifier recorded on the job while it runs
        now: Override for the current time

    Returns:
        JobOutcome with the final status of this run
    """
    started = time.monotonic()
    guard = guard or RateLimitGuard()
    now = now or datetime.now(timezone.utc)

    job = jobs.get_job(session, job_id)
    if job is None:
        raise ValueError(f"Ingestion job {job_id} not found")
    if job.is_terminal:
        logger.info(
            "Ingestion job %s already %s; nothing to do",
            job_id,
            JobStatus(job.status).name.lower(),
        )
        return JobOutcome(job_id=job_id, status=JobStatus(job.status))

    outcome = JobOutcome(job_id=job_id, status=JobStatus(job.status))
    batch_id = job.batch_id

    account = accounts.get_account(session, job.account_id)
    if account is None:
        jobs.mark_failed(session, job_id, ACCOUNT_MISSING_ERROR)
        outcome.status = JobStatus.FAILED
        outcome.error = ACCOUNT_MISSING_ERROR
        return _finish(session, outcome, batch_id)

    try:
        if gate is not None:
            gate_blocked = gate.blocked_until()
            if gate_blocked is not None and gate_blocked > now:
                return _block(
                    session,
                    outcome,
                    gate_blocked,
                    "Installation rate limit exhausted",
                    schedule_resume,
                    None,
                    None,
                )

        job = jobs.mark_running(session, job_id, worker_id=worker_id)
        session.commit()

        repo = RepoRef.from_payload(client.get_repository(job.repo_full_name)) or RepoRef(
            full_name=job.repo_full_name,
            url=f"https://github.com/{job.repo_full_name}",
        )

        for _ in range(MAX_PAGES_PER_RUN):
            page = client.fetch_page(job.repo_full_name, job.cursor, job.since, job.until)
            tally = _ingest_items(session, page, repo, account.id, job_id)
            job = jobs.update_progress(
                session,
                job_id,
                cursor=page.end_cursor if page.has_next_page else job.cursor,
                inserted=tally.inserted,
                duplicates=tally.duplicates,
                errors=tally.errors,
                progress=_progress(job, page, tally),
                rate_limit_remaining=page.rate_limit.remaining,
                rate_limit_reset=page.rate_limit.reset_at,
            )
            accounts.update_rate_limit(session, account.id, page.rate_limit)
            session.commit()

            outcome.pages += 1
            outcome.inserted += tally.inserted
            outcome.duplicates += tally.duplicates
            outcome.errors += tally.errors

            if not page.has_next_page:
                jobs.mark_completed(session, job_id)
                outcome.status = JobStatus.COMPLETED
                return _finish(session, outcome, batch_id)

            snapshot: RateLimitSnapshot = page.rate_limit
            if guard.should_pause(snapshot):
                blocked_until = resume_time(snapshot.reset_at, now)
                return _block(
                    session,
                    outcome,
                    blocked_until,
                    f"Rate-limit budget low ({snapshot.remaining} remaining)",
                    schedule_resume,
                    gate,
                    snapshot.reset_at,
                )

        # Page cap reached; park briefly so other jobs get a turn.
        return _block(
            session,
            outcome,
            resume_time(None, now),
            "Page limit per run reached",
            schedule_resume,
            None,
            None,
        )

    except RateLimitException as exc:
        session.rollback()
        return _block(
            session,
            outcome,
            resume_time(exc.reset_at, now),
            str(exc),
            schedule_resume,
            gate,
            exc.reset_at,
        )
    except Exception as exc:
        session.rollback()
        logger.exception("Ingestion job %s failed", job_id)
        jobs.mark_failed(session, job_id, str(exc) or exc.__class__.__name__)
        outcome.status = JobStatus.FAILED
        outcome.error = str(exc)
        return _finish(session, outcome, batch_id)
    finally:
        emit_metric(
            "sync.job",
            job_id=job_id,
            status=outcome.status.name.lower(),
            pages=outcome.pages,
            inserted=outcome.inserted,
            duplicates=outcome.duplicates,
            errors=outcome.errors,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
