"""Celery task definitions for ingestion and maintenance.

Task bodies are thin: they open a session, call into ``activity_ops.sync``
or ``activity_ops.ingest`` and translate the outcome into a small result
dict. Imports of the database and domain layers are done inside the task
bodies so importing this module (e.g. by celery beat) stays cheap.

- process_ingestion_job: run or resume one repository backfill job
- process_webhook_envelope: turn one stored webhook delivery into facts
- resume_blocked_jobs / fail_zombie_jobs / finalize_batches /
  cleanup_retention: periodic safety nets
- dispatch_scheduled_syncs / run_catch_up_sync: cron and maintenance triggers
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from activity_ops.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def dispatch_ingestion_job(job_id: uuid.UUID, countdown: float = 0.0) -> None:
    """Queue one ingestion job, ``countdown`` seconds from now."""
    process_ingestion_job.apply_async(
        kwargs={"job_id": str(job_id)},
        countdown=countdown,
        queue="sync",
    )


def schedule_job_resume(job_id: uuid.UUID, blocked_until: datetime) -> None:
    """Queue the one-shot resume of a blocked job at ``blocked_until``."""
    process_ingestion_job.apply_async(
        kwargs={"job_id": str(job_id)},
        eta=blocked_until,
        queue="sync",
    )


def _build_installation_client(installation_id: int) -> Any:
    from activity_ops.connectors.github import GitHubAppClient

    return GitHubAppClient().installation(installation_id)


@celery_app.task(bind=True, queue="sync")
def process_ingestion_job(self, job_id: str) -> dict:
    """
    Run (or resume) one ingestion job.

    Rate limits and failures are persisted on the job itself, so this task
    never retries; a blocked job schedules its own resume.

    Args:
        job_id: IngestionJob id

    Returns:
        dict with the job status and page/fact counters of this run
    """
    from activity_ops.connectors.utils.rate_limit_queue import create_rate_limit_gate
    from activity_ops.db import get_postgres_session_sync
    from activity_ops.sync import accounts, jobs
    from activity_ops.sync.worker import run_ingestion_job

    job_uuid = uuid.UUID(job_id)
    with get_postgres_session_sync() as session:
        job = jobs.get_job(session, job_uuid)
        if job is None:
            logger.warning("Ingestion job %s not found; dropping task", job_id)
            return {"status": "not_found", "job_id": job_id}

        client = None
        gate = None
        account = accounts.get_account(session, job.account_id)
        if account is not None and not job.is_terminal:
            client = _build_installation_client(account.installation_id)
            gate = create_rate_limit_gate(account.installation_id)

        outcome = run_ingestion_job(
            session,
            job_uuid,
            client=client,
            schedule_resume=schedule_job_resume,
            gate=gate,
            worker_id=self.request.id,
        )

    return {
        "status": outcome.status.name.lower(),
        "job_id": job_id,
        "pages": outcome.pages,
        "inserted": outcome.inserted,
        "duplicates": outcome.duplicates,
        "errors": outcome.errors,
        "blocked_until": outcome.blocked_until.isoformat()
        if outcome.blocked_until
        else None,
        "error": outcome.error,
    }


@celery_app.task(bind=True, max_retries=3, queue="webhooks")
def process_webhook_envelope(self, envelope_id: str) -> dict:
    """
    Process one stored webhook delivery.

    Processing failures are recorded on the envelope (status ``failed``);
    only infrastructure errors (database unavailable) are retried.
    """
    from activity_ops.db import get_postgres_session_sync
    from activity_ops.ingest.webhooks import process_envelope

    try:
        with get_postgres_session_sync() as session:
            result = process_envelope(
                session, uuid.UUID(envelope_id), dispatch=dispatch_ingestion_job
            )
    except Exception as exc:
        logger.exception("Webhook envelope %s could not be processed", envelope_id)
        raise self.retry(exc=exc, countdown=30 * (2**self.request.retries))

    if result is None:
        return {"status": "not_found", "envelope_id": envelope_id}
    return {
        "status": result.status.value,
        "envelope_id": envelope_id,
        "inserted": result.inserted,
        "duplicates": result.duplicates,
        "error": result.error,
    }


@celery_app.task(bind=True, queue="maintenance")
def resume_blocked_jobs(self) -> dict:
    """Safety net for blocked jobs whose scheduled resume never ran."""
    from activity_ops.db import get_postgres_session_sync
    from activity_ops.sync import jobs

    resumed: list[str] = []
    with get_postgres_session_sync() as session:
        for job in jobs.find_stuck_blocked_jobs(session):
            jobs.resume_job(session, job.id)
            resumed.append(str(job.id))
        session.commit()

    for job_id in resumed:
        dispatch_ingestion_job(uuid.UUID(job_id))

    if resumed:
        logger.info("Resumed %d stuck blocked job(s)", len(resumed))
    return {"resumed": len(resumed), "job_ids": resumed}


def _finalize_batches_of(session: Any, failed_jobs: list) -> None:
    from activity_ops.sync import batches

    for batch_id in {job.batch_id for job in failed_jobs}:
        batches.maybe_finalize_batch(session, batch_id)


@celery_app.task(bind=True, queue="maintenance")
def fail_zombie_jobs(self) -> dict:
    """Fail RUNNING jobs that stopped reporting progress."""
    from activity_ops.config import get_zombie_threshold_minutes
    from activity_ops.db import get_postgres_session_sync
    from activity_ops.sync import jobs

    with get_postgres_session_sync() as session:
        zombies = jobs.fail_zombie_jobs(
            session, stale_threshold_minutes=get_zombie_threshold_minutes()
        )
        _finalize_batches_of(session, zombies)
        failed = [str(job.id) for job in zombies]

    if failed:
        logger.warning("Failed %d zombie ingestion job(s): %s", len(failed), failed)
    return {"failed": len(failed), "job_ids": failed}


@celery_app.task(bind=True, queue="maintenance")
def finalize_batches(self) -> dict:
    from activity_ops.db import get_postgres_session_sync
    from activity_ops.sync.batches import finalize_complete_batches

    with get_postgres_session_sync() as session:
        finalized = finalize_complete_batches(session)
    return {"finalized": finalized}


@celery_app.task(bind=True, queue="maintenance")
def cleanup_retention(self) -> dict:
    """Fail long-blocked jobs, then delete aged terminal jobs and envelopes."""
    from activity_ops.config import get_job_retention_hours, get_webhook_retention_days
    from activity_ops.db import get_postgres_session_sync
    from activity_ops.ingest.webhooks import clear_terminal_envelopes
    from activity_ops.sync import jobs

    with get_postgres_session_sync() as session:
        stale = jobs.fail_long_blocked_jobs(session)
        _finalize_batches_of(session, stale)
        session.commit()
        deleted_jobs = jobs.clear_terminal_jobs(
            session, older_than_hours=get_job_retention_hours()
        )
        deleted_envelopes = clear_terminal_envelopes(
            session, older_than_days=get_webhook_retention_days()
        )

    logger.info(
        "Retention cleanup: failed_blocked=%d deleted_jobs=%d deleted_envelopes=%d",
        len(stale),
        deleted_jobs,
        deleted_envelopes,
    )
    return {
        "failed_blocked": len(stale),
        "deleted_jobs": deleted_jobs,
        "deleted_envelopes": deleted_envelopes,
    }


def _request_for_accounts(trigger: str, stale_after: Optional[Any] = None) -> dict:
    from activity_ops.db import get_postgres_session_sync
    from activity_ops.sync import accounts
    from activity_ops.sync.orchestrator import request

    started: list[str] = []
    skipped = 0
    with get_postgres_session_sync() as session:
        account_ids = [
            account.id
            for account in accounts.list_accounts_due_for_sync(
                session, stale_after=stale_after
            )
        ]
        for account_id in account_ids:
            try:
                result = request(
                    session,
                    account_id,
                    trigger=trigger,
                    dispatch=dispatch_ingestion_job,
                )
            except Exception:
                session.rollback()
                logger.exception("%s sync request failed for account %s", trigger, account_id)
                skipped += 1
                continue
            if result.started:
                started.append(str(account_id))
            else:
                skipped += 1

    logger.info(
        "%s sync dispatch: started=%d skipped=%d", trigger, len(started), skipped
    )
    return {"started": started, "skipped": skipped}


@celery_app.task(bind=True, queue="default")
def dispatch_scheduled_syncs(self) -> dict:
    """Request an incremental sync for every active account."""
    from activity_ops.sync.policy import SyncTrigger

    return _request_for_accounts(SyncTrigger.CRON.value)


@celery_app.task(bind=True, queue="maintenance")
def run_catch_up_sync(self) -> dict:
    """Request a sync for accounts that have not synced for a day."""
    from activity_ops.sync.orchestrator import CATCH_UP_STALE_AFTER
    from activity_ops.sync.policy import SyncTrigger

    return _request_for_accounts(
        SyncTrigger.MAINTENANCE.value, stale_after=CATCH_UP_STALE_AFTER
    )


@celery_app.task(bind=True)
def health_check(self) -> dict:
    """Simple health check task to verify worker is running."""
    return {
        "status": "healthy",
        "worker_id": self.request.id,
    }
