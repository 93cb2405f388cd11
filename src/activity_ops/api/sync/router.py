"""Sync request and status endpoints.

Manual syncs from the product UI and operator-triggered syncs both go
through the orchestrator; this router only adapts HTTP to ``request``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from activity_ops.db import postgres_session_dependency
from activity_ops.models.ingestion import JobStatus
from activity_ops.sync import accounts, jobs
from activity_ops.sync.orchestrator import link_installation
from activity_ops.sync.orchestrator import request as request_sync

from .schemas import (
    AccountJobsResponse,
    IngestionJobView,
    LinkInstallationBody,
    SyncRequestBody,
    SyncResultResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


def _dispatch_job(job_id: uuid.UUID, countdown: float) -> None:
    from activity_ops.workers.tasks import dispatch_ingestion_job

    dispatch_ingestion_job(job_id, countdown)


@router.post("/accounts/{account_id}", response_model=SyncResultResponse)
def request_account_sync(
    account_id: uuid.UUID,
    session: Annotated[Session, Depends(postgres_session_dependency)],
    body: SyncRequestBody | None = None,
) -> SyncResultResponse:
    body = body or SyncRequestBody()
    if accounts.get_account(session, account_id) is None:
        raise HTTPException(status_code=404, detail="Account not found")

    result = request_sync(
        session,
        account_id,
        trigger=body.trigger,
        since=body.since,
        until=body.until,
        force_full_sync=body.force_full_sync,
        dispatch=_dispatch_job,
    )
    logger.info(
        "Sync request for account %s (%s): started=%s",
        account_id,
        body.trigger.value,
        result.started,
    )
    return SyncResultResponse(
        started=result.started, message=result.message, details=result.details
    )


@router.post(
    "/installations/{installation_id}/link", response_model=SyncResultResponse
)
def link_installation_user(
    installation_id: int,
    body: LinkInstallationBody,
    session: Annotated[Session, Depends(postgres_session_dependency)],
) -> SyncResultResponse:
    """Attach the owning user to an installation; the first link starts a backfill."""
    result = link_installation(
        session, installation_id, body.user_id, dispatch=_dispatch_job
    )
    return SyncResultResponse(
        started=result.started, message=result.message, details=result.details
    )


@router.get("/accounts/{account_id}/jobs", response_model=AccountJobsResponse)
def list_account_jobs(
    account_id: uuid.UUID,
    session: Annotated[Session, Depends(postgres_session_dependency)],
) -> AccountJobsResponse:
    account = accounts.get_account(session, account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")

    views = [
        IngestionJobView(
            id=job.id,
            batch_id=job.batch_id,
            repo_full_name=job.repo_full_name,
            status=JobStatus(job.status).name.lower(),
            progress=job.progress,
            cursor=job.cursor,
            events_ingested=job.events_ingested,
            duplicates=job.duplicates,
            errors=job.errors,
            blocked_until=job.blocked_until,
            last_error=job.last_error,
            last_updated_at=job.last_updated_at,
        )
        for job in jobs.get_active_jobs_for_account(session, account.id)
    ]
    return AccountJobsResponse(
        account_id=account.id,
        sync_status=account.sync_status,
        last_synced_at=account.last_synced_at,
        jobs=views,
    )
