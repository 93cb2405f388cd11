"""GitHub App webhook ingress.

Every delivery follows the same pattern:
1. Validate headers and signature (via dependency)
2. Parse the JSON payload
3. Store the envelope durably, idempotent on the delivery id
4. Dispatch processing to Celery
5. Return an accepted response immediately

Processing never happens in the request, so GitHub always gets a fast ACK.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from activity_ops.config import get_webhook_secrets
from activity_ops.db import postgres_session_dependency
from activity_ops.ingest.webhooks import store_envelope
from activity_ops.utils.logging import sanitize_for_log

from .auth import GitHubWebhookBody
from .schemas import WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


def _dispatch_envelope_task(envelope_id: uuid.UUID) -> None:
    """Hand a stored envelope to Celery.

    Best effort: the envelope is already stored as ``pending``, so a
    dispatch failure is logged and the delivery can be replayed later.
    """
    try:
        from activity_ops.workers.tasks import process_webhook_envelope

        process_webhook_envelope.delay(envelope_id=str(envelope_id))
    except Exception as e:
        logger.error(
            "Failed to dispatch webhook envelope to Celery: %s (envelope_id=%s)",
            e,
            envelope_id,
        )


@router.post("/github", response_model=WebhookResponse)
def github_webhook(
    body: GitHubWebhookBody,
    session: Annotated[Session, Depends(postgres_session_dependency)],
    x_github_event: Annotated[Optional[str], Header()] = None,
    x_github_delivery: Annotated[Optional[str], Header()] = None,
) -> WebhookResponse:
    """Receive a GitHub App delivery.

    Signature and required headers are validated before this handler runs
    via the GitHubWebhookBody dependency.
    """
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Invalid JSON in GitHub webhook: %s", e)
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    envelope, created = store_envelope(
        session, x_github_delivery, x_github_event, payload
    )
    envelope_id = envelope.id
    session.commit()

    safe_delivery = sanitize_for_log(x_github_delivery)
    safe_event = sanitize_for_log(x_github_event)
    if not created:
        logger.info("Duplicate webhook delivery %s (%s)", safe_delivery, safe_event)
        return WebhookResponse(
            delivery_id=x_github_delivery,
            envelope_id=envelope_id,
            duplicate=True,
            message="Delivery already received",
        )

    _dispatch_envelope_task(envelope_id)
    logger.info("Webhook enqueued: delivery=%s event=%s", safe_delivery, safe_event)
    return WebhookResponse(
        delivery_id=x_github_delivery,
        envelope_id=envelope_id,
        message=f"Processing {safe_event} event",
    )


@router.get("/health")
def webhooks_health() -> dict:
    """Health check for webhook endpoints.

    Verifies:
    - Router is mounted
    - Celery app is importable
    - Webhook secrets are configured
    """
    secret, previous_secret = get_webhook_secrets()

    celery_available = False
    try:
        from activity_ops.workers.celery_app import celery_app

        celery_available = celery_app is not None
    except Exception as exc:
        logger.warning("Celery health check failed in /webhooks/health: %s", exc)

    return {
        "status": "ok",
        "secrets_configured": {
            "github": bool(secret),
            "github_previous": bool(previous_secret),
        },
        "celery_available": celery_available,
    }
