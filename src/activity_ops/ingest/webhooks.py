"""Webhook envelope storage and processing.

The HTTP layer stores every verified delivery as a ``WebhookEnvelope``
before anything else happens, then hands the envelope id to a worker.
Processing is at-least-once: a redelivered or re-run envelope inserts
nothing new because every fact goes through ``upsert_fact``.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from activity_ops.ingest.canonicalize import RepoRef, SourceKind, canonicalize
from activity_ops.ingest.facts import upsert_fact
from activity_ops.models.events import EnvelopeStatus, WebhookEnvelope
from activity_ops.sync import accounts
from activity_ops.sync.orchestrator import request
from activity_ops.sync.policy import SyncTrigger
from activity_ops.utils.logging import emit_metric, sanitize_for_log

logger = logging.getLogger(__name__)

INSTALLATION_EVENTS = ("installation", "installation_repositories")

_SINGLE_INPUT_EVENTS = {
    "pull_request": SourceKind.PULL_REQUEST,
    "pull_request_review": SourceKind.PULL_REQUEST_REVIEW,
    "issues": SourceKind.ISSUES,
    "issue_comment": SourceKind.ISSUE_COMMENT,
}


@dataclass
class ProcessResult:
    status: EnvelopeStatus
    inserted: int = 0
    duplicates: int = 0
    error: Optional[str] = None


def get_envelope(session: Session, envelope_id: uuid.UUID) -> Optional[WebhookEnvelope]:
    return (
        session.query(WebhookEnvelope)
        .filter(WebhookEnvelope.id == envelope_id)
        .first()
    )


def get_envelope_by_delivery(
    session: Session, delivery_id: str
) -> Optional[WebhookEnvelope]:
    return (
        session.query(WebhookEnvelope)
        .filter(WebhookEnvelope.delivery_id == delivery_id)
        .first()
    )


def store_envelope(
    session: Session,
    delivery_id: str,
    event: str,
    payload: Mapping[str, Any],
) -> tuple[WebhookEnvelope, bool]:
    """Persist a delivery once per ``delivery_id``.

    Returns:
        (envelope, created); ``created`` is False for a redelivery
    """
    existing = get_envelope_by_delivery(session, delivery_id)
    if existing is not None:
        return existing, False

    installation_id = (payload.get("installation") or {}).get("id")
    envelope = WebhookEnvelope(
        id=uuid.uuid4(),
        delivery_id=delivery_id,
        event=event,
        installation_id=installation_id if isinstance(installation_id, int) else None,
        payload=dict(payload),
        status=EnvelopeStatus.PENDING.value,
        retry_count=0,
    )
    try:
        with session.begin_nested():
            session.add(envelope)
    except IntegrityError:
        existing = get_envelope_by_delivery(session, delivery_id)
        if existing is None:
            raise
        return existing, False
    return envelope, True


def build_canonical_inputs(
    event: str, payload: Mapping[str, Any]
) -> list[tuple[SourceKind, Mapping[str, Any], Optional[RepoRef]]]:
    """Split one delivery into canonicalizer inputs.

    A push carries many commits; each becomes its own ``commit`` input with
    the pushed repository as context. Unsupported events yield nothing.
    """
    kind = _SINGLE_INPUT_EVENTS.get(event)
    if kind is not None:
        return [(kind, payload, None)]
    if event == "push":
        repo = RepoRef.from_payload(payload.get("repository"))
        return [
            (SourceKind.COMMIT, commit, repo)
            for commit in payload.get("commits") or []
            if isinstance(commit, dict)
        ]
    return []


def _repo_names(repos: Any) -> list[str]:
    return [
        repo["full_name"]
        for repo in repos or []
        if isinstance(repo, dict) and repo.get("full_name")
    ]


def handle_installation_event(
    session: Session,
    event: str,
    payload: Mapping[str, Any],
    dispatch: Any = None,
    resolve_user: Optional[accounts.UserResolver] = None,
) -> Optional[str]:
    """Apply an installation lifecycle delivery to the Account table.

    An account without an owning user is matched through ``resolve_user``
    (default: a user already linked to the same GitHub login). The upsert is
    committed before the initial backfill is requested.

    Returns the action applied, or None when the payload has no installation.
    """
    installation = payload.get("installation") or {}
    installation_id = installation.get("id")
    if not isinstance(installation_id, int):
        return None
    owner = installation.get("account") or {}
    action = payload.get("action") or ""

    if event == "installation_repositories":
        account, _ = accounts.upsert_installation(
            session,
            installation_id,
            account_login=owner.get("login"),
            account_type=owner.get("type"),
        )
        accounts.set_repositories(
            session,
            account,
            added=_repo_names(payload.get("repositories_added")),
            removed=_repo_names(payload.get("repositories_removed")),
        )
        return f"repositories_{action}"

    if action in ("deleted", "suspend"):
        account = accounts.get_account_by_installation(session, installation_id)
        if account is not None:
            accounts.deactivate(session, account)
        return action

    repositories = payload.get("repositories")
    account, created = accounts.upsert_installation(
        session,
        installation_id,
        account_login=owner.get("login"),
        account_type=owner.get("type"),
        repositories=_repo_names(repositories) if repositories is not None else None,
        is_active=True,
    )
    logger.info(
        "Installation %s %s (account %s, new=%s)",
        installation_id,
        sanitize_for_log(action),
        account.id,
        created,
    )

    if account.user_id is None:
        user_id = (resolve_user or accounts.find_user_for_login)(
            session, account.account_login
        )
        if user_id:
            account.user_id = user_id
            logger.info("Installation %s linked by login", installation_id)
    session.commit()

    if action == "created" and account.user_id and account.repositories:
        result = request(
            session,
            account.id,
            trigger=SyncTrigger.WEBHOOK,
            force_full_sync=True,
            dispatch=dispatch,
        )
        logger.info(
            "Initial backfill for installation %s: %s",
            installation_id,
            result.message,
        )
    return action


def _set_status(
    envelope: WebhookEnvelope,
    status: EnvelopeStatus,
    error: Optional[str] = None,
) -> None:
    envelope.status = status.value
    envelope.error_message = error
    envelope.updated_at = datetime.now(timezone.utc)
    if status in (EnvelopeStatus.COMPLETED, EnvelopeStatus.FAILED):
        envelope.processed_at = envelope.updated_at


def process_envelope(
    session: Session,
    envelope_id: uuid.UUID,
    dispatch: Any = None,
    resolve_user: Optional[accounts.UserResolver] = None,
) -> Optional[ProcessResult]:
    """Process one stored delivery into event facts.

    Failures are never raised to the caller: the envelope is marked
    ``failed`` with the error and its retry count incremented, which is the
    dead-letter record an operator can replay.

    Args:
        session: SQLAlchemy synchronous session; committed on every status change
        envelope_id: Stored envelope to process
        dispatch: Job dispatcher forwarded to the orchestrator for initial backfills
        resolve_user: Owner lookup for installations not yet linked to a user

    Returns:
        ProcessResult, or None when the envelope does not exist
    """
    started = time.monotonic()
    envelope = get_envelope(session, envelope_id)
    if envelope is None:
        logger.warning("Webhook envelope %s not found", envelope_id)
        return None

    event = envelope.event
    delivery_id = envelope.delivery_id
    result = ProcessResult(status=EnvelopeStatus.PROCESSING)
    try:
        _set_status(envelope, EnvelopeStatus.PROCESSING)
        session.commit()

        payload = envelope.payload or {}
        if event in INSTALLATION_EVENTS:
            handle_installation_event(
                session, event, payload, dispatch=dispatch, resolve_user=resolve_user
            )
        else:
            inputs = build_canonical_inputs(event, payload)
            if not inputs:
                logger.info(
                    "Ignoring unsupported webhook event %s (delivery %s)",
                    sanitize_for_log(event),
                    sanitize_for_log(delivery_id),
                )
            account = None
            if envelope.installation_id is not None:
                account = accounts.get_account_by_installation(
                    session, envelope.installation_id
                )
            for kind, item, repo_context in inputs:
                fact = canonicalize(kind, item, repo_context=repo_context)
                if fact is None:
                    continue
                upserted = upsert_fact(
                    session, fact, account_id=account.id if account else None
                )
                if upserted.inserted:
                    result.inserted += 1
                else:
                    result.duplicates += 1

        envelope = get_envelope(session, envelope_id)
        _set_status(envelope, EnvelopeStatus.COMPLETED)
        session.commit()
        result.status = EnvelopeStatus.COMPLETED
        logger.info(
            "Webhook processed: delivery=%s event=%s inserted=%d duplicates=%d",
            sanitize_for_log(delivery_id),
            sanitize_for_log(event),
            result.inserted,
            result.duplicates,
        )
    except Exception as exc:
        session.rollback()
        error = str(exc) or exc.__class__.__name__
        logger.error(
            "Webhook processing failed: envelope=%s error=%s",
            envelope_id,
            sanitize_for_log(error, 500),
        )
        envelope = get_envelope(session, envelope_id)
        if envelope is not None:
            _set_status(envelope, EnvelopeStatus.FAILED, error)
            envelope.retry_count = (envelope.retry_count or 0) + 1
            session.commit()
        result.status = EnvelopeStatus.FAILED
        result.error = error
    finally:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Webhook processing finished: envelope=%s elapsed_ms=%d",
            envelope_id,
            elapsed_ms,
        )
        emit_metric(
            "webhook.process",
            event=event,
            status=result.status.value,
            inserted=result.inserted,
            duplicates=result.duplicates,
            duration_ms=elapsed_ms,
        )
    return result


def clear_terminal_envelopes(
    session: Session,
    older_than_days: int,
    now: Optional[datetime] = None,
) -> int:
    """Delete completed and failed envelopes older than the retention window."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=older_than_days)
    deleted = (
        session.query(WebhookEnvelope)
        .filter(
            WebhookEnvelope.status.in_(
                [EnvelopeStatus.COMPLETED.value, EnvelopeStatus.FAILED.value]
            ),
            WebhookEnvelope.updated_at < cutoff,
        )
        .delete(synchronize_session=False)
    )
    session.flush()
    return deleted
