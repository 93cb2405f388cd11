"""Canonical fact service: the single dedup boundary for event facts.

Both the webhook processor and the backfill worker insert through
``upsert_fact``. The unique index on ``event_facts.content_hash`` is the
source of truth; the lookup before insert only avoids a needless
IntegrityError in the common duplicate case.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from activity_ops.ingest.canonicalize import EventFactData
from activity_ops.models.events import EventFact

logger = logging.getLogger(__name__)


class UpsertStatus(str, Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class UpsertResult:
    status: UpsertStatus
    fact_id: uuid.UUID

    @property
    def inserted(self) -> bool:
        return self.status == UpsertStatus.INSERTED


def get_fact_by_hash(session: Session, content_hash: str) -> Optional[EventFact]:
    return (
        session.query(EventFact)
        .filter(EventFact.content_hash == content_hash)
        .one_or_none()
    )


def upsert_fact(
    session: Session,
    fact: EventFactData,
    account_id: Optional[uuid.UUID] = None,
) -> UpsertResult:
    """Insert ``fact`` unless a fact with the same content hash exists.

    Args:
        session: SQLAlchemy synchronous session
        fact: Canonicalized event
        account_id: Owning account, when known

    Returns:
        UpsertResult with ``inserted`` or ``duplicate`` and the stored fact id
    """
    content_hash = fact.content_hash
    existing = get_fact_by_hash(session, content_hash)
    if existing is not None:
        return UpsertResult(UpsertStatus.DUPLICATE, existing.id)

    row = EventFact(
        id=uuid.uuid4(),
        type=fact.type.value,
        account_id=account_id,
        repo_full_name=fact.repo.full_name,
        repo_platform_id=fact.repo.platform_id,
        actor_login=fact.actor.login,
        actor_platform_id=fact.actor.platform_id,
        occurred_at=fact.occurred_at,
        canonical_text=fact.canonical_text,
        source_url=fact.source_url,
        metrics=fact.metrics,
        details=fact.details or None,
        platform_id=fact.platform_id,
        platform_node_id=fact.platform_node_id,
        content_hash=content_hash,
    )
    try:
        with session.begin_nested():
            session.add(row)
    except IntegrityError:
        # Lost a race with a concurrent writer for the same hash.
        existing = get_fact_by_hash(session, content_hash)
        if existing is None:
            raise
        logger.debug("Concurrent insert resolved as duplicate: %s", content_hash)
        return UpsertResult(UpsertStatus.DUPLICATE, existing.id)

    return UpsertResult(UpsertStatus.INSERTED, row.id)


def count_facts(session: Session, repo_full_name: Optional[str] = None) -> int:
    query = session.query(EventFact)
    if repo_full_name:
        query = query.filter(EventFact.repo_full_name == repo_full_name)
    return query.count()
