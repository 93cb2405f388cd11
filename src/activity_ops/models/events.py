"""Canonical event facts and raw webhook envelopes."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, BigInteger, Column, Index, Integer, Text

from activity_ops.models.base import GUID, Base, UTCDateTime


class EventType(str, Enum):
    PR_OPENED = "pr_opened"
    PR_CLOSED = "pr_closed"
    PR_MERGED = "pr_merged"
    REVIEW_SUBMITTED = "review_submitted"
    COMMIT = "commit"
    ISSUE_OPENED = "issue_opened"
    ISSUE_CLOSED = "issue_closed"
    ISSUE_COMMENT = "issue_comment"


class EnvelopeStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class EventFact(Base):
    """One canonical, deduplicated activity item.

    Rows are insert-only. ``content_hash`` is the dedup key shared by the
    webhook and backfill paths.
    """

    __tablename__ = "event_facts"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    type = Column(Text, nullable=False)
    account_id = Column(GUID, nullable=True, index=True)

    repo_full_name = Column(Text, nullable=False)
    repo_platform_id = Column(BigInteger, nullable=True)

    actor_login = Column(Text, nullable=False)
    actor_platform_id = Column(BigInteger, nullable=True)

    occurred_at = Column(UTCDateTime, nullable=False)
    canonical_text = Column(Text, nullable=False)
    source_url = Column(Text, nullable=False)
    metrics = Column(JSON, nullable=True)
    details = Column(JSON, nullable=True, comment="Source-specific metadata")

    platform_id = Column(Text, nullable=True)
    platform_node_id = Column(Text, nullable=True)
    content_hash = Column(Text, nullable=False, unique=True)

    created_at = Column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_event_facts_repo_occurred", "repo_full_name", "occurred_at"),
        Index("ix_event_facts_actor_occurred", "actor_login", "occurred_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EventFact(type={self.type}, repo={self.repo_full_name}, "
            f"actor={self.actor_login}, hash={self.content_hash[:12]})>"
        )


class WebhookEnvelope(Base):
    """A raw webhook delivery, stored before any processing happens."""

    __tablename__ = "webhook_envelopes"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    delivery_id = Column(Text, nullable=False, unique=True)
    event = Column(Text, nullable=False)
    installation_id = Column(BigInteger, nullable=True, index=True)
    payload = Column(JSON, nullable=False)

    status = Column(Text, nullable=False, default=EnvelopeStatus.PENDING.value)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    received_at = Column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    processed_at = Column(UTCDateTime, nullable=True)
    updated_at = Column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_webhook_envelopes_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookEnvelope(delivery_id={self.delivery_id}, "
            f"event={self.event}, status={self.status})>"
        )
