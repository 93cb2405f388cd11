"""Sync batch and per-repository ingestion job models.

A sync batch is the unit of accounting for one sync request; it owns one
ingestion job per tracked repository. Job state is the durable record that
lets a worker resume after a crash or a rate-limit pause:

    pending -> running -> completed
    running -> blocked -> running -> completed | blocked | failed
    pending | running -> failed

At most one non-terminal batch may exist per account. The guarantee lives in
the database: ``active_slot`` is 1 while a batch is running and NULL once it
is terminal, under a unique constraint on ``(account_id, active_slot)``.
NULLs never collide, so any number of terminal batches can coexist.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import IntEnum

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from activity_ops.models.base import GUID, Base, UTCDateTime

ACTIVE_SLOT = 1


class BatchStatus(IntEnum):
    RUNNING = 1
    COMPLETED = 2
    FAILED = 3


class JobStatus(IntEnum):
    PENDING = 0
    RUNNING = 1
    BLOCKED = 2
    COMPLETED = 3
    FAILED = 4


TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)
ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.BLOCKED)


class SyncBatch(Base):
    __tablename__ = "sync_batches"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    account_id = Column(
        GUID,
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    trigger = Column(Text, nullable=False)
    status = Column(Integer, nullable=False, default=BatchStatus.RUNNING.value)
    active_slot = Column(
        Integer,
        nullable=True,
        default=ACTIVE_SLOT,
        comment="1 while non-terminal, NULL once finalized",
    )

    since = Column(UTCDateTime, nullable=False)
    until = Column(UTCDateTime, nullable=False)

    total_repos = Column(Integer, nullable=False, default=0)
    completed_repos = Column(Integer, nullable=False, default=0)
    failed_repos = Column(Integer, nullable=False, default=0)
    events_ingested = Column(Integer, nullable=False, default=0)

    completed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    account = relationship("Account")
    jobs = relationship(
        "IngestionJob",
        back_populates="batch",
        order_by="IngestionJob.created_at",
    )

    __table_args__ = (
        UniqueConstraint("account_id", "active_slot", name="uq_sync_batch_active"),
        Index("ix_sync_batches_status_updated", "status", "updated_at"),
    )

    @property
    def job_ids(self) -> list[uuid.UUID]:
        return [job.id for job in self.jobs]

    @property
    def is_terminal(self) -> bool:
        return self.status in (BatchStatus.COMPLETED, BatchStatus.FAILED)

    def __repr__(self) -> str:
        return (
            f"<SyncBatch(id={self.id}, account_id={self.account_id}, "
            f"status={BatchStatus(self.status).name}, "
            f"repos={self.completed_repos}/{self.total_repos})>"
        )


class IngestionJob(Base):
    __tablename__ = "ingestion_jobs"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    batch_id = Column(
        GUID,
        ForeignKey("sync_batches.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    account_id = Column(
        GUID,
        ForeignKey("accounts.id", ondelete="SET NULL"),
        nullable=True,
    )
    repo_full_name = Column(Text, nullable=False)
    status = Column(Integer, nullable=False, default=JobStatus.PENDING.value)
    progress = Column(Integer, nullable=False, default=0)
    cursor = Column(Text, nullable=True, comment="Opaque pagination cursor")

    since = Column(UTCDateTime, nullable=True)
    until = Column(UTCDateTime, nullable=True)

    events_ingested = Column(Integer, nullable=False, default=0)
    duplicates = Column(Integer, nullable=False, default=0)
    errors = Column(Integer, nullable=False, default=0)
    pages_fetched = Column(Integer, nullable=False, default=0)

    rate_limit_remaining = Column(Integer, nullable=True)
    rate_limit_reset = Column(UTCDateTime, nullable=True)
    blocked_until = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    worker_id = Column(Text, nullable=True, comment="Celery task id of last run")

    created_at = Column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    last_updated_at = Column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    batch = relationship("SyncBatch", back_populates="jobs")

    __table_args__ = (
        Index("ix_ingestion_jobs_account_status", "account_id", "status"),
        Index("ix_ingestion_jobs_status_updated", "status", "last_updated_at"),
        Index("ix_ingestion_jobs_status_blocked", "status", "blocked_until"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def __repr__(self) -> str:
        return (
            f"<IngestionJob(id={self.id}, repo={self.repo_full_name}, "
            f"status={JobStatus(self.status).name}, cursor={self.cursor})>"
        )
