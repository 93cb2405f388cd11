"""Account (GitHub App installation) model.

An account is one tracked connection to GitHub. It is created and updated by
installation lifecycle webhooks, mutated by the sync orchestrator and the
ingestion workers, and never deleted by this service.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, BigInteger, Boolean, Column, Index, Integer, Text

from activity_ops.models.base import GUID, Base, UTCDateTime


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


class Account(Base):
    __tablename__ = "accounts"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    installation_id = Column(
        BigInteger,
        nullable=False,
        unique=True,
        comment="GitHub App installation id",
    )
    account_login = Column(Text, nullable=True)
    account_type = Column(Text, nullable=True, comment="User or Organization")
    user_id = Column(
        Text,
        nullable=True,
        index=True,
        comment="Owning user reference, set by the identity layer",
    )
    repositories = Column(
        JSON,
        nullable=False,
        default=list,
        comment="Tracked repository full names (owner/name)",
    )
    is_active = Column(Boolean, nullable=False, default=True)

    sync_status = Column(Text, nullable=False, default=SyncStatus.IDLE.value)
    last_synced_at = Column(UTCDateTime, nullable=True)
    last_manual_sync_at = Column(UTCDateTime, nullable=True)
    next_sync_at = Column(UTCDateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)

    rate_limit_remaining = Column(Integer, nullable=True)
    rate_limit_reset = Column(UTCDateTime, nullable=True)

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

    __table_args__ = (Index("ix_accounts_active_status", "is_active", "sync_status"),)

    def __init__(
        self,
        installation_id: int,
        account_login: Optional[str] = None,
        user_id: Optional[str] = None,
        repositories: Optional[list[str]] = None,
        is_active: bool = True,
        sync_status: str = SyncStatus.IDLE.value,
        **kwargs,
    ):
        self.id = kwargs.pop("id", None) or uuid.uuid4()
        self.installation_id = installation_id
        self.account_login = account_login
        self.user_id = user_id
        self.repositories = list(repositories or [])
        self.is_active = is_active
        self.sync_status = sync_status
        for key, value in kwargs.items():
            setattr(self, key, value)
        self.created_at = datetime.now(timezone.utc)
        self.updated_at = datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return (
            f"<Account(installation_id={self.installation_id}, "
            f"login={self.account_login}, status={self.sync_status})>"
        )
