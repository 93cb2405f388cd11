from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from activity_ops.sync.policy import SyncTrigger


class SyncRequestBody(BaseModel):
    trigger: SyncTrigger = SyncTrigger.MANUAL
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    force_full_sync: bool = False


class LinkInstallationBody(BaseModel):
    user_id: str = Field(min_length=1)


class SyncResultResponse(BaseModel):
    started: bool
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class IngestionJobView(BaseModel):
    id: uuid.UUID
    batch_id: uuid.UUID
    repo_full_name: str
    status: str
    progress: int
    cursor: Optional[str] = None
    events_ingested: int
    duplicates: int
    errors: int
    blocked_until: Optional[datetime] = None
    last_error: Optional[str] = None
    last_updated_at: Optional[datetime] = None


class AccountJobsResponse(BaseModel):
    account_id: uuid.UUID
    sync_status: str
    last_synced_at: Optional[datetime] = None
    jobs: list[IngestionJobView]
