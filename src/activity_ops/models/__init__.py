from .base import GUID, Base, UTCDateTime
from .accounts import Account, SyncStatus
from .ingestion import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    BatchStatus,
    IngestionJob,
    JobStatus,
    SyncBatch,
)
from .events import EnvelopeStatus, EventFact, EventType, WebhookEnvelope

__all__ = [
    "ACTIVE_JOB_STATUSES",
    "Account",
    "Base",
    "BatchStatus",
    "EnvelopeStatus",
    "EventFact",
    "EventType",
    "GUID",
    "IngestionJob",
    "JobStatus",
    "SyncBatch",
    "SyncStatus",
    "TERMINAL_JOB_STATUSES",
    "UTCDateTime",
    "WebhookEnvelope",
]
