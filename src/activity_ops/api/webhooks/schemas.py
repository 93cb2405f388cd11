from __future__ import annotations

import uuid
from typing import Optional

from pydantic import BaseModel, Field


class WebhookResponse(BaseModel):
    """Acknowledgement returned to GitHub once a delivery is stored."""

    status: str = Field(default="accepted")
    delivery_id: str
    envelope_id: Optional[uuid.UUID] = None
    duplicate: bool = False
    message: Optional[str] = None
