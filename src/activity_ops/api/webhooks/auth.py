"""GitHub webhook signature verification.

GitHub signs every delivery with HMAC-SHA256 over the raw body and sends it
as ``X-Hub-Signature-256: sha256=<hex>``. During secret rotation both the
current and the previous secret are accepted.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request

from activity_ops.config import get_webhook_secrets
from activity_ops.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(
    body: bytes,
    signature_header: Optional[str],
    secret: str,
    previous_secret: Optional[str] = None,
) -> bool:
    """Check ``signature_header`` against the current and previous secrets.

    Both candidates are always compared so the check takes the same time
    whichever secret matches.
    """
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    valid = hmac.compare_digest(compute_signature(body, secret), signature_header)
    if previous_secret:
        valid_previous = hmac.compare_digest(
            compute_signature(body, previous_secret), signature_header
        )
        valid = valid or valid_previous
    return valid


async def _get_raw_body(request: Request) -> bytes:
    if not hasattr(request.state, "raw_body"):
        request.state.raw_body = await request.body()
    return request.state.raw_body


async def verify_github_webhook(
    request: Request,
    x_hub_signature_256: Annotated[Optional[str], Header()] = None,
    x_github_delivery: Annotated[Optional[str], Header()] = None,
    x_github_event: Annotated[Optional[str], Header()] = None,
) -> bytes:
    """FastAPI dependency returning the verified raw body.

    Raises:
        HTTPException: 400 when a required header is missing, 500 when no
            secret is configured, 401 when the signature does not match.
    """
    if not x_hub_signature_256 or not x_github_delivery or not x_github_event:
        raise HTTPException(status_code=400, detail="Missing required webhook headers")

    secret, previous_secret = get_webhook_secrets()
    if not secret:
        logger.error("GITHUB_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    body = await _get_raw_body(request)
    if not verify_signature(body, x_hub_signature_256, secret, previous_secret):
        logger.warning(
            "Invalid webhook signature: delivery=%s event=%s",
            sanitize_for_log(x_github_delivery),
            sanitize_for_log(x_github_event),
        )
        raise HTTPException(status_code=401, detail="Invalid signature")
    return body


GitHubWebhookBody = Annotated[bytes, Depends(verify_github_webhook)]
