"""Typed errors raised by source-platform connectors."""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class ConnectorException(Exception):
    """Base class for connector failures."""


class APIException(ConnectorException):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationException(APIException):
    """Credentials are missing, invalid or were revoked."""


class NotFoundException(APIException):
    pass


class RateLimitException(APIException):
    """The platform refused a request, or the remaining budget is too low.

    ``reset_at`` is the instant the budget refills, when the platform
    reported one.
    """

    def __init__(
        self,
        message: str = "GitHub API rate limit reached",
        reset_at: Optional[datetime] = None,
        remaining: Optional[int] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, status_code=status_code)
        self.reset_at = reset_at
        self.remaining = remaining
