"""Logging helpers: log-injection safe values and metric lines.

``sanitize_for_log`` strips CR/LF and control characters from values that
originate outside the process (webhook headers, repository names, API error
bodies) before they reach a log record.

``emit_metric`` writes one ``key=value`` line per outcome to the
``activity_ops.metrics`` logger so log-based dashboards can count sync and
webhook outcomes without a metrics client.
"""

from __future__ import annotations

import logging
from typing import Any

metrics_logger = logging.getLogger("activity_ops.metrics")


def sanitize_for_log(value: Any, max_length: int = 1000) -> Any:
    """Sanitize a value for safe logging.

    Args:
        value: The value to sanitize. Dicts, lists, tuples and sets are
            sanitized recursively.
        max_length: Maximum string length before truncation.

    Returns:
        Sanitized value safe for logging.
    """

    def clean_string(text: str) -> str:
        cleaned = " ".join(text.splitlines())
        cleaned = "".join(ch for ch in cleaned if ch >= " " and ch != "\x7f")
        if len(cleaned) > max_length:
            return cleaned[:max_length] + "...[truncated]"
        return cleaned

    if value is None:
        return ""
    if isinstance(value, str):
        return clean_string(value)
    if isinstance(value, dict):
        return {
            clean_string(str(k)): sanitize_for_log(v, max_length)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple, set)):
        return [sanitize_for_log(elem, max_length) for elem in value]
    return clean_string(str(value))


def emit_metric(name: str, **fields: Any) -> None:
    parts = " ".join(
        f"{key}={sanitize_for_log(val, 200)}"
        for key, val in sorted(fields.items())
        if val is not None
    )
    metrics_logger.info("metric=%s %s", name, parts)
