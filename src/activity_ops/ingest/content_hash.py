"""Content hashing for canonical event facts.

The hash is the dedup key for the event store: the same logical event, seen
once through a webhook and again through a backfill that overlaps it, must
produce the same digest.

    sha256(text.strip() + "::" + url.strip() + "::" + stable_stringify(metrics))

``stable_stringify`` is a deterministic JSON rendering: object keys are
sorted at every nesting level, keys whose value is ``UNDEFINED`` are
dropped, ``None`` is kept as ``null`` and list order is preserved.

An empty metrics mapping and an absent one do *not* hash the same here
(``"{}"`` vs ``""``). Callers that want them to collapse must go through
``normalize_metrics`` first, which the canonicalizer always does.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping, Optional


class _Undefined:
    """Marker for a key that is present but carries no value."""

    _instance: Optional["_Undefined"] = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


def _sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def stable_stringify(value: Any) -> str:
    """Serialize ``value`` to JSON independent of key insertion order."""
    if isinstance(value, Mapping):
        items = []
        for key in sorted(value.keys(), key=str):
            item = value[key]
            if item is UNDEFINED:
                continue
            items.append(f"{json.dumps(str(key), ensure_ascii=False)}:{stable_stringify(item)}")
        return "{" + ",".join(items) + "}"
    if isinstance(value, (list, tuple)):
        return (
            "["
            + ",".join(
                "null" if item is UNDEFINED else stable_stringify(item)
                for item in value
            )
            + "]"
        )
    if value is UNDEFINED:
        return "null"
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def normalize_metrics(metrics: Optional[Mapping[str, Any]]) -> Optional[dict]:
    """Drop empty/undefined metric values; an empty result becomes None."""
    if not metrics:
        return None
    cleaned = {
        key: val
        for key, val in metrics.items()
        if val is not None and val is not UNDEFINED
    }
    return cleaned or None


def compute_hash(
    canonical_text: str,
    source_url: str,
    metrics: Optional[Mapping[str, Any]] = None,
) -> str:
    metrics_part = stable_stringify(metrics) if metrics is not None else ""
    payload = f"{(canonical_text or '').strip()}::{(source_url or '').strip()}::{metrics_part}"
    return _sha256_hex(payload)
