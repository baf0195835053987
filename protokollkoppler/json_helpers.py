"""JSON/text helpers for bounded logging output."""

from __future__ import annotations

import json
from typing import Any


def to_bounded_json(payload: Any, max_len: int = 8000) -> str:
    """Serialize arbitrary values into bounded JSON-like text for logging."""
    if isinstance(payload, (bytes, bytearray)):
        payload = bytes(payload).decode("utf-8", errors="replace")
    try:
        raw = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError):
        raw = repr(payload)
    if len(raw) > max_len:
        return raw[:max_len] + f"...<truncated {len(raw) - max_len} chars>"
    return raw


def compact_json(payload: Any) -> str:
    """Serialize a value the way wire payloads are embedded in text markup."""
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
