"""Per-session routing state for the model-switch workaround."""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from .models import Family

LOG = logging.getLogger(__name__)


@dataclass
class FoldedSegment:
    """History range `[start, end)` that is replaced by one summary message."""

    start: int
    end: int
    summary_text: str


@dataclass
class SessionMcpState:
    last_family: Family | None = None
    # Message index where the substitute-model segment began, while one is open.
    mcp_start_index: int | None = None
    folded_segments: list[FoldedSegment] = field(default_factory=list)


def session_id_of(request: dict[str, Any]) -> str | None:
    metadata = request.get("metadata")
    if not isinstance(metadata, dict):
        return None
    value = metadata.get("user_id")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class SessionStore:
    """LRU-bounded map of session id to `SessionMcpState`."""

    def __init__(self, max_entries: int = 1000) -> None:
        self._max_entries = max(1, int(max_entries))
        self._sessions: OrderedDict[str, SessionMcpState] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> SessionMcpState | None:
        state = self._sessions.get(session_id)
        if state is not None:
            self._sessions.move_to_end(session_id)
        return state

    def ensure(self, request: dict[str, Any]) -> SessionMcpState | None:
        """Return the state for the request's session, creating it lazily."""
        session_id = session_id_of(request)
        if session_id is None:
            return None
        state = self.get(session_id)
        if state is None:
            state = SessionMcpState()
            self._sessions[session_id] = state
            while len(self._sessions) > self._max_entries:
                evicted, _ = self._sessions.popitem(last=False)
                LOG.debug("session store full; evicted session=%s", evicted)
        return state
