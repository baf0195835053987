"""Ledger of thought signatures keyed by tool-use id.

Clients do not reliably echo the signature that the backend attached to a
function call. The response side records it here and the request side looks it
up when the same tool call is replayed as history. Entries are evicted
least-recently-used once the ledger is full.
"""

from __future__ import annotations

import logging
from collections import OrderedDict

LOG = logging.getLogger(__name__)


class ThoughtSignatureStore:
    """LRU-bounded mapping of tool-use id to thought signature."""

    def __init__(self, max_entries: int = 10000) -> None:
        self._max_entries = max(0, int(max_entries))
        self._entries: OrderedDict[str, str] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, tool_use_id: object) -> bool:
        return tool_use_id in self._entries

    def remember(self, tool_use_id: str | None, signature: str | None) -> None:
        """Record the signature produced for one tool call."""
        if not tool_use_id or not signature or self._max_entries == 0:
            return
        self._entries[tool_use_id] = signature
        self._entries.move_to_end(tool_use_id)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            LOG.debug("signature ledger full; evicted tool_use_id=%s", evicted)

    def get(self, tool_use_id: str | None) -> str | None:
        """Return the remembered signature, refreshing its recency."""
        if not tool_use_id:
            return None
        signature = self._entries.get(tool_use_id)
        if signature is not None:
            self._entries.move_to_end(tool_use_id)
        return signature

    def delete(self, tool_use_id: str | None) -> bool:
        """Forget one entry. Returns whether anything was removed."""
        if not tool_use_id:
            return False
        return self._entries.pop(tool_use_id, None) is not None

    def clear(self) -> None:
        self._entries.clear()
