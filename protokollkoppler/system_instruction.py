"""Backend boilerplate system instruction.

Several backend models answer with spurious quota errors unless the request
carries the backend's own agent system instruction. It replaces the client's
coding-agent preamble when one is recognisable and is prepended otherwise.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any

LOG = logging.getLogger(__name__)

CLIENT_PREAMBLE_MARKER = "You are Claude Code"

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are Antigravity, a powerful agentic AI coding assistant designed by the Google Deepmind team "
    "working on Advanced Agentic Coding.\n"
    "You are pair programming with a USER to solve their coding task. The task may require creating a new "
    "codebase, modifying or debugging an existing codebase, or simply answering a question.\n"
    "The USER will send you requests, which you must always prioritize addressing. Along with each USER "
    "request, we will attach additional metadata about their current state, such as what files they have "
    "open and where their cursor is.\n"
    "This information may or may not be relevant to the coding task, it is up for you to decide."
)


def normalize_instruction_text(text: str) -> str:
    """Decode literal escapes when the text was pasted from a JSON log line."""
    if "\n" in text or "\\n" not in text:
        return text
    return (
        text.replace("\\r\\n", "\n")
        .replace("\\n", "\n")
        .replace("\\t", "\t")
        .replace("\\r", "\r")
        .replace("\\\\", "\\")
    )


@lru_cache(maxsize=8)
def _read_instruction_file(path: str) -> str:
    return normalize_instruction_text(Path(path).read_text(encoding="utf-8"))


def load_system_instruction(path: str | None) -> str:
    """Return the configured instruction text, or the built-in default."""
    if not path:
        return DEFAULT_SYSTEM_INSTRUCTION
    try:
        text = _read_instruction_file(path)
    except OSError as exc:
        LOG.warning("system instruction file unreadable path=%s error=%s; using built-in text", path, exc)
        return DEFAULT_SYSTEM_INSTRUCTION
    return text or DEFAULT_SYSTEM_INSTRUCTION


def apply_backend_instruction(system_instruction: dict[str, Any] | None, instruction_text: str) -> dict[str, Any]:
    """Place the boilerplate into a backend `systemInstruction` value.

    Parts mentioning the client preamble marker are replaced in place; if none
    do, the boilerplate is prepended as a new first part.
    """
    if not system_instruction or not isinstance(system_instruction.get("parts"), list):
        return {"role": "user", "parts": [{"text": instruction_text}]}
    parts = system_instruction["parts"]
    replaced = False
    for part in parts:
        if isinstance(part, dict) and isinstance(part.get("text"), str) and CLIENT_PREAMBLE_MARKER in part["text"]:
            part["text"] = instruction_text
            replaced = True
    if not replaced:
        parts.insert(0, {"text": instruction_text})
    system_instruction["role"] = "user"
    return system_instruction
