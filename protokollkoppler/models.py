"""Model name mapping and model family helpers."""

from __future__ import annotations

from typing import Literal

from .config import KopplerConfig

Family = Literal["claude", "gemini"]

SUPPORTED_BACKEND_MODELS = (
    "claude-opus-4-5-thinking",
    "claude-sonnet-4-5",
    "claude-sonnet-4-5-thinking",
    "gemini-3-pro-high",
    "gemini-3-pro-low",
    "gemini-3-flash",
    "gemini-2.5-flash",
    "gemini-2.5-flash-lite",
    "gpt-oss-120b-medium",
)

CLAUDE_MODEL_ALIASES = {
    "claude-sonnet-4-5-20250929": "claude-sonnet-4-5-thinking",
    "claude-opus-4-5": "claude-opus-4-5-thinking",
    "claude-opus-4-5-20251101": "claude-opus-4-5-thinking",
}

GEMINI_MODEL_ALIASES = {
    "gemini-3-flash-preview": "gemini-3-flash",
}

WEB_SEARCH_MODEL = "gemini-2.5-flash"
IMAGE_MODEL_PREFIX = "gemini-3-pro-image"

CLAUDE_MAX_OUTPUT_TOKENS = 64000
GEMINI_MAX_OUTPUT_TOKENS = 65535


def map_claude_model(model: str | None, cfg: KopplerConfig) -> str:
    """Resolve a message-protocol model name to a backend model id.

    Configured overrides win, then the built-in alias table. Unknown names are
    forwarded unchanged and left for the backend to reject.
    """
    name = str(model or "").strip()
    if name in cfg.claude_model_map:
        return cfg.claude_model_map[name]
    if name in SUPPORTED_BACKEND_MODELS:
        return name
    return CLAUDE_MODEL_ALIASES.get(name, name)


def map_gemini_model(model: str | None, cfg: KopplerConfig) -> str:
    """Resolve a parts-protocol model name to a backend model id."""
    name = str(model or "").strip()
    if name in cfg.gemini_model_map:
        return cfg.gemini_model_map[name]
    return GEMINI_MODEL_ALIASES.get(name, name)


def model_family(model: str | None) -> Family:
    """Return the family a backend model id belongs to."""
    return "claude" if "claude" in str(model or "").lower() else "gemini"


def is_claude_model(model: str | None) -> bool:
    return model_family(model) == "claude"


def is_flash_model(model: str | None) -> bool:
    return "flash" in str(model or "").lower()


def max_output_tokens_for(model: str | None) -> int:
    """Return the fixed output-token ceiling for the model's family."""
    if is_claude_model(model):
        return CLAUDE_MAX_OUTPUT_TOKENS
    return GEMINI_MAX_OUTPUT_TOKENS


def wants_backend_system_instruction(model: str | None) -> bool:
    """Return whether requests for `model` need the backend boilerplate."""
    lowered = str(model or "").lower()
    return "claude" in lowered or "gemini" in lowered
