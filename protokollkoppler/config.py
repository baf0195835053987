"""Configuration models and loaders for protokollkoppler.

The configuration is an immutable value loaded from YAML plus environment
variable overrides. It is handed explicitly to every transcoder entry point,
so nothing below the HTTP layer reads process-global state.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_CONFIG_PATH = "config.yaml"

_TRUE_VALUES = {"1", "true", "yes", "on"}


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")
    debug_request_response: bool = False


class KopplerConfig(BaseModel):
    """Top-level service configuration."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    listen_host: str = "127.0.0.1"
    listen_port: int = 8080
    service_api_key: str | None = None

    backend_base_url: str = "https://daily-cloudcode-pa.sandbox.googleapis.com"
    backend_api_key: str | None = None
    backend_project_id: str = ""
    backend_user_agent: str = "antigravity/1.11.3 linux/amd64"
    backend_timeout_seconds: float = 600.0
    backend_connect_retries: int = 0
    backend_retry_interval_ms: int = 1000

    mcp_xml_enabled: bool = False
    mcp_switch_model: str | None = None
    claude_model_map: dict[str, str] = Field(default_factory=dict)
    gemini_model_map: dict[str, str] = Field(default_factory=dict)

    flash_thinking_budget_cap: int = 24576
    claude_default_thinking_budget: int = 31999
    system_instruction_path: str | None = None

    redirect_timeout_seconds: float = 1.5
    redirect_max_results: int = 10
    redirect_concurrency: int = 5
    redirect_cache_max_entries: int = 2000

    signature_cache_max_entries: int = 10000
    session_cache_max_entries: int = 1000
    stream_keepalive_seconds: float = 10.0

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("mcp_switch_model", mode="before")
    @classmethod
    def _blank_switch_model_to_none(cls, value: Any) -> Any:
        """Treat an empty substitute model as 'feature disabled'."""
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("claude_model_map", "gemini_model_map", mode="before")
    @classmethod
    def _none_to_empty_map(cls, value: Any) -> Any:
        """Treat explicit YAML `null` for model maps as an empty mapping."""
        if value is None:
            return {}
        return value

    @field_validator(
        "backend_connect_retries",
        "redirect_max_results",
        "redirect_concurrency",
        "redirect_cache_max_entries",
        "signature_cache_max_entries",
        "session_cache_max_entries",
    )
    @classmethod
    def _validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must be >= 0")
        return value

    @property
    def switch_enabled(self) -> bool:
        """Return whether the model-switch retry workaround is active."""
        return bool(self.mcp_switch_model)


def parse_model_map(raw: str) -> dict[str, str]:
    """Parse a model map from JSON or from `src=dst,src2=dst2` text."""
    text = raw.strip()
    if not text:
        return {}
    if text.startswith("{"):
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("model map must be a JSON object")
        return {str(key): str(value) for key, value in data.items()}
    out: dict[str, str] = {}
    for entry in text.split(","):
        if not entry.strip():
            continue
        source, sep, target = entry.partition("=")
        if not sep or not source.strip() or not target.strip():
            raise ValueError(f"Invalid model map entry: {entry!r}")
        out[source.strip()] = target.strip()
    return out


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only deployments.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    env_map = {
        "listen_host": "PROTOKOLLKOPPLER_LISTEN_HOST",
        "listen_port": "PROTOKOLLKOPPLER_LISTEN_PORT",
        "service_api_key": "PROTOKOLLKOPPLER_SERVICE_API_KEY",
        "backend_base_url": "PROTOKOLLKOPPLER_BACKEND_BASE_URL",
        "backend_api_key": "PROTOKOLLKOPPLER_BACKEND_API_KEY",
        "backend_project_id": "PROTOKOLLKOPPLER_BACKEND_PROJECT_ID",
        "backend_connect_retries": "PROTOKOLLKOPPLER_BACKEND_CONNECT_RETRIES",
        "backend_retry_interval_ms": "PROTOKOLLKOPPLER_BACKEND_RETRY_INTERVAL_MS",
        "backend_timeout_seconds": "PROTOKOLLKOPPLER_BACKEND_TIMEOUT_SECONDS",
        "mcp_xml_enabled": "PROTOKOLLKOPPLER_MCP_XML_ENABLED",
        "mcp_switch_model": "PROTOKOLLKOPPLER_MCP_SWITCH_MODEL",
        "claude_model_map": "PROTOKOLLKOPPLER_CLAUDE_MODEL_MAP",
        "gemini_model_map": "PROTOKOLLKOPPLER_GEMINI_MODEL_MAP",
        "flash_thinking_budget_cap": "PROTOKOLLKOPPLER_FLASH_THINKING_BUDGET_CAP",
        "claude_default_thinking_budget": "PROTOKOLLKOPPLER_CLAUDE_DEFAULT_THINKING_BUDGET",
        "system_instruction_path": "PROTOKOLLKOPPLER_SYSTEM_INSTRUCTION_PATH",
        "stream_keepalive_seconds": "PROTOKOLLKOPPLER_STREAM_KEEPALIVE_SECONDS",
        "logging.level": "PROTOKOLLKOPPLER_LOG_LEVEL",
        "logging.json_logs": "PROTOKOLLKOPPLER_LOG_JSON",
        "logging.debug_request_response": "PROTOKOLLKOPPLER_DEBUG_REQUEST_RESPONSE",
    }

    out = dict(data)
    out["logging"] = dict(out.get("logging") or {})

    for key, env_name in env_map.items():
        value = os.getenv(env_name)
        if value is None:
            continue

        if key in {
            "listen_port",
            "backend_connect_retries",
            "backend_retry_interval_ms",
            "flash_thinking_budget_cap",
            "claude_default_thinking_budget",
        }:
            out[key] = int(value)
        elif key in {"backend_timeout_seconds", "stream_keepalive_seconds"}:
            out[key] = float(value)
        elif key == "mcp_xml_enabled":
            out[key] = value.strip().lower() in _TRUE_VALUES
        elif key in {"claude_model_map", "gemini_model_map"}:
            out[key] = parse_model_map(value)
        elif key == "logging.json_logs":
            out["logging"]["json"] = value.strip().lower() in _TRUE_VALUES
        elif key == "logging.debug_request_response":
            out["logging"]["debug_request_response"] = value.strip().lower() in _TRUE_VALUES
        elif key == "logging.level":
            out["logging"]["level"] = value
        else:
            out[key] = value

    return out


def load_config(path: str | None = None) -> KopplerConfig:
    """Load, merge, and validate service configuration."""
    final_path = path or os.getenv("PROTOKOLLKOPPLER_CONFIG") or DEFAULT_CONFIG_PATH
    raw = _load_yaml(final_path)
    raw = _override_from_env(raw)
    return KopplerConfig.model_validate(raw)
