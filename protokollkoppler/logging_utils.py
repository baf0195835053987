"""Logging setup helpers for protokollkoppler."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from .config import LoggingConfig
from .json_helpers import to_bounded_json

_CONTROLLED_LOGGER_PREFIXES = (
    "httpcore",
    "httpx",
    "uvicorn",
    "watchdog",
)


class JsonLogFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        """Render one log record as JSON."""
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(cfg: LoggingConfig) -> None:
    """Configure the root logger from runtime configuration."""
    level = getattr(logging, cfg.level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    handler = logging.StreamHandler()
    if cfg.json_logs:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root.handlers.clear()
    root.addHandler(handler)

    # Stale DEBUG levels on third-party trees must not survive a config reload.
    known_logger_names = [str(name) for name in logging.root.manager.loggerDict]
    for prefix in _CONTROLLED_LOGGER_PREFIXES:
        targets = [prefix, *(name for name in known_logger_names if name.startswith(f"{prefix}."))]
        for name in targets:
            logger = logging.getLogger(name)
            logger.setLevel(level)
            logger.handlers.clear()
            logger.propagate = True


class TranscodeLogger:
    """Milestone logger handed to the transcoding pipeline.

    `log` always records the milestone at INFO; `log_debug` only does so when
    request/response debugging is enabled. Neither influences transcoding.
    """

    def __init__(
        self,
        cfg: LoggingConfig | None = None,
        *,
        logger: logging.Logger | None = None,
        max_len: int = 8000,
    ) -> None:
        self._debug_enabled = bool(cfg and cfg.debug_request_response)
        self._logger = logger or logging.getLogger("protokollkoppler.transcode")
        self._max_len = max_len

    @property
    def debug_enabled(self) -> bool:
        return self._debug_enabled

    def log(self, title: str, data: Any = None) -> None:
        if data is None:
            self._logger.info("%s", title)
            return
        self._logger.info("%s: %s", title, to_bounded_json(data, self._max_len))

    def log_debug(self, title: str, data: Any = None) -> None:
        if not self._debug_enabled:
            return
        if data is None:
            self._logger.info("[debug] %s", title)
            return
        self._logger.info("[debug] %s: %s", title, to_bounded_json(data, self._max_len))
