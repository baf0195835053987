"""HTTP application for the protokollkoppler service.

Exposes the message protocol (`/v1/messages` and friends) and a native
parts-protocol passthrough, both backed by the same wrapper API client.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from .backend import BackendClient
from .claude_api import ApiResult, ClaudeApi, error_envelope
from .config import DEFAULT_CONFIG_PATH, KopplerConfig, load_config
from .config_reload import ConfigReloadWatcher
from .gemini_api import GeminiApi
from .json_helpers import to_bounded_json
from .logging_utils import TranscodeLogger, setup_logging
from .session_state import SessionStore
from .signature_store import ThoughtSignatureStore
from .sse import PING_EVENT, build_sse_response, sse_comment, stream_with_keepalive
from .web_search import RedirectResolver

LOG = logging.getLogger(__name__)


def _extract_api_key(request: Request) -> str | None:
    """Accept `x-api-key` or an `Authorization: Bearer` token."""
    api_key = request.headers.get("x-api-key")
    if api_key:
        return api_key.strip()
    auth_header = request.headers.get("authorization")
    if not auth_header:
        return None
    scheme, _, token = auth_header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _auth_failure(request: Request, cfg: KopplerConfig) -> JSONResponse | None:
    required_key = cfg.service_api_key
    if not required_key or _extract_api_key(request) == required_key:
        return None
    return JSONResponse(error_envelope("authentication_error", "Invalid API key"), status_code=401)


async def _read_json(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    return json.loads(raw)


def _to_response(
    result: ApiResult,
    request: Request,
    *,
    keepalive_seconds: float,
    keepalive_event: bytes = PING_EVENT,
) -> Response:
    if result.stream is not None:
        stream = stream_with_keepalive(
            result.stream,
            keepalive_seconds=keepalive_seconds,
            request=request,
            keepalive_event=keepalive_event,
        )
        return build_sse_response(stream, status_code=result.status)
    if isinstance(result.body, (bytes, str)):
        return Response(content=result.body, status_code=result.status, headers=result.headers)
    return JSONResponse(result.body, status_code=result.status)


class KopplerService:
    """Runtime container for clients and the process-wide caches."""

    def __init__(self, cfg: KopplerConfig, *, backend: BackendClient | None = None) -> None:
        self.signatures = ThoughtSignatureStore(cfg.signature_cache_max_entries)
        self.sessions = SessionStore(cfg.session_cache_max_entries)
        self._retired: list[BackendClient | RedirectResolver] = []
        self._apply(cfg, backend or BackendClient(cfg))

    def _apply(self, cfg: KopplerConfig, backend: BackendClient) -> None:
        self.cfg = cfg
        self.backend = backend
        self.resolver = RedirectResolver(
            timeout_seconds=cfg.redirect_timeout_seconds,
            max_results=cfg.redirect_max_results,
            concurrency=cfg.redirect_concurrency,
            cache_max_entries=cfg.redirect_cache_max_entries,
        )
        logger = TranscodeLogger(cfg.logging)
        self.claude = ClaudeApi(
            cfg,
            backend,
            signatures=self.signatures,
            sessions=self.sessions,
            resolver=self.resolver,
            logger=logger,
        )
        self.gemini = GeminiApi(cfg, backend, logger=logger)

    async def reload(self, new_cfg: KopplerConfig) -> None:
        """Swap config-bound clients; the ledger and session state survive."""
        setup_logging(new_cfg.logging)
        # In-flight streams may still read from the old clients.
        self._retired.extend([self.backend, self.resolver])
        self._apply(new_cfg, BackendClient(new_cfg))

    async def close(self) -> None:
        for client in [*self._retired, self.backend, self.resolver]:
            try:
                await client.close()
            except Exception as exc:
                LOG.debug("client close failed error=%s", exc)
        self._retired.clear()


def create_app(
    config_path: str | None = None,
    *,
    cfg: KopplerConfig | None = None,
    backend: BackendClient | None = None,
    watch_config: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    cfg = cfg or load_config(config_path)
    setup_logging(cfg.logging)
    service = KopplerService(cfg, backend=backend)
    config_file = Path(config_path or os.getenv("PROTOKOLLKOPPLER_CONFIG") or DEFAULT_CONFIG_PATH)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Application startup/shutdown lifecycle."""
        reload_task: asyncio.Task[None] | None = None
        if watch_config and config_file.parent.exists():
            watcher = ConfigReloadWatcher(config_file=config_file, on_reload=service.reload)
            reload_task = asyncio.create_task(watcher.run_forever())
        try:
            yield
        finally:
            if reload_task:
                reload_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reload_task
            await service.close()

    app = FastAPI(title="protokollkoppler", version="0.1.0", lifespan=lifespan)
    app.state.service = service

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    @app.get("/v1/models")
    async def v1_models(request: Request) -> Response:
        denied = _auth_failure(request, service.cfg)
        if denied is not None:
            return denied
        result = await service.claude.handle_list_models()
        return _to_response(result, request, keepalive_seconds=0)

    @app.post("/v1/messages")
    async def v1_messages(request: Request) -> Response:
        denied = _auth_failure(request, service.cfg)
        if denied is not None:
            return denied
        try:
            payload = await _read_json(request)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            return JSONResponse(error_envelope("invalid_request_error", f"Invalid JSON body: {exc}"), status_code=400)
        LOG.debug("incoming messages request payload=%s", to_bounded_json(payload))
        result = await service.claude.handle_messages(payload)
        return _to_response(result, request, keepalive_seconds=service.cfg.stream_keepalive_seconds)

    @app.post("/v1/messages/count_tokens")
    async def v1_count_tokens(request: Request) -> Response:
        denied = _auth_failure(request, service.cfg)
        if denied is not None:
            return denied
        try:
            payload = await _read_json(request)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            return JSONResponse(error_envelope("invalid_request_error", f"Invalid JSON body: {exc}"), status_code=400)
        result = await service.claude.handle_count_tokens(payload)
        return _to_response(result, request, keepalive_seconds=0)

    @app.post("/v1beta/models/{model_action}")
    async def v1beta_generate(model_action: str, request: Request) -> Response:
        denied = _auth_failure(request, service.cfg)
        if denied is not None:
            return denied
        try:
            payload = await _read_json(request)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            return JSONResponse(
                {"error": {"code": 400, "message": f"Invalid JSON body: {exc}", "status": "INVALID_ARGUMENT"}},
                status_code=400,
            )
        result = await service.gemini.handle_generate(model_action, payload)
        # Parts-protocol clients do not know the `ping` event; use an SSE comment.
        return _to_response(
            result,
            request,
            keepalive_seconds=service.cfg.stream_keepalive_seconds,
            keepalive_event=sse_comment("keepalive"),
        )

    return app


def main() -> None:
    """CLI entry point that loads configuration and runs uvicorn."""

    def fail(message: str, exit_code: int = 2) -> None:
        print(f"ERROR: {message}", file=sys.stderr)
        raise SystemExit(exit_code)

    parser = argparse.ArgumentParser(description="protokollkoppler protocol transcoding service")
    parser.add_argument("--config", default=None, help="Path to config YAML")
    parser.add_argument("--host", default=None, help="Override listen_host")
    parser.add_argument("--port", type=int, default=None, help="Override listen_port")
    args = parser.parse_args()

    try:
        cfg = load_config(args.config)
    except ValidationError as exc:
        fail(f"Invalid configuration: {exc}")
    except Exception as exc:
        fail(f"Failed to load configuration: {exc}")

    try:
        app = create_app(args.config, cfg=cfg)
    except Exception as exc:
        fail(f"Failed to create app: {exc}")

    host = args.host or cfg.listen_host
    port = args.port or cfg.listen_port
    try:
        uvicorn.run(app, host=host, port=port)
    except Exception as exc:
        fail(f"Server failed to start: {exc}", exit_code=1)


if __name__ == "__main__":
    main()
