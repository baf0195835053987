"""Message-protocol endpoints: messages, count_tokens and model listing."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator

import httpx

from .backend import BackendClient, BackendResponse, relay_headers
from .config import KopplerConfig
from .logging_utils import TranscodeLogger
from .mcp_bridge import bridge_active, get_mcp_tool_names
from .request_transcoder import TranscodeOptions, resolve_target_model, transform_claude_request
from .response_transcoder import transcode_json, transcode_stream
from .session_state import SessionStore
from .signature_store import ThoughtSignatureStore
from .sse import sse_event
from .switch_orchestrator import (
    McpContext,
    buffer_and_maybe_retry,
    prepare_mcp_context,
    replay,
    update_session_after_response,
)
from .web_search import RedirectResolver

LOG = logging.getLogger(__name__)

SSE_HEADERS = {"Content-Type": "text/event-stream", "Cache-Control": "no-cache", "Connection": "keep-alive"}
JSON_HEADERS = {"Content-Type": "application/json"}


@dataclass
class ApiResult:
    """Transport-neutral handler result; exactly one of `body`/`stream` is used."""

    status: int
    headers: dict[str, str] = field(default_factory=lambda: dict(JSON_HEADERS))
    body: Any = None
    stream: AsyncGenerator[bytes, None] | None = None


def error_envelope(error_type: str, message: str) -> dict[str, Any]:
    return {"type": "error", "error": {"type": error_type, "message": message}}


def error_result(status: int, error_type: str, message: str) -> ApiResult:
    return ApiResult(status=status, body=error_envelope(error_type, message))


def validate_message_request(request_data: Any) -> str | None:
    """Return a validation message for a malformed request, else None."""
    if not isinstance(request_data, dict) or not request_data:
        return "Request body must be a non-empty JSON object"
    if not isinstance(request_data.get("model"), str) or not request_data["model"]:
        return "Field 'model' is required"
    if not isinstance(request_data.get("messages"), list):
        return "Field 'messages' must be a list"
    return None


async def relay_error(response: BackendResponse, logger: TranscodeLogger) -> ApiResult:
    """Relay a backend non-success response unchanged."""
    try:
        body = await response.aread()
    finally:
        await response.aclose()
    logger.log_debug(f"Backend Error Body (HTTP {response.status_code})", body)
    return ApiResult(status=response.status_code, headers=relay_headers(response.headers), body=body)


class ClaudeApi:
    """Message-protocol handlers on top of the backend client."""

    def __init__(
        self,
        cfg: KopplerConfig,
        backend: BackendClient,
        *,
        signatures: ThoughtSignatureStore,
        sessions: SessionStore,
        resolver: RedirectResolver | None = None,
        logger: TranscodeLogger | None = None,
    ) -> None:
        self.cfg = cfg
        self.backend = backend
        self.signatures = signatures
        self.sessions = sessions
        self.resolver = resolver
        self.logger = logger or TranscodeLogger(cfg.logging)

    async def handle_list_models(self) -> ApiResult:
        try:
            remote_models = await self.backend.fetch_available_models()
        except httpx.HTTPError as exc:
            LOG.warning("listing backend models failed: %s", exc)
            return error_result(502, "api_error", f"Backend request failed: {exc}")
        except Exception as exc:
            LOG.exception("listing backend models failed")
            return error_result(500, "api_error", str(exc))
        now = int(time.time())
        data = [
            {"id": model_id, "object": "model", "created": now, "owned_by": "anthropic"}
            for model_id in remote_models
            if model_id and "claude" in model_id.lower()
        ]
        return ApiResult(status=200, body={"object": "list", "data": data})

    async def handle_count_tokens(self, request_data: Any) -> ApiResult:
        problem = validate_message_request(request_data)
        if problem:
            return error_result(400, "invalid_request_error", problem)
        try:
            self.logger.log("Claude CountTokens Request", request_data)
            # The project id is irrelevant for counting; only contents and model are sent.
            body = transform_claude_request(request_data, "", self.cfg)
            inner = body["request"]
            count_body = {"request": {"model": body["model"], "contents": inner.get("contents") or []}}
            self.logger.log("CountTokens Request Body", count_body)

            response = await self.backend.count_tokens(count_body, model=body["model"])
            if not response.ok:
                return await relay_error(response, self.logger)
            try:
                data = await response.json()
            finally:
                await response.aclose()
            self.logger.log("CountTokens Response", data)

            total = int(data.get("totalTokens") or 0) if isinstance(data, dict) else 0
            if inner.get("tools"):
                # The backend does not count tool declarations; estimate them locally.
                total += len(json.dumps(inner["tools"], ensure_ascii=False)) // 4
            result = {"input_tokens": total}
            self.logger.log("CountTokens Result", result)
            return ApiResult(status=200, body=result)
        except httpx.HTTPError as exc:
            LOG.warning("count_tokens backend call failed: %s", exc)
            return error_result(502, "api_error", f"Backend request failed: {exc}")
        except Exception as exc:
            LOG.exception("count_tokens failed")
            return error_result(500, "api_error", str(exc))

    async def handle_messages(self, request_data: Any) -> ApiResult:
        problem = validate_message_request(request_data)
        if problem:
            return error_result(400, "invalid_request_error", problem)
        try:
            return await self._handle_messages(request_data)
        except httpx.HTTPError as exc:
            LOG.warning("messages backend call failed: %s", exc)
            return error_result(502, "api_error", f"Backend request failed: {exc}")
        except Exception as exc:
            LOG.exception("messages request failed")
            return error_result(500, "api_error", str(exc))

    async def _handle_messages(self, request_data: dict[str, Any]) -> ApiResult:
        self.logger.log_debug("Claude Payload Request", request_data)
        stream = bool(request_data.get("stream"))
        method = "streamGenerateContent" if stream else "generateContent"
        query_string = "?alt=sse" if stream else ""

        ctx: McpContext | None = None
        if self.cfg.switch_enabled:
            ctx = prepare_mcp_context(request_data, self.sessions, self.cfg)
            upstream_request = ctx.request
            target_model = ctx.target_model
            options = ctx.options
            override_model: str | None = ctx.base_model
        else:
            upstream_request = request_data
            target_model = resolve_target_model(request_data, self.cfg)
            options = None
            override_model = None

        response = await self._call_backend(method, query_string, target_model, upstream_request, options)
        if not response.ok:
            return await relay_error(response, self.logger)

        tools = request_data.get("tools")
        bridge_names = get_mcp_tool_names(tools) if bridge_active(self.cfg.mcp_xml_enabled, tools) else []

        if "application/json" in response.content_type:
            try:
                payload = await response.json()
            finally:
                await response.aclose()
            self.logger.log_debug("Backend Response (Raw)", payload)
            message = await transcode_json(
                payload,
                override_model=override_model,
                bridge_tool_names=bridge_names,
                signatures=self.signatures,
                resolver=self.resolver,
            )
            self.logger.log_debug("Claude Response Payload (Transformed)", message)
            if ctx is not None:
                update_session_after_response(ctx, request_data, self.cfg)
            return ApiResult(status=200, body=message)

        if "text/event-stream" not in response.content_type:
            # Unknown payload type: relay as is.
            try:
                body = await response.aread()
            finally:
                await response.aclose()
            return ApiResult(status=response.status_code, headers=relay_headers(response.headers), body=body)

        converted = self._transcode_backend_stream(response, override_model, bridge_names)
        if ctx is not None and ctx.should_buffer_for_switch:
            mcp_model = self.cfg.mcp_switch_model or ""

            async def retry(retry_options: TranscodeOptions) -> tuple[ApiResult, bool]:
                retry_request = {**request_data, "model": mcp_model}
                retry_response = await self._call_backend(method, query_string, mcp_model, retry_request, retry_options)
                if not retry_response.ok:
                    return await relay_error(retry_response, self.logger), False
                return (
                    ApiResult(
                        status=200,
                        headers=dict(SSE_HEADERS),
                        stream=self._transcode_backend_stream(retry_response, ctx.base_model, bridge_names),
                    ),
                    True,
                )

            outcome = await buffer_and_maybe_retry(converted, ctx, request_data, retry, log=self.logger.log_debug)
            if outcome.retried:
                return outcome.retry_result
            update_session_after_response(ctx, request_data, self.cfg)
            return ApiResult(status=200, headers=dict(SSE_HEADERS), stream=replay(outcome.buffered))

        if ctx is not None:
            update_session_after_response(ctx, request_data, self.cfg)
        return ApiResult(status=200, headers=dict(SSE_HEADERS), stream=converted)

    async def _call_backend(
        self,
        method: str,
        query_string: str,
        model: str,
        request: dict[str, Any],
        options: TranscodeOptions | None,
    ) -> BackendResponse:
        logged = False

        def build_body(project_id: str) -> dict[str, Any]:
            nonlocal logged
            body = transform_claude_request(request, project_id, self.cfg, options=options, signatures=self.signatures)
            if not logged:
                self.logger.log_debug("Backend Payload Request (Transformed)", body)
                logged = True
            return body

        return await self.backend.call(method, model=model, query_string=query_string, build_body=build_body)

    async def _transcode_backend_stream(
        self,
        response: BackendResponse,
        override_model: str | None,
        bridge_names: list[str],
    ) -> AsyncGenerator[bytes, None]:
        """Transcode one open backend stream; always closes the response."""
        raw_lines: list[str] = []

        async def lines() -> AsyncGenerator[str, None]:
            async for line in response.aiter_lines():
                if self.logger.debug_enabled:
                    raw_lines.append(line)
                yield line

        try:
            async for event in transcode_stream(
                lines(),
                override_model=override_model,
                bridge_tool_names=bridge_names,
                signatures=self.signatures,
                resolver=self.resolver,
            ):
                yield event
        except httpx.HTTPError as exc:
            LOG.warning("backend stream broke: %s", exc)
            yield sse_event("error", error_envelope("api_error", f"Backend stream failed: {exc}"))
        except Exception as exc:
            LOG.exception("stream transcoding failed")
            yield sse_event("error", error_envelope("api_error", str(exc)))
        finally:
            await response.aclose()
            if raw_lines:
                self.logger.log_debug("Backend Stream (Raw)", "\n".join(raw_lines))
