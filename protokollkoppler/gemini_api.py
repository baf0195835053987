"""Parts-protocol passthrough: native requests wrapped for the backend."""

from __future__ import annotations

import copy
import json
import logging
import uuid
from typing import Any, AsyncGenerator

import httpx

from .backend import BackendClient, BackendResponse, relay_headers
from .claude_api import SSE_HEADERS, ApiResult, relay_error
from .config import KopplerConfig
from .logging_utils import TranscodeLogger
from .models import (
    IMAGE_MODEL_PREFIX,
    WEB_SEARCH_MODEL,
    is_claude_model,
    is_flash_model,
    map_gemini_model,
    max_output_tokens_for,
)
from .request_transcoder import BACKEND_USER_AGENT, permissive_safety_settings
from .schema_sanitizer import clean_json_schema
from .sse import DONE_SENTINEL, sse_line_payload
from .system_instruction import load_system_instruction

LOG = logging.getLogger(__name__)

SUPPORTED_ACTIONS = ("generateContent", "streamGenerateContent")


def google_error(status: int, message: str, status_text: str = "INVALID_ARGUMENT") -> ApiResult:
    return ApiResult(status=status, body={"error": {"code": status, "message": message, "status": status_text}})


def normalize_tools(tools: Any) -> Any:
    """Sanitize declared function schemas into upper-cased backend schemas."""
    if not isinstance(tools, list):
        return tools
    out = []
    for tool in tools:
        if not isinstance(tool, dict) or not isinstance(tool.get("functionDeclarations"), list):
            out.append(tool)
            continue
        declarations = []
        for declaration in tool["functionDeclarations"]:
            if not isinstance(declaration, dict):
                declarations.append(declaration)
                continue
            declaration = dict(declaration)
            if "parametersJsonSchema" in declaration:
                schema = declaration.pop("parametersJsonSchema")
                if schema:
                    declaration["parameters"] = clean_json_schema(schema, uppercase_types=True)
            elif isinstance(declaration.get("parameters"), dict):
                declaration["parameters"] = clean_json_schema(declaration["parameters"], uppercase_types=True)
            declarations.append(declaration)
        out.append({**tool, "functionDeclarations": declarations})
    return out


def _resolve_model(model_name: str, thinking_level: Any, cfg: KopplerConfig) -> str:
    mapped = map_gemini_model(model_name, cfg)
    if model_name == "gemini-3-pro-preview" and isinstance(thinking_level, str):
        level = thinking_level.lower()
        if level == "high":
            mapped = "gemini-3-pro-high"
        elif level == "low":
            mapped = "gemini-3-pro-low"
    return mapped


def wrap_request(
    client_json: Any,
    *,
    project_id: str,
    model_name: str,
    cfg: KopplerConfig,
    instruction_text: str | None = None,
) -> dict[str, Any]:
    """Wrap a native parts-protocol body into the backend wrapper request."""
    source = client_json if isinstance(client_json, dict) else {}
    inner = copy.deepcopy(source["request"] if isinstance(source.get("request"), dict) else source)

    tool_config = inner.get("toolConfig")
    if isinstance(tool_config, dict) and isinstance(tool_config.get("functionCallingConfig"), dict):
        tool_config["functionCallingConfig"]["mode"] = "VALIDATED"
    if isinstance(inner.get("tools"), list):
        inner["tools"] = normalize_tools(inner["tools"])

    if not isinstance(inner.get("generationConfig"), dict):
        inner["generationConfig"] = {}
    generation_config = inner["generationConfig"]
    thinking = generation_config.get("thinkingConfig")
    thinking_level = thinking.get("thinkingLevel") if isinstance(thinking, dict) else None
    model = _resolve_model(model_name, thinking_level, cfg)
    claude_target = is_claude_model(model)

    # Clients send an empty generationConfig for Claude models; turn thoughts on.
    if claude_target and not generation_config:
        generation_config["thinkingConfig"] = {
            "includeThoughts": True,
            "thinkingBudget": cfg.claude_default_thinking_budget,
        }
        thinking = generation_config["thinkingConfig"]

    if isinstance(thinking, dict) and thinking.get("thinkingLevel"):
        if str(thinking.pop("thinkingLevel")).lower() == "high":
            thinking["thinkingBudget"] = -1

    has_search = isinstance(inner.get("tools"), list) and any(
        isinstance(tool, dict) and tool.get("googleSearch") for tool in inner["tools"]
    )
    if isinstance(thinking, dict):
        budget = thinking.get("thinkingBudget")
        if (
            isinstance(budget, (int, float))
            and (has_search or is_flash_model(model))
            and budget > cfg.flash_thinking_budget_cap
        ):
            thinking["thinkingBudget"] = cfg.flash_thinking_budget_cap
        if claude_target and thinking.get("includeThoughts") is True:
            budget = thinking.get("thinkingBudget")
            if not isinstance(budget, (int, float)) or budget <= 0:
                thinking["thinkingBudget"] = cfg.claude_default_thinking_budget

    generation_config["maxOutputTokens"] = max_output_tokens_for(model)
    if claude_target and not inner.get("safetySettings"):
        inner["safetySettings"] = permissive_safety_settings()

    request_type = "agent"
    if model == IMAGE_MODEL_PREFIX:
        request_type = "image_gen"
    elif has_search:
        request_type = "web_search"
        model = WEB_SEARCH_MODEL

    lowered = model.lower()
    if "claude" in lowered or "gemini-3-pro" in lowered:
        text = instruction_text if instruction_text is not None else load_system_instruction(cfg.system_instruction_path)
        if text:
            inner["systemInstruction"] = {"role": "user", "parts": [{"text": text}]}

    return {
        "project": project_id,
        "requestId": f"agent-{uuid.uuid4()}",
        "request": inner,
        "model": model,
        "userAgent": BACKEND_USER_AGENT,
        "requestType": request_type,
    }


def unwrap_response(payload: Any) -> Any:
    """Strip the wrapper envelope, carrying `traceId` into the inner response."""
    if isinstance(payload, dict) and isinstance(payload.get("response"), dict):
        merged = dict(payload["response"])
        if payload.get("traceId") and not merged.get("traceId"):
            merged["traceId"] = payload["traceId"]
        return merged
    return payload


def rewrite_stream_line(line: str) -> bytes | None:
    """Unwrap one backend SSE line; blank lines are dropped."""
    if not line:
        return None
    payload = sse_line_payload(line)
    if payload is None:
        if line.startswith("data:"):
            return b"data:\n\n"
        return f"{line}\n".encode("utf-8")
    if payload == DONE_SENTINEL:
        return b"data: [DONE]\n\n"
    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError:
        return f"{line}\n".encode("utf-8")
    return f"data: {json.dumps(unwrap_response(decoded), ensure_ascii=False)}\n\n".encode("utf-8")


class GeminiApi:
    """Handler for `/v1beta/models/{model}:{action}`."""

    def __init__(self, cfg: KopplerConfig, backend: BackendClient, *, logger: TranscodeLogger | None = None) -> None:
        self.cfg = cfg
        self.backend = backend
        self.logger = logger or TranscodeLogger(cfg.logging)

    async def handle_generate(self, model_action: str, request_data: Any) -> ApiResult:
        model_name, _, action = model_action.partition(":")
        if action not in SUPPORTED_ACTIONS or not model_name:
            return google_error(404, f"Unsupported method: {model_action}", "NOT_FOUND")
        if not isinstance(request_data, dict):
            return google_error(400, "Request body must be a JSON object")
        stream = action == "streamGenerateContent"
        try:
            return await self._handle_generate(model_name, action, stream, request_data)
        except httpx.HTTPError as exc:
            LOG.warning("parts-protocol backend call failed: %s", exc)
            return google_error(502, f"Backend request failed: {exc}", "UNAVAILABLE")
        except Exception as exc:
            LOG.exception("parts-protocol request failed")
            return google_error(500, str(exc), "INTERNAL")

    async def _handle_generate(
        self, model_name: str, action: str, stream: bool, request_data: dict[str, Any]
    ) -> ApiResult:
        self.logger.log_debug("Gemini Payload Request", request_data)
        logged = False
        routed_model = model_name

        def build_body(project_id: str) -> dict[str, Any]:
            nonlocal logged, routed_model
            body = wrap_request(request_data, project_id=project_id, model_name=model_name, cfg=self.cfg)
            routed_model = body["model"]
            if not logged:
                self.logger.log_debug("Backend Payload Request (Wrapped)", body)
                logged = True
            return body

        response = await self.backend.call(
            action,
            model=model_name,
            query_string="?alt=sse" if stream else "",
            build_body=build_body,
        )
        if not response.ok:
            return await relay_error(response, self.logger)
        LOG.debug("parts-protocol request routed model=%s stream=%s", routed_model, stream)

        if stream and "text/event-stream" in response.content_type:
            return ApiResult(status=200, headers=dict(SSE_HEADERS), stream=self._unwrap_stream(response))
        try:
            raw = await response.aread()
        finally:
            await response.aclose()
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return ApiResult(status=response.status_code, headers=relay_headers(response.headers), body=raw)
        return ApiResult(status=200, body=unwrap_response(payload))

    async def _unwrap_stream(self, response: BackendResponse) -> AsyncGenerator[bytes, None]:
        try:
            async for line in response.aiter_lines():
                rewritten = rewrite_stream_line(line)
                if rewritten is not None:
                    yield rewritten
        finally:
            await response.aclose()
