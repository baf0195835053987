"""Convert message-protocol requests into the backend wrapper request.

Each message becomes one backend `content` with role `user` or `model`. The
delicate part is thought-signature placement: the backend verifies that every
signature comes back on the part that produced it. A signature can only be
forwarded for messages inside the forwarding window, so a history segment
produced by the other model family never leaks its signatures.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any

from .config import KopplerConfig
from .mcp_bridge import (
    build_mcp_tool_call_xml,
    build_mcp_tool_result_xml,
    build_mcp_xml_system_prompt,
    bridge_active,
    get_mcp_tools,
    is_mcp_tool_name,
)
from .mcp_switch import inject_switch_hint
from .models import (
    WEB_SEARCH_MODEL,
    is_claude_model,
    is_flash_model,
    map_claude_model,
    max_output_tokens_for,
    wants_backend_system_instruction,
)
from .schema_sanitizer import clean_json_schema
from .signature_store import ThoughtSignatureStore
from .system_instruction import apply_backend_instruction, load_system_instruction

LOG = logging.getLogger(__name__)

NO_CONTENT_PLACEHOLDER = "(no content)"
BACKEND_USER_AGENT = "antigravity"

SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
    "HARM_CATEGORY_CIVIC_INTEGRITY",
)

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class TranscodeOptions:
    """Per-call signature forwarding window."""

    forward_signatures: bool = True
    # Only messages at or after this index forward signatures.
    signature_segment_start_index: int | None = None

    def forwards_for(self, message_index: int) -> bool:
        if not self.forward_signatures:
            return False
        start = self.signature_segment_start_index
        return start is None or message_index >= start


def permissive_safety_settings() -> list[dict[str, str]]:
    return [{"category": category, "threshold": "OFF"} for category in SAFETY_CATEGORIES]


def has_web_search_tool(claude_req: dict[str, Any]) -> bool:
    """Detect the first-party web search tool among the declared tools."""
    tools = claude_req.get("tools")
    if not isinstance(tools, list):
        return False
    for tool in tools:
        if not isinstance(tool, dict):
            continue
        if tool.get("name") == "web_search":
            return True
        if str(tool.get("type") or "").startswith("web_search"):
            return True
    return False


def resolve_target_model(claude_req: dict[str, Any], cfg: KopplerConfig) -> str:
    """Return the backend model a request will actually run on."""
    if has_web_search_tool(claude_req):
        return WEB_SEARCH_MODEL
    return map_claude_model(claude_req.get("model"), cfg)


def normalize_task_text(text: str) -> str:
    return _WHITESPACE_RE.sub("", text)


def estimate_base64_bytes(data: str) -> int:
    """Estimate the decoded size of a base64 payload without decoding it."""
    text = str(data or "").strip()
    if not text:
        return 0
    padding = 2 if text.endswith("==") else 1 if text.endswith("=") else 0
    return max(0, (len(text) * 3) // 4 - padding)


@dataclass
class ExtractedToolResult:
    content_text: str
    sanitized_content: Any
    inline_parts: list[dict[str, Any]] = field(default_factory=list)


def extract_tool_result_content(raw_content: Any) -> ExtractedToolResult:
    """Split tool result content into text plus separate inline image parts.

    Image payloads are replaced with a short placeholder in the text and in
    the sanitized copy, so the serialized result stays small.
    """
    if not isinstance(raw_content, list):
        if isinstance(raw_content, str):
            text = raw_content
        elif isinstance(raw_content, dict):
            text = _json_text(raw_content)
        else:
            text = "" if raw_content is None else str(raw_content)
        return ExtractedToolResult(text, raw_content)

    inline_parts: list[dict[str, Any]] = []
    sanitized: list[Any] = []
    segments: list[str] = []
    for block in raw_content:
        if isinstance(block, dict) and block.get("type") == "text":
            text = block.get("text") if isinstance(block.get("text"), str) else ""
            if text:
                segments.append(text)
            sanitized.append(block)
            continue
        if isinstance(block, dict) and block.get("type") == "image":
            source = block.get("source") if isinstance(block.get("source"), dict) else {}
            data = source.get("data")
            if isinstance(data, str) and data:
                mime_type = source.get("media_type") or source.get("mediaType") or "image/png"
                inline_parts.append({"inlineData": {"mimeType": mime_type, "data": data}})
                placeholder = f"[inline image omitted from JSON ({mime_type}, ~{estimate_base64_bytes(data)} bytes)]"
                segments.append(placeholder)
                sanitized.append({**block, "source": {**source, "data": placeholder}})
                continue
        segments.append(block if isinstance(block, str) else _json_text(block))
        sanitized.append(block)

    return ExtractedToolResult(
        "\n".join(segments),
        sanitized if inline_parts else raw_content,
        inline_parts,
    )


def _json_text(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        return str(value)


class _ConversationState:
    """State that spans messages: tool id to name, and the last user task."""

    def __init__(self, *, bridge_enabled: bool, signatures: ThoughtSignatureStore | None) -> None:
        self.bridge_enabled = bridge_enabled
        self.signatures = signatures
        self.tool_id_to_name: dict[str, str] = {}
        self.last_user_task: str | None = None

    def forget_signature(self, tool_use_id: Any) -> None:
        if self.signatures is not None and isinstance(tool_use_id, str):
            self.signatures.delete(tool_use_id)

    def remembered_signature(self, tool_use_id: Any) -> str | None:
        if self.signatures is None or not isinstance(tool_use_id, str):
            return None
        return self.signatures.get(tool_use_id)


class _MessageBuilder:
    """Turn one message's content items into backend parts."""

    def __init__(self, role: str, forward: bool, state: _ConversationState) -> None:
        self.role = role
        self.forward = forward
        self.state = state
        self.parts: list[dict[str, Any]] = []
        self.saw_non_thinking = False
        self.previous_was_tool_result = False
        self.pending_signature: str | None = None
        self.has_native_tool_use = False

    def build(self, content: Any) -> list[dict[str, Any]]:
        if isinstance(content, str):
            if content:
                self.parts.append({"text": content})
                if self.role == "user":
                    self.state.last_user_task = normalize_task_text(content)
            return self.parts
        if not isinstance(content, list):
            return self.parts

        self.has_native_tool_use = self.role == "model" and any(
            isinstance(item, dict)
            and item.get("type") == "tool_use"
            and not (self.state.bridge_enabled and is_mcp_tool_name(item.get("name")))
            for item in content
        )
        for item in content:
            if not isinstance(item, dict):
                continue
            handler = getattr(self, f"_on_{item.get('type')}", None)
            if handler is not None:
                handler(item)

        self._place_leftover_signature()
        if self.role == "user":
            self._reorder_tool_results_first()
        return self.parts

    def _take_pending(self) -> str | None:
        pending = self.pending_signature if self.forward else None
        self.pending_signature = None
        return pending

    def _on_text(self, item: dict[str, Any]) -> None:
        text = item.get("text") if isinstance(item.get("text"), str) else ""
        if not text or text == NO_CONTENT_PLACEHOLDER:
            return
        normalized = normalize_task_text(text)
        if (
            self.role == "user"
            and self.previous_was_tool_result
            and self.state.last_user_task
            and normalized == self.state.last_user_task
        ):
            # Clients echo the same task text after every tool result.
            self.previous_was_tool_result = False
            return
        part: dict[str, Any] = {"text": text}
        if self.role == "model" and not self.has_native_tool_use and self.pending_signature and self.forward:
            part["thoughtSignature"] = self._take_pending()
        self.parts.append(part)
        self.saw_non_thinking = True
        self.previous_was_tool_result = False
        if self.role == "user":
            self.state.last_user_task = normalized

    def _on_thinking(self, item: dict[str, Any]) -> None:
        thinking = item.get("thinking") if isinstance(item.get("thinking"), str) else ""
        signature = item.get("signature") if isinstance(item.get("signature"), str) else ""

        if not thinking:
            # Signature-only carrier: the token belongs to the next output part.
            if signature and self.forward:
                self.pending_signature = signature
            return
        if self.saw_non_thinking:
            return
        if signature and self.forward:
            self.pending_signature = signature
        if self.forward:
            self.parts.append({"text": thinking, "thought": True})
        else:
            self.parts.append({"text": thinking})
            self.saw_non_thinking = True
        self.previous_was_tool_result = False

    def _on_redacted_thinking(self, item: dict[str, Any]) -> None:
        data = item.get("data") if isinstance(item.get("data"), str) else ""
        if not data or self.saw_non_thinking:
            return
        self.parts.append({"text": data})
        self.saw_non_thinking = True
        self.previous_was_tool_result = False

    def _on_image(self, item: dict[str, Any]) -> None:
        source = item.get("source") if isinstance(item.get("source"), dict) else {}
        if source.get("type") == "base64":
            self.parts.append(
                {
                    "inlineData": {
                        "mimeType": source.get("media_type") or "image/png",
                        "data": source.get("data") or "",
                    }
                }
            )
            self.saw_non_thinking = True
        self.previous_was_tool_result = False

    def _on_tool_use(self, item: dict[str, Any]) -> None:
        tool_id = item.get("id")
        name = item.get("name")
        if isinstance(tool_id, str) and tool_id and isinstance(name, str) and name:
            self.state.tool_id_to_name[tool_id] = name

        echoed = item.get("signature") if isinstance(item.get("signature"), str) and item.get("signature") else None
        pending = self._take_pending()
        if echoed or pending:
            # The client carries this signature itself now.
            self.state.forget_signature(tool_id)
        signature = echoed or pending
        bridged = self.state.bridge_enabled and is_mcp_tool_name(name)
        # Bridged calls only carry an echoed signature.
        if signature is None and self.forward and not bridged:
            signature = self.state.remembered_signature(tool_id)
            if signature:
                LOG.debug("restored thought signature from ledger tool_use_id=%s", tool_id)

        if bridged:
            part: dict[str, Any] = {"text": build_mcp_tool_call_xml(name, item.get("input") or {})}
        else:
            part = {"functionCall": {"name": name, "args": item.get("input") or {}, "id": tool_id}}
        if signature and self.forward:
            part["thoughtSignature"] = signature
        self.parts.append(part)
        self.saw_non_thinking = True
        self.previous_was_tool_result = False

    def _on_tool_result(self, item: dict[str, Any]) -> None:
        tool_use_id = item.get("tool_use_id")
        name = self.state.tool_id_to_name.get(tool_use_id, tool_use_id) if isinstance(tool_use_id, str) else ""
        extracted = extract_tool_result_content(item.get("content"))
        is_error = item.get("is_error") is True

        if self.state.bridge_enabled and (is_mcp_tool_name(name) or name == tool_use_id):
            bridged_name = name if is_mcp_tool_name(name) else ""
            self.parts.append(
                {"text": build_mcp_tool_result_xml(bridged_name, tool_use_id, extracted.content_text, is_error=is_error)}
            )
        else:
            self.parts.append(
                {
                    "functionResponse": {
                        "name": name,
                        "response": {
                            "result": extracted.content_text,
                            "is_error": is_error,
                            "content": extracted.sanitized_content,
                        },
                        "id": tool_use_id,
                    }
                }
            )
        self.parts.extend(extracted.inline_parts)
        self.saw_non_thinking = True
        self.previous_was_tool_result = True

    def _place_leftover_signature(self) -> None:
        """Attach a signature nobody consumed to the last part that can carry it."""
        if not self.pending_signature or not self.forward or self.role != "model":
            return
        for part in reversed(self.parts):
            if part.get("thoughtSignature"):
                continue
            if "functionCall" in part or (
                isinstance(part.get("text"), str) and part["text"] and part.get("thought") is not True
            ):
                part["thoughtSignature"] = self.pending_signature
                self.pending_signature = None
                return

    def _reorder_tool_results_first(self) -> None:
        """Move function responses (with their inline attachments) to the front."""
        if not any("functionResponse" in part for part in self.parts):
            return
        leading: list[dict[str, Any]] = []
        deferred: list[dict[str, Any]] = []
        index = 0
        while index < len(self.parts):
            part = self.parts[index]
            if "functionResponse" in part:
                leading.append(part)
                while index + 1 < len(self.parts) and "inlineData" in self.parts[index + 1]:
                    leading.append(self.parts[index + 1])
                    index += 1
            else:
                deferred.append(part)
            index += 1
        self.parts = leading + deferred


def _build_system_instruction(
    claude_req: dict[str, Any],
    cfg: KopplerConfig,
    *,
    bridge_enabled: bool,
    target_is_claude: bool,
    instruction_text: str | None,
) -> dict[str, Any] | None:
    parts: list[dict[str, Any]] = []
    system = claude_req.get("system")
    if isinstance(system, list):
        injected = False
        for item in system:
            if not isinstance(item, dict) or item.get("type") != "text":
                continue
            text = item.get("text") or ""
            if not bridge_enabled:
                text, injected = inject_switch_hint(
                    text,
                    claude_req,
                    switch_enabled=cfg.switch_enabled,
                    is_claude_target=target_is_claude,
                    injected=injected,
                )
            parts.append({"text": text})
    elif isinstance(system, str) and system:
        parts.append({"text": system})

    system_instruction: dict[str, Any] | None = {"role": "user", "parts": parts} if parts else None

    if wants_backend_system_instruction(claude_req.get("model")):
        text = instruction_text if instruction_text is not None else load_system_instruction(cfg.system_instruction_path)
        if text:
            system_instruction = apply_backend_instruction(system_instruction, text)

    if bridge_enabled:
        prompt = build_mcp_xml_system_prompt(get_mcp_tools(claude_req.get("tools")))
        if prompt:
            if system_instruction is None:
                system_instruction = {"role": "user", "parts": []}
            system_instruction["parts"].append({"text": prompt})
    return system_instruction


def _build_tools(claude_req: dict[str, Any], *, bridge_enabled: bool, target_is_claude: bool) -> list[dict[str, Any]] | None:
    tools = claude_req.get("tools")
    if not isinstance(tools, list):
        return None
    if has_web_search_tool(claude_req):
        return [{"googleSearch": {"enhancedContent": {"imageSearch": {"maxResultCount": 5}}}}]
    declarations: list[dict[str, Any]] = []
    for tool in tools:
        if not isinstance(tool, dict):
            continue
        if bridge_enabled and is_mcp_tool_name(tool.get("name")):
            continue
        schema = tool.get("input_schema")
        if not schema:
            continue
        declarations.append(
            {
                "name": tool.get("name"),
                "description": tool.get("description"),
                # Claude-family backends keep JSON Schema casing.
                "parameters": clean_json_schema(schema, uppercase_types=not target_is_claude),
            }
        )
    if not declarations:
        return None
    return [{"functionDeclarations": declarations}]


def _build_generation_config(claude_req: dict[str, Any], cfg: KopplerConfig, target_model: str) -> dict[str, Any]:
    generation_config: dict[str, Any] = {}
    web_search = has_web_search_tool(claude_req)
    thinking = claude_req.get("thinking")
    if isinstance(thinking, dict) and thinking.get("type") == "enabled":
        thinking_config: dict[str, Any] = {"includeThoughts": True}
        budget = thinking.get("budget_tokens")
        if isinstance(budget, int) and budget > 0:
            if web_search or is_flash_model(target_model):
                budget = min(budget, cfg.flash_thinking_budget_cap)
            thinking_config["thinkingBudget"] = budget
        elif is_claude_model(target_model):
            thinking_config["thinkingBudget"] = cfg.claude_default_thinking_budget
        generation_config["thinkingConfig"] = thinking_config

    if claude_req.get("top_p") is not None:
        generation_config["topP"] = claude_req["top_p"]
    if claude_req.get("top_k") is not None:
        generation_config["topK"] = claude_req["top_k"]
    if web_search:
        generation_config["candidateCount"] = 1
    generation_config["maxOutputTokens"] = max_output_tokens_for(target_model)
    return generation_config


def transform_claude_request(
    claude_req: dict[str, Any],
    project_id: str,
    cfg: KopplerConfig,
    *,
    options: TranscodeOptions | None = None,
    signatures: ThoughtSignatureStore | None = None,
    instruction_text: str | None = None,
) -> dict[str, Any]:
    """Build the backend wrapper request for one message-protocol request.

    A fresh `requestId` is generated on every call, so callers that retry must
    call this again rather than reuse a previous body.
    """
    opts = options or TranscodeOptions()
    target_model = resolve_target_model(claude_req, cfg)
    target_is_claude = is_claude_model(target_model)
    bridge_enabled = bridge_active(cfg.mcp_xml_enabled, claude_req.get("tools"))
    state = _ConversationState(bridge_enabled=bridge_enabled, signatures=signatures)

    contents: list[dict[str, Any]] = []
    messages = claude_req.get("messages")
    for index, message in enumerate(messages if isinstance(messages, list) else []):
        if not isinstance(message, dict):
            continue
        role = "model" if message.get("role") == "assistant" else str(message.get("role") or "user")
        builder = _MessageBuilder(role, opts.forwards_for(index), state)
        parts = builder.build(message.get("content"))
        if parts:
            contents.append({"role": role, "parts": parts})

    inner: dict[str, Any] = {"contents": contents}
    tools = _build_tools(claude_req, bridge_enabled=bridge_enabled, target_is_claude=target_is_claude)
    if tools:
        inner["tools"] = tools
    system_instruction = _build_system_instruction(
        claude_req,
        cfg,
        bridge_enabled=bridge_enabled,
        target_is_claude=target_is_claude,
        instruction_text=instruction_text,
    )
    if system_instruction:
        inner["systemInstruction"] = system_instruction
    inner["generationConfig"] = _build_generation_config(claude_req, cfg, target_model)
    inner["safetySettings"] = permissive_safety_settings()

    metadata = claude_req.get("metadata")
    if isinstance(metadata, dict) and metadata.get("user_id"):
        inner["sessionId"] = metadata["user_id"]

    return {
        "project": project_id,
        "requestId": f"agent-{uuid.uuid4()}",
        "request": inner,
        "model": target_model,
        "userAgent": BACKEND_USER_AGENT,
        "requestType": "web_search" if has_web_search_tool(claude_req) else "agent",
    }
