"""Rebuild message-protocol responses from backend candidates.

Streaming responses go through a small state machine with at most one open
content block. Non-streaming responses are accumulated into a full message.
Both follow the same thought-signature placement rules:

* a signature on a reasoning part stays on that thinking block;
* a signature on a function call stays on that tool_use block (and is
  remembered in the ledger, since clients rarely echo it);
* a signature on a text part is carried by its own empty thinking block,
  and only when the response contains real reasoning at all.
"""

from __future__ import annotations

import base64
import enum
import json
import logging
import secrets
import uuid
from typing import Any, AsyncGenerator, AsyncIterator, Iterable

from .mcp_bridge import BridgeSegment, McpXmlStreamParser
from .signature_store import ThoughtSignatureStore
from .sse import DONE_SENTINEL, sse_event, sse_line_payload
from .web_search import (
    WEB_SEARCH_TOOL_NAME,
    WEB_SEARCH_USAGE,
    RedirectResolver,
    WebSearchState,
    has_grounding_fields,
    is_grounded_candidate,
    make_server_tool_use_id,
)

LOG = logging.getLogger(__name__)


class BlockType(enum.Enum):
    NONE = "none"
    TEXT = "text"
    THINKING = "thinking"
    FUNCTION = "function"


def make_tool_use_id() -> str:
    """Generate an id shaped like the message protocol's own tool_use ids."""
    return "toolu_vrtx_" + base64.urlsafe_b64encode(secrets.token_bytes(16)).rstrip(b"=").decode("ascii")


def make_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:24]}"


def to_claude_usage(usage_metadata: dict[str, Any] | None) -> dict[str, int]:
    """Map backend token counts to `input_tokens`/`output_tokens`.

    The total minus the prompt is preferred whenever the total is present and
    not smaller than the prompt count.
    """
    usage = usage_metadata or {}
    prompt = int(usage.get("promptTokenCount") or 0)
    candidates = int(usage.get("candidatesTokenCount") or 0)
    thoughts = int(usage.get("thoughtsTokenCount") or 0)
    total = usage.get("totalTokenCount")
    if total and int(total) >= prompt:
        return {"input_tokens": prompt, "output_tokens": int(total) - prompt}
    return {"input_tokens": prompt, "output_tokens": candidates + thoughts}


def stop_reason_for(finish_reason: Any, *, used_tool: bool) -> str:
    if used_tool:
        return "tool_use"
    if finish_reason == "MAX_TOKENS":
        return "max_tokens"
    return "end_turn"


def unwrap_backend_payload(payload: Any) -> dict[str, Any]:
    """Strip the backend's `{"response": ...}` envelope if present."""
    if isinstance(payload, dict) and isinstance(payload.get("response"), dict):
        return payload["response"]
    return payload if isinstance(payload, dict) else {}


def first_candidate(raw: dict[str, Any]) -> dict[str, Any] | None:
    candidates = raw.get("candidates")
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        return candidates[0]
    return None


def candidate_parts(candidate: dict[str, Any] | None) -> list[dict[str, Any]]:
    if not candidate:
        return []
    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return []
    return [part for part in parts if isinstance(part, dict)]


class StreamingState:
    """Event buffer plus block bookkeeping for one streamed message."""

    def __init__(
        self,
        *,
        override_model: str | None = None,
        signatures: ThoughtSignatureStore | None = None,
    ) -> None:
        self.override_model = override_model
        self.signatures = signatures
        self.block_type = BlockType.NONE
        self.block_index = 0
        self.message_start_sent = False
        self.message_stop_sent = False
        self.finished = False
        self.used_tool = False
        self.has_thinking = False
        # Signature of the open reasoning block, sent just before it closes.
        self.pending_thinking_signature: str | None = None
        # Signature from an empty text part, carried by its own thinking block.
        self.trailing_signature: str | None = None
        self._events: list[bytes] = []

    def drain(self) -> list[bytes]:
        events, self._events = self._events, []
        return events

    def emit(self, event_type: str, data: dict[str, Any]) -> None:
        self._events.append(sse_event(event_type, data))

    def emit_message_start(self, raw: dict[str, Any]) -> None:
        if self.message_start_sent:
            return
        message: dict[str, Any] = {
            "id": raw.get("responseId") or make_message_id(),
            "type": "message",
            "role": "assistant",
            "content": [],
            "model": self.override_model or raw.get("modelVersion") or "",
            "stop_reason": None,
            "stop_sequence": None,
        }
        if raw.get("usageMetadata"):
            message["usage"] = to_claude_usage(raw["usageMetadata"])
        self.emit("message_start", {"type": "message_start", "message": message})
        self.message_start_sent = True

    def start_block(self, block_type: BlockType, content_block: dict[str, Any]) -> None:
        if self.block_type is not BlockType.NONE:
            self.end_block()
        if content_block.get("type") == "thinking" and "signature" not in content_block:
            content_block = {**content_block, "signature": ""}
        self.emit(
            "content_block_start",
            {"type": "content_block_start", "index": self.block_index, "content_block": content_block},
        )
        self.block_type = block_type

    def end_block(self) -> None:
        if self.block_type is BlockType.NONE:
            return
        if self.block_type is BlockType.THINKING and self.pending_thinking_signature:
            self.emit_delta("signature_delta", signature=self.pending_thinking_signature)
            self.pending_thinking_signature = None
        self.emit("content_block_stop", {"type": "content_block_stop", "index": self.block_index})
        self.block_index += 1
        self.block_type = BlockType.NONE

    def emit_delta(self, delta_type: str, **content: Any) -> None:
        self.emit(
            "content_block_delta",
            {"type": "content_block_delta", "index": self.block_index, "delta": {"type": delta_type, **content}},
        )

    def emit_signature_block(self, signature: str) -> None:
        """Emit an empty thinking block whose only payload is `signature`."""
        self.start_block(BlockType.THINKING, {"type": "thinking", "thinking": "", "signature": ""})
        self.emit_delta("thinking_delta", thinking="")
        self.emit_delta("signature_delta", signature=signature)
        self.emit("content_block_stop", {"type": "content_block_stop", "index": self.block_index})
        self.block_index += 1
        self.block_type = BlockType.NONE

    def flush_trailing_signature(self) -> None:
        """Materialize a held text signature, or drop it if there is no reasoning."""
        signature, self.trailing_signature = self.trailing_signature, None
        if signature and self.has_thinking:
            self.emit_signature_block(signature)

    def emit_message_stop(self) -> None:
        if self.message_stop_sent:
            return
        self.emit("message_stop", {"type": "message_stop"})
        self.message_stop_sent = True

    def emit_finish(
        self,
        finish_reason: Any,
        usage_metadata: dict[str, Any] | None,
        extra_usage: dict[str, Any] | None = None,
    ) -> None:
        if self.finished:
            return
        self.end_block()
        self.flush_trailing_signature()
        usage: dict[str, Any] = to_claude_usage(usage_metadata)
        if extra_usage:
            usage = {**usage, **extra_usage}
        self.emit(
            "message_delta",
            {
                "type": "message_delta",
                "delta": {"stop_reason": stop_reason_for(finish_reason, used_tool=self.used_tool), "stop_sequence": None},
                "usage": usage,
            },
        )
        self.emit_message_stop()
        self.finished = True


class PartProcessor:
    """Apply one backend part to the streaming state."""

    def __init__(self, state: StreamingState, bridge_parser: McpXmlStreamParser | None = None) -> None:
        self.state = state
        self.bridge_parser = bridge_parser

    def process(self, part: dict[str, Any]) -> None:
        signature = part.get("thoughtSignature") or None
        if isinstance(part.get("functionCall"), dict):
            self.state.flush_trailing_signature()
            self.process_function_call(part["functionCall"], signature)
            return

        text = part.get("text")
        if not isinstance(text, str):
            return

        if part.get("thought"):
            self.state.has_thinking = True
            self.state.flush_trailing_signature()
            if self.state.pending_thinking_signature:
                # A signed part closes its reasoning block.
                self.state.end_block()
            self.process_thinking(text)
            if signature:
                self.state.pending_thinking_signature = signature
            return

        if not text:
            if signature:
                self.state.trailing_signature = signature
            return

        self.state.flush_trailing_signature()
        if self.bridge_parser is not None:
            self.process_bridge_segments(self.bridge_parser.push_text(text), signature)
            return
        self.process_signed_text(text, signature)

    def process_signed_text(self, text: str, signature: str | None) -> None:
        if not signature or not self.state.has_thinking:
            self.process_text(text)
            return
        # Signed text never merges with the surrounding text block.
        self.state.end_block()
        self.state.start_block(BlockType.TEXT, {"type": "text", "text": ""})
        self.state.emit_delta("text_delta", text=text)
        self.state.end_block()
        self.state.emit_signature_block(signature)

    def process_bridge_segments(self, segments: list[BridgeSegment], signature: str | None) -> None:
        """Emit parsed bridge output. A part's signature goes to its first tool call."""
        if signature and any(segment.kind == "tool" for segment in segments):
            for segment in segments:
                if segment.kind == "tool":
                    self.process_function_call({"name": segment.name, "args": segment.input}, signature)
                    signature = None
                else:
                    self.process_text(segment.text)
            return

        texts = [index for index, segment in enumerate(segments) if segment.kind == "text" and segment.text]
        if signature and not texts:
            # All text is held back by the parser; treat like an empty signed part.
            self.state.trailing_signature = signature
            return
        last_text = texts[-1] if texts else -1
        for index, segment in enumerate(segments):
            if segment.kind == "tool":
                self.process_function_call({"name": segment.name, "args": segment.input}, None)
            elif index == last_text:
                self.process_signed_text(segment.text, signature)
            else:
                self.process_text(segment.text)

    def flush_bridge(self) -> None:
        if self.bridge_parser is None:
            return
        self.process_bridge_segments(self.bridge_parser.flush(), None)

    def process_thinking(self, text: str) -> None:
        if self.state.block_type is not BlockType.THINKING:
            self.state.start_block(BlockType.THINKING, {"type": "thinking", "thinking": ""})
        self.state.emit_delta("thinking_delta", thinking=text)

    def process_text(self, text: str) -> None:
        if not text:
            return
        if self.state.block_type is not BlockType.TEXT:
            self.state.start_block(BlockType.TEXT, {"type": "text", "text": ""})
        self.state.emit_delta("text_delta", text=text)

    def process_function_call(self, function_call: dict[str, Any], signature: str | None) -> None:
        tool_id = function_call.get("id") if isinstance(function_call.get("id"), str) and function_call.get("id") else None
        tool_id = tool_id or make_tool_use_id()
        block: dict[str, Any] = {"type": "tool_use", "id": tool_id, "name": function_call.get("name"), "input": {}}
        if signature:
            block["signature"] = signature
            if self.state.signatures is not None:
                self.state.signatures.remember(tool_id, signature)
        self.state.start_block(BlockType.FUNCTION, block)
        args = function_call.get("args")
        if args is not None:
            self.state.emit_delta("input_json_delta", partial_json=json.dumps(args, ensure_ascii=False))
        self.state.used_tool = True


def emit_web_search_blocks(state: StreamingState, search: WebSearchState) -> None:
    """Emit the deferred search blocks and the buffered answer, in fixed order."""
    if state.block_index == 0 and state.block_type is BlockType.NONE:
        # Index 0 is always a thinking block, even when empty.
        state.start_block(BlockType.THINKING, {"type": "thinking", "thinking": ""})
        state.emit_delta("thinking_delta", thinking="")
        state.end_block()
    elif state.block_type is BlockType.THINKING:
        state.emit_delta("thinking_delta", thinking="")
        state.end_block()
    else:
        state.end_block()

    state.start_block(
        BlockType.TEXT,
        {"type": "server_tool_use", "id": search.tool_use_id, "name": WEB_SEARCH_TOOL_NAME, "input": {}},
    )
    state.emit_delta("input_json_delta", partial_json=json.dumps({"query": search.query}, ensure_ascii=False))
    state.end_block()

    state.start_block(
        BlockType.TEXT,
        {"type": "web_search_tool_result", "tool_use_id": search.tool_use_id, "content": search.results},
    )
    state.end_block()

    for citation in search.citations():
        state.start_block(BlockType.TEXT, {"citations": [], "type": "text", "text": ""})
        state.emit_delta("citations_delta", citation=citation)
        state.end_block()

    state.start_block(BlockType.TEXT, {"type": "text", "text": ""})
    for text in search.buffered_text:
        if text:
            state.emit_delta("text_delta", text=text)
    state.end_block()


class StreamTranscoder:
    """Turn backend SSE lines into message-protocol SSE events."""

    def __init__(
        self,
        *,
        override_model: str | None = None,
        bridge_tool_names: Iterable[str] = (),
        signatures: ThoughtSignatureStore | None = None,
        resolver: RedirectResolver | None = None,
    ) -> None:
        names = list(bridge_tool_names)
        self.state = StreamingState(override_model=override_model, signatures=signatures)
        self.processor = PartProcessor(self.state, McpXmlStreamParser(names) if names else None)
        self.resolver = resolver
        self.web_search: WebSearchState | None = None
        self._last_usage: dict[str, Any] | None = None

    async def feed_line(self, line: str) -> list[bytes]:
        payload = sse_line_payload(line)
        if payload is None:
            return []
        if payload == DONE_SENTINEL:
            return await self.finish()
        try:
            chunk = json.loads(payload)
        except json.JSONDecodeError:
            LOG.debug("skipping undecodable backend chunk payload=%s", payload[:200])
            return []
        raw = unwrap_backend_payload(chunk)
        candidate = first_candidate(raw)

        self.state.emit_message_start(raw)
        if raw.get("usageMetadata"):
            self._last_usage = raw["usageMetadata"]
        if self.web_search is None and has_grounding_fields(candidate):
            self.web_search = WebSearchState()

        if self.web_search is None:
            for part in candidate_parts(candidate):
                self.processor.process(part)
        else:
            for part in candidate_parts(candidate):
                if not isinstance(part.get("text"), str):
                    continue
                if part.get("thought"):
                    self.processor.process(part)
                else:
                    self.web_search.buffered_text.append(part["text"])
            if candidate is not None:
                self.web_search.update(candidate)

        finish_reason = candidate.get("finishReason") if candidate else None
        if finish_reason:
            await self._finish(finish_reason, raw.get("usageMetadata"))
        return self.state.drain()

    async def finish(self) -> list[bytes]:
        """End of input: run the finish sequence if the backend never did."""
        if self.state.message_start_sent and not self.state.finished:
            await self._finish(None, self._last_usage)
        return self.state.drain()

    async def _finish(self, finish_reason: Any, usage_metadata: dict[str, Any] | None) -> None:
        if self.state.finished:
            return
        self.processor.flush_bridge()
        if self.web_search is None:
            self.state.emit_finish(finish_reason, usage_metadata)
            return
        if self.resolver is not None:
            await self.resolver.resolve_results(self.web_search.results)
        emit_web_search_blocks(self.state, self.web_search)
        self.state.emit_finish(finish_reason, usage_metadata, WEB_SEARCH_USAGE)


async def transcode_stream(
    lines: AsyncIterator[str],
    *,
    override_model: str | None = None,
    bridge_tool_names: Iterable[str] = (),
    signatures: ThoughtSignatureStore | None = None,
    resolver: RedirectResolver | None = None,
) -> AsyncGenerator[bytes, None]:
    """Transcode a backend SSE line stream into message-protocol events."""
    transcoder = StreamTranscoder(
        override_model=override_model,
        bridge_tool_names=bridge_tool_names,
        signatures=signatures,
        resolver=resolver,
    )
    async for line in lines:
        for event in await transcoder.feed_line(line):
            yield event
    for event in await transcoder.finish():
        yield event


class NonStreamingProcessor:
    """Accumulate a complete backend candidate into content blocks."""

    def __init__(
        self,
        raw: dict[str, Any],
        *,
        bridge_tool_names: Iterable[str] = (),
        signatures: ThoughtSignatureStore | None = None,
    ) -> None:
        self.raw = raw
        names = list(bridge_tool_names)
        self.bridge_parser = McpXmlStreamParser(names) if names else None
        self.signatures = signatures
        self.content_blocks: list[dict[str, Any]] = []
        self.text_builder = ""
        self.thinking_builder = ""
        self.thinking_signature: str | None = None
        self.trailing_signature: str | None = None
        self.has_tool_call = False
        self.has_thinking = False

    def process(self) -> dict[str, Any]:
        parts = candidate_parts(first_candidate(self.raw))
        # Whole response is known up front, so order cannot hide reasoning.
        self.has_thinking = any(part.get("thought") for part in parts)
        for part in parts:
            self.process_part(part)
        if self.bridge_parser is not None:
            self._apply_bridge_segments(self.bridge_parser.flush(), None)
        self.flush_thinking()
        self.flush_text()
        self._flush_trailing_signature()
        return self.build_response()

    def process_part(self, part: dict[str, Any]) -> None:
        signature = part.get("thoughtSignature") or None
        if isinstance(part.get("functionCall"), dict):
            self.flush_thinking()
            self.flush_text()
            self._flush_trailing_signature()
            self._add_tool_use(part["functionCall"], signature)
            return

        text = part.get("text")
        if not isinstance(text, str):
            return

        if part.get("thought"):
            self.flush_text()
            if self.trailing_signature:
                self.flush_thinking()
                self._flush_trailing_signature()
            elif self.thinking_signature:
                self.flush_thinking()
            self.thinking_builder += text
            if signature:
                self.thinking_signature = signature
            return

        if not text:
            if signature:
                self.trailing_signature = signature
            return

        self.flush_thinking()
        if self.trailing_signature:
            self.flush_text()
            self._flush_trailing_signature()
        if self.bridge_parser is not None:
            self._apply_bridge_segments(self.bridge_parser.push_text(text), signature)
            return
        self._add_text(text, signature)

    def _add_text(self, text: str, signature: str | None) -> None:
        self.text_builder += text
        if signature and self.has_thinking:
            self.flush_text()
            self.content_blocks.append({"type": "thinking", "thinking": "", "signature": signature})

    def _apply_bridge_segments(self, segments: list[BridgeSegment], signature: str | None) -> None:
        if signature and any(segment.kind == "tool" for segment in segments):
            for segment in segments:
                if segment.kind == "tool":
                    self.flush_text()
                    self._add_tool_use({"name": segment.name, "args": segment.input}, signature)
                    signature = None
                else:
                    self.text_builder += segment.text
            return
        texts = [index for index, segment in enumerate(segments) if segment.kind == "text" and segment.text]
        if signature and not texts:
            self.trailing_signature = signature
            return
        last_text = texts[-1] if texts else -1
        for index, segment in enumerate(segments):
            if segment.kind == "tool":
                self.flush_text()
                self._add_tool_use({"name": segment.name, "args": segment.input}, None)
            elif index == last_text:
                self._add_text(segment.text, signature)
            else:
                self.text_builder += segment.text

    def _add_tool_use(self, function_call: dict[str, Any], signature: str | None) -> None:
        self.has_tool_call = True
        tool_id = function_call.get("id") if isinstance(function_call.get("id"), str) and function_call.get("id") else None
        tool_id = tool_id or make_tool_use_id()
        block: dict[str, Any] = {
            "type": "tool_use",
            "id": tool_id,
            "name": function_call.get("name"),
            "input": function_call.get("args") or {},
        }
        if signature:
            block["signature"] = signature
            if self.signatures is not None:
                self.signatures.remember(tool_id, signature)
        self.content_blocks.append(block)

    def _flush_trailing_signature(self) -> None:
        signature, self.trailing_signature = self.trailing_signature, None
        if signature and self.has_thinking:
            self.content_blocks.append({"type": "thinking", "thinking": "", "signature": signature})

    def flush_text(self) -> None:
        if not self.text_builder:
            return
        self.content_blocks.append({"type": "text", "text": self.text_builder})
        self.text_builder = ""

    def flush_thinking(self) -> None:
        # A signature alone still needs its block.
        if not self.thinking_builder and not self.thinking_signature:
            return
        block: dict[str, Any] = {"type": "thinking", "thinking": self.thinking_builder}
        if self.thinking_signature:
            block["signature"] = self.thinking_signature
            self.thinking_signature = None
        self.content_blocks.append(block)
        self.thinking_builder = ""

    def build_response(self) -> dict[str, Any]:
        candidate = first_candidate(self.raw) or {}
        response: dict[str, Any] = {
            "id": self.raw.get("responseId") or make_message_id(),
            "type": "message",
            "role": "assistant",
            "model": self.raw.get("modelVersion") or "",
            "content": self.content_blocks,
            "stop_reason": stop_reason_for(candidate.get("finishReason"), used_tool=self.has_tool_call),
            "stop_sequence": None,
        }
        if self.raw.get("usageMetadata"):
            response["usage"] = to_claude_usage(self.raw["usageMetadata"])
        return response


async def build_web_search_message(
    raw: dict[str, Any],
    *,
    resolver: RedirectResolver | None = None,
) -> dict[str, Any]:
    """Render a grounded, non-streamed answer as search blocks plus text."""
    candidate = first_candidate(raw) or {}
    parts = candidate_parts(candidate)
    search = WebSearchState(tool_use_id=make_server_tool_use_id())
    search.update(candidate)
    if resolver is not None:
        await resolver.resolve_results(search.results)

    thinking_text = "".join(part["text"] for part in parts if part.get("thought") and isinstance(part.get("text"), str))
    answer_text = "".join(
        part["text"] for part in parts if not part.get("thought") and isinstance(part.get("text"), str)
    )

    content: list[dict[str, Any]] = []
    if thinking_text:
        content.append({"type": "thinking", "thinking": thinking_text})
    content.append(
        {"type": "server_tool_use", "id": search.tool_use_id, "name": WEB_SEARCH_TOOL_NAME, "input": {"query": search.query}}
    )
    content.append({"type": "web_search_tool_result", "tool_use_id": search.tool_use_id, "content": search.results})
    for citation in search.citations():
        content.append({"type": "text", "text": "", "citations": [citation]})
    if answer_text:
        content.append({"type": "text", "text": answer_text})

    return {
        "id": raw.get("responseId") or make_message_id(),
        "type": "message",
        "role": "assistant",
        "model": raw.get("modelVersion") or "",
        "content": content,
        "stop_reason": stop_reason_for(candidate.get("finishReason"), used_tool=False),
        "stop_sequence": None,
        "usage": {**to_claude_usage(raw.get("usageMetadata")), **WEB_SEARCH_USAGE},
    }


async def transcode_json(
    payload: Any,
    *,
    override_model: str | None = None,
    bridge_tool_names: Iterable[str] = (),
    signatures: ThoughtSignatureStore | None = None,
    resolver: RedirectResolver | None = None,
) -> dict[str, Any]:
    """Transcode one complete backend JSON response into a message."""
    raw = unwrap_backend_payload(payload)
    if is_grounded_candidate(first_candidate(raw)):
        message = await build_web_search_message(raw, resolver=resolver)
    else:
        message = NonStreamingProcessor(raw, bridge_tool_names=bridge_tool_names, signatures=signatures).process()
    if override_model:
        message["model"] = override_model
    return message
