"""Model-switch retry around the message pipeline.

Claude-family backend models cannot run MCP tools here. When a streamed
first attempt either asks for the switch (marker text) or tries to call an
`mcp__*` tool, the attempt is discarded and the same turn is re-run on the
configured substitute model. The session then stays on the substitute model
for the tool-result turns of that segment, and the segment is folded into a
summary message once the conversation returns to the primary family.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable

from .config import KopplerConfig
from .mcp_bridge import is_mcp_tool_name
from .mcp_switch import MCP_SWITCH_SIGNAL, has_mcp_tools
from .models import Family, is_claude_model, map_claude_model, model_family
from .request_transcoder import TranscodeOptions, resolve_target_model
from .session_state import FoldedSegment, SessionMcpState, SessionStore
from .sse import iter_sse_payloads

LOG = logging.getLogger(__name__)

_EXACT_MODEL_RE = re.compile(r"The exact model ID is ([a-zA-Z0-9._-]+)\.")
FOLD_SUMMARY_PREFIX = "MCP result:\n"


@dataclass
class McpContext:
    base_model: str
    # Backend model this turn is routed to.
    target_model: str
    request: dict[str, Any]
    should_buffer_for_switch: bool
    options: TranscodeOptions | None
    session: SessionMcpState | None

    @property
    def target_family(self) -> Family:
        return model_family(self.target_model)


def infer_model_from_system(request: dict[str, Any]) -> str | None:
    """Read the client's real model id from its system prompt, if stated."""
    system = request.get("system")
    if not isinstance(system, list):
        return None
    for item in system:
        text = item.get("text") if isinstance(item, dict) else None
        if not isinstance(text, str) or not text:
            continue
        match = _EXACT_MODEL_RE.search(text)
        if match and match.group(1).startswith("claude-"):
            return match.group(1)
    return None


def _messages(request: dict[str, Any]) -> list[Any]:
    messages = request.get("messages")
    return messages if isinstance(messages, list) else []


def tool_result_ids_after_last_assistant(request: dict[str, Any]) -> set[str]:
    """Collect tool_result ids of the current turn only.

    History before the last assistant message is ignored; otherwise one old
    tool result would mark every later turn as a tool-result turn.
    """
    messages = _messages(request)
    last_assistant = -1
    for index in range(len(messages) - 1, -1, -1):
        if isinstance(messages[index], dict) and messages[index].get("role") == "assistant":
            last_assistant = index
            break
    ids: set[str] = set()
    for message in messages[last_assistant + 1 :]:
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            continue
        for item in content:
            if (
                isinstance(item, dict)
                and item.get("type") == "tool_result"
                and isinstance(item.get("tool_use_id"), str)
                and item["tool_use_id"]
            ):
                ids.add(item["tool_use_id"])
    return ids


def is_mcp_tool_result_turn(request: dict[str, Any], session: SessionMcpState | None) -> bool:
    """Decide whether this turn's tool results belong to the substitute segment.

    A result counts when its tool call has the MCP prefix or was issued at or
    after the segment start. When no call can be found at all, an open segment
    is assumed to continue. That last rule is a heuristic, not a guarantee.
    """
    ids = tool_result_ids_after_last_assistant(request)
    if not ids:
        return False
    messages = _messages(request)
    start = session.mcp_start_index if session is not None else None
    matched_any = False
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if not isinstance(message, dict) or message.get("role") != "assistant":
            continue
        content = message.get("content")
        if not isinstance(content, list):
            continue
        for item in content:
            if not isinstance(item, dict) or item.get("type") != "tool_use" or item.get("id") not in ids:
                continue
            matched_any = True
            if is_mcp_tool_name(item.get("name")):
                return True
            if start is not None and index >= start:
                return True
    if matched_any:
        return False
    return start is not None


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    return "".join(
        item["text"]
        for item in content
        if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str)
    )


def last_assistant_text(messages: list[Any], start: int, end: int) -> str:
    """Return the newest non-blank assistant text within `[start, end)`."""
    for index in range(min(end, len(messages)) - 1, max(0, start) - 1, -1):
        message = messages[index]
        if not isinstance(message, dict) or message.get("role") != "assistant":
            continue
        text = _content_text(message.get("content")).strip()
        if text:
            return text
    return ""


def fold_segments(messages: list[Any], segments: list[FoldedSegment]) -> tuple[list[Any], int]:
    """Replace each folded range with one summary user message.

    Returns the folded list and the index right after the last summary, which
    is where history produced after the fold begins.
    """
    valid = sorted(
        (segment for segment in segments if segment.start >= 0 and segment.end > segment.start),
        key=lambda segment: segment.start,
    )
    if not messages or not valid:
        return list(messages), 0
    out: list[Any] = []
    boundary = 0
    index = 0
    for segment in valid:
        while index < len(messages) and index < segment.start:
            out.append(messages[index])
            index += 1
        summary = segment.summary_text.strip()
        if summary:
            out.append({"role": "user", "content": [{"type": "text", "text": f"{FOLD_SUMMARY_PREFIX}{summary}"}]})
        index = max(index, segment.end)
        boundary = len(out)
    out.extend(messages[index:])
    return out, boundary


def prepare_mcp_context(request: dict[str, Any], sessions: SessionStore, cfg: KopplerConfig) -> McpContext:
    """Route one request and build the request that will actually be transcoded."""
    mcp_model = cfg.mcp_switch_model or ""
    session = sessions.ensure(request)
    base_model = infer_model_from_system(request) or str(request.get("model") or "")
    messages = _messages(request)

    tool_result_turn = bool(tool_result_ids_after_last_assistant(request))
    mcp_result_turn = is_mcp_tool_result_turn(request, session)
    base_is_claude = is_claude_model(map_claude_model(base_model, cfg))

    upstream_request = {**request, "model": mcp_model if mcp_result_turn else base_model}
    should_buffer = bool(request.get("stream")) and not tool_result_turn and has_mcp_tools(request) and base_is_claude
    if mcp_result_turn:
        target_model = mcp_model
    else:
        target_model = resolve_target_model({**request, "model": base_model}, cfg)
    target_family = model_family(target_model)

    options: TranscodeOptions | None = None
    if session is not None and messages:
        if target_family == "claude" and session.mcp_start_index is not None:
            # Keep the last user message out of the folded range.
            end = len(messages) - 1
            start = max(0, session.mcp_start_index)
            if end > start:
                session.folded_segments.append(
                    FoldedSegment(start=start, end=end, summary_text=last_assistant_text(messages, start, end))
                )
                LOG.info("folding substitute segment start=%s end=%s", start, end)
            session.mcp_start_index = None
        if target_family == "claude" and session.folded_segments:
            folded, boundary = fold_segments(messages, session.folded_segments)
            upstream_request = {**upstream_request, "messages": folded}
            # Nothing from before the fold carries a signature into this call.
            options = TranscodeOptions(signature_segment_start_index=boundary)

    if base_is_claude and target_family == "gemini":
        start_index = session.mcp_start_index if session is not None and session.mcp_start_index is not None else None
        if start_index is None:
            start_index = len(_messages(upstream_request))
        options = TranscodeOptions(signature_segment_start_index=start_index)

    return McpContext(
        base_model=base_model,
        target_model=target_model,
        request=upstream_request,
        should_buffer_for_switch=should_buffer,
        options=options,
        session=session,
    )


def has_switch_signal(sse_text: str) -> bool:
    """Detect an attempted MCP call or the switch marker in a transcoded stream."""
    text_out = []
    for event in iter_sse_payloads(sse_text):
        if event.get("type") == "content_block_start":
            block = event.get("content_block")
            if isinstance(block, dict) and block.get("type") == "tool_use" and is_mcp_tool_name(block.get("name")):
                return True
        elif event.get("type") == "content_block_delta":
            delta = event.get("delta")
            if isinstance(delta, dict) and delta.get("type") == "text_delta" and isinstance(delta.get("text"), str):
                text_out.append(delta["text"])
    return MCP_SWITCH_SIGNAL in "".join(text_out)


def retry_options(request: dict[str, Any]) -> TranscodeOptions:
    """Forward no signature from before this turn into the substitute call."""
    return TranscodeOptions(signature_segment_start_index=len(_messages(request)))


def record_switch(session: SessionMcpState | None, request: dict[str, Any]) -> None:
    """Open a substitute segment beginning at the reply to this request."""
    if session is None:
        return
    session.last_family = "gemini"
    if session.mcp_start_index is None and isinstance(request.get("messages"), list):
        session.mcp_start_index = len(request["messages"])


def update_session_after_response(ctx: McpContext, request: dict[str, Any], cfg: KopplerConfig) -> None:
    session = ctx.session
    if session is None:
        return
    session.last_family = ctx.target_family
    if (
        is_claude_model(map_claude_model(ctx.base_model, cfg))
        and ctx.target_model == cfg.mcp_switch_model
        and session.mcp_start_index is None
        and isinstance(request.get("messages"), list)
    ):
        session.mcp_start_index = len(request["messages"])


async def replay(buffered: bytes) -> AsyncGenerator[bytes, None]:
    """Yield a buffered first attempt unchanged."""
    if buffered:
        yield buffered


@dataclass
class SwitchOutcome:
    """Either the buffered first attempt or the substitute model's result."""

    buffered: bytes
    retried: bool
    retry_result: Any = None


async def buffer_and_maybe_retry(
    first_attempt: AsyncIterator[bytes],
    ctx: McpContext,
    request: dict[str, Any],
    retry: Callable[[TranscodeOptions], Awaitable[tuple[Any, bool]]],
    *,
    log: Callable[[str, Any], None] | None = None,
) -> SwitchOutcome:
    """Buffer the whole first attempt and retry on the substitute model if asked.

    `retry` returns the substitute call's result and whether it succeeded; a
    failed retry is relayed as is and leaves the session untouched.
    """
    chunks = [chunk async for chunk in first_attempt]
    buffered = b"".join(chunks)
    if log is not None and buffered:
        log("Claude Response Payload (Transformed Stream)", buffered)
    if not has_switch_signal(buffered.decode("utf-8", errors="replace")):
        return SwitchOutcome(buffered=buffered, retried=False)

    LOG.info("switch signal detected; discarding first attempt from model=%s", ctx.target_model)
    result, ok = await retry(retry_options(request))
    if ok:
        record_switch(ctx.session, request)
    return SwitchOutcome(buffered=buffered, retried=True, retry_result=result)
