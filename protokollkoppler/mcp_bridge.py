"""In-band XML bridge for `mcp__*` tools.

Some backend models cannot natively invoke MCP tools without protocol errors.
When the bridge is enabled those tools are described in the system instruction
instead, the model writes `<tool_name>{json}</tool_name>` into its answer text,
and the response side turns that markup back into ordinary tool calls.
Results travel back as `<mcp_tool_result>{...}</mcp_tool_result>` text.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal

from .json_helpers import compact_json

MCP_TOOL_PREFIX = "mcp__"
MCP_RESULT_TAG = "mcp_tool_result"

_SCHEMA_PROMPT_MAX_LEN = 4000
_CALL_PAYLOAD_MAX_LEN = 20000
_RESULT_PAYLOAD_MAX_LEN = 40000

_XML_TOKEN_RE = re.compile(r"</?[A-Za-z0-9_:.\-]+\s*/?>|[^<]+")


def is_mcp_tool_name(name: Any) -> bool:
    return isinstance(name, str) and name.startswith(MCP_TOOL_PREFIX)


def get_mcp_tools(tools: Any) -> list[dict[str, Any]]:
    """Return the declared tools whose names carry the MCP prefix."""
    if not isinstance(tools, list):
        return []
    return [tool for tool in tools if isinstance(tool, dict) and is_mcp_tool_name(tool.get("name"))]


def get_mcp_tool_names(tools: Any) -> list[str]:
    return [str(tool["name"]) for tool in get_mcp_tools(tools)]


def bridge_active(cfg_enabled: bool, tools: Any) -> bool:
    """The bridge applies only when enabled and at least one MCP tool is declared."""
    return bool(cfg_enabled) and bool(get_mcp_tools(tools))


def _bounded_json(value: Any, max_len: int) -> str:
    try:
        text = compact_json(value)
    except (TypeError, ValueError):
        return ""
    if len(text) > max_len:
        return text[:max_len] + "..."
    return text


def build_mcp_xml_system_prompt(mcp_tools: list[dict[str, Any]]) -> str:
    """Describe the XML calling convention and enumerate the bridged tools."""
    if not mcp_tools:
        return ""
    lines = [
        "==== MCP XML tool calls (mcp__* tools only) ====",
        "When you need to call a tool whose name starts with `mcp__`:",
        "1) Do not use tool_use/function_call for it; that path fails for these tools.",
        "2) Output one bare XML block instead (XML only, no explanation, no markdown fences).",
        "3) The root tag must be the tool name and its body must be JSON (object or array) holding the tool input.",
        "",
        "Example:",
        '<mcp__server__tool>{"arg":"value"}</mcp__server__tool>',
        "",
        "Once the tool has run, its result is returned to you as:",
        f'<{MCP_RESULT_TAG}>{{"name":"mcp__server__tool","tool_use_id":"toolu_xxx","result":"..."}}</{MCP_RESULT_TAG}>',
        "",
        "For tools that do not start with `mcp__`, keep using the normal tool calling mechanism.",
        "",
        "Available MCP tools (name / description / input_schema):",
    ]
    for tool in mcp_tools:
        name = tool.get("name")
        if not is_mcp_tool_name(name):
            continue
        description = tool.get("description") if isinstance(tool.get("description"), str) else ""
        schema = tool.get("input_schema") or tool.get("inputSchema")
        lines.append(f"- {name}: {description}" if description else f"- {name}")
        if schema:
            lines.append(f"  input_schema: {_bounded_json(schema, _SCHEMA_PROMPT_MAX_LEN)}")
    return "\n".join(lines)


def build_mcp_tool_call_xml(name: str, tool_input: Any) -> str:
    """Encode one historical tool call the way the model would have written it."""
    payload = _bounded_json(tool_input if tool_input is not None else {}, _CALL_PAYLOAD_MAX_LEN) or "{}"
    return f"<{name}>{payload}</{name}>"


def build_mcp_tool_result_xml(name: str, tool_use_id: str, result: Any, *, is_error: bool = False) -> str:
    """Encode one tool result as bridge result markup."""
    payload: dict[str, Any] = {
        "name": str(name or ""),
        "tool_use_id": str(tool_use_id or ""),
        "result": result if isinstance(result, str) else _bounded_json(result, _CALL_PAYLOAD_MAX_LEN),
    }
    if is_error:
        payload["is_error"] = True
    return f"<{MCP_RESULT_TAG}>{_bounded_json(payload, _RESULT_PAYLOAD_MAX_LEN) or '{}'}</{MCP_RESULT_TAG}>"


@dataclass
class _XmlNode:
    name: str
    children: list["_XmlNode"] = field(default_factory=list)
    text: str = ""


def parse_xml_to_object(xml: str) -> Any:
    """Build a nested dict from simple tag markup.

    Leaves become their stripped text. Repeated child names collect into a
    list and mixed text is kept under `_text`. Unbalanced tags are closed
    implicitly; stray close tags are ignored.
    """
    stack = [_XmlNode("root")]
    for match in _XML_TOKEN_RE.finditer(str(xml or "")):
        token = match.group(0)
        if not token.startswith("<"):
            stack[-1].text += token
            continue
        tag_name = re.sub(r"\s*/?>$", "", re.sub(r"^</?", "", token)).strip()
        if not tag_name:
            continue
        if token.startswith("</"):
            if len(stack) <= 1:
                continue
            node = stack.pop()
            stack[-1].children.append(node)
        elif token.endswith("/>"):
            stack[-1].children.append(_XmlNode(tag_name))
        else:
            stack.append(_XmlNode(tag_name))
    while len(stack) > 1:
        node = stack.pop()
        stack[-1].children.append(node)
    return _node_to_value(stack[0])


def _node_to_value(node: _XmlNode) -> Any:
    text = node.text.strip()
    if not node.children:
        return text
    out: dict[str, Any] = {}
    for child in node.children:
        value = _node_to_value(child)
        if child.name in out:
            existing = out[child.name]
            if isinstance(existing, list):
                existing.append(value)
            else:
                out[child.name] = [existing, value]
        else:
            out[child.name] = value
    if text:
        out["_text"] = text
    return out


def try_parse_mcp_tool_call_xml(xml_text: str, tool_name: str) -> tuple[str, Any] | None:
    """Parse one complete `<name>...</name>` block into `(name, input)`.

    Returns None when the text is not a well-formed block for `tool_name`.
    """
    name = str(tool_name or "")
    text = str(xml_text or "").strip()
    if not name or not text:
        return None
    escaped = re.escape(name)
    open_match = re.match(rf"<{escaped}(?:\s[^>]*)?>", text, re.IGNORECASE)
    if open_match is None or re.search(rf"</{escaped}\s*>$", text, re.IGNORECASE) is None:
        return None
    close_start = text.lower().rfind(f"</{name.lower()}")
    if close_start < open_match.end():
        return None
    inner = text[open_match.end() : close_start].strip()
    if not inner:
        return name, {}

    if inner.startswith("{") or inner.startswith("["):
        try:
            return name, json.loads(inner)
        except json.JSONDecodeError:
            pass

    parsed = parse_xml_to_object(f"<root>{inner}</root>")
    value = parsed.get("root", parsed) if isinstance(parsed, dict) else parsed
    if isinstance(value, dict):
        return name, value
    return name, {"raw": inner}


@dataclass
class BridgeSegment:
    """One piece of parsed answer text: plain text or a recovered tool call."""

    kind: Literal["text", "tool"]
    text: str = ""
    name: str = ""
    input: Any = None


class McpXmlStreamParser:
    """Incremental scanner that recovers bridged tool calls from streamed text.

    Text that might still turn into a tag for a declared tool is held back
    until more input disambiguates it. `flush()` releases whatever is left.
    """

    def __init__(self, tool_names: Iterable[str]) -> None:
        # Longest names first so the longer of two names starting at the same
        # offset wins.
        self._names = sorted({name for name in tool_names if name}, key=len, reverse=True)
        self._open_tags = [f"<{name}" for name in self._names]
        self._close_tags = [f"</{name}" for name in self._names]
        self._buffer = ""

    @property
    def tool_names(self) -> list[str]:
        return list(self._names)

    @property
    def pending(self) -> str:
        return self._buffer

    def push_text(self, text: str) -> list[BridgeSegment]:
        out: list[BridgeSegment] = []
        if not text:
            return out
        self._buffer += text

        while True:
            index, name = self._find_next_tool_start(self._buffer)
            if name is None:
                emit, keep = self._split_partial_tag(self._buffer)
                if emit:
                    out.append(BridgeSegment("text", text=emit))
                self._buffer = keep
                break

            if index > 0:
                out.append(BridgeSegment("text", text=self._buffer[:index]))
                self._buffer = self._buffer[index:]

            close_end = self._find_close_tag_end(self._buffer, name)
            if close_end == -1:
                break

            xml = self._buffer[:close_end]
            self._buffer = self._buffer[close_end:]
            parsed = try_parse_mcp_tool_call_xml(xml, name)
            if parsed is None:
                out.append(BridgeSegment("text", text=xml))
            else:
                out.append(BridgeSegment("tool", name=parsed[0], input=parsed[1]))

        return out

    def flush(self) -> list[BridgeSegment]:
        out: list[BridgeSegment] = []
        if self._buffer:
            out.append(BridgeSegment("text", text=self._buffer))
        self._buffer = ""
        return out

    def _find_next_tool_start(self, text: str) -> tuple[int, str | None]:
        best = -1
        best_name: str | None = None
        for name, open_tag in zip(self._names, self._open_tags):
            search_from = 0
            while True:
                idx = text.find(open_tag, search_from)
                if idx == -1:
                    break
                boundary = text[idx + len(open_tag) : idx + len(open_tag) + 1]
                if not boundary or not (boundary in ">/" or boundary.isspace()):
                    search_from = idx + 1
                    continue
                if best == -1 or idx < best:
                    best = idx
                    best_name = name
                break
        return best, best_name

    @staticmethod
    def _find_close_tag_end(text: str, name: str) -> int:
        needle = f"</{name}"
        search_from = 0
        while True:
            idx = text.find(needle, search_from)
            if idx == -1:
                return -1
            after = idx + len(needle)
            if after >= len(text):
                return -1
            ch = text[after]
            if not (ch == ">" or ch.isspace()):
                search_from = idx + 1
                continue
            gt = text.find(">", after)
            if gt == -1:
                return -1
            if text[after:gt].strip():
                search_from = idx + 1
                continue
            return gt + 1

    def _split_partial_tag(self, text: str) -> tuple[str, str]:
        last_lt = text.rfind("<")
        if last_lt == -1:
            return text, ""
        tail = text[last_lt:]
        for tag in (*self._open_tags, *self._close_tags):
            if tag.startswith(tail):
                return text[:last_lt], tail
        return text, ""
