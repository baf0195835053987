"""Switch marker and the system-prompt hint that asks for it.

With the model-switch workaround enabled, claude-family models are told not
to call MCP tools themselves and to answer with a fixed marker instead. The
orchestrator watches for that marker and retries on the substitute model.
"""

from __future__ import annotations

import re
from typing import Any

from .mcp_bridge import MCP_TOOL_PREFIX, get_mcp_tool_names

MCP_SWITCH_SIGNAL = "PROTOKOLLKOPPLER_SWITCH_TO_MCP_MODEL"

_SEPARATOR_CLEANUPS = (
    (re.compile(r",\s*,"), ", "),
    (re.compile(r",\s*\n"), "\n"),
    (re.compile(r",\s*\)"), ")"),
    (re.compile(r"\(\s*,"), "("),
    (re.compile(r"\s+,"), ","),
    (re.compile(r",\s*$", re.MULTILINE), ""),
    (re.compile(r" {2,}"), " "),
)


def has_mcp_tools(claude_req: dict[str, Any]) -> bool:
    return bool(get_mcp_tool_names(claude_req.get("tools")))


def mcp_server_patterns(claude_req: dict[str, Any]) -> str:
    """Summarize declared MCP tools as `mcp__<server>__*` patterns."""
    servers = set()
    for name in get_mcp_tool_names(claude_req.get("tools")):
        parts = name.split("__")
        if len(parts) >= 3 and parts[0] == "mcp" and parts[1]:
            servers.add(parts[1])
    if not servers:
        return f"{MCP_TOOL_PREFIX}*"
    return ", ".join(f"{MCP_TOOL_PREFIX}{server}__*" for server in sorted(servers))


def build_switch_hint(claude_req: dict[str, Any]) -> str:
    patterns = mcp_server_patterns(claude_req)
    return (
        f"IMPORTANT: whenever you need any MCP tool (names starting with {MCP_TOOL_PREFIX}, e.g. {patterns}), "
        "do not call it yourself; calling MCP tools directly breaks this session. "
        "Instead output exactly the following line and nothing else:\n"
        f"{MCP_SWITCH_SIGNAL}\n"
        "This also applies if you planned to split the MCP work into steps with a todo list: "
        "output exactly this line first and nothing else:\n"
        f"{MCP_SWITCH_SIGNAL}"
    )


def inject_switch_hint(
    text: str,
    claude_req: dict[str, Any],
    *,
    switch_enabled: bool,
    is_claude_target: bool,
    injected: bool,
) -> tuple[str, bool]:
    """Strip MCP tool names from one system text and append the hint once.

    Returns the new text and whether the hint has been injected so far.
    """
    if not switch_enabled or not is_claude_target:
        return text, injected
    if not has_mcp_tools(claude_req):
        return text, injected
    if not isinstance(text, str) or MCP_TOOL_PREFIX not in text:
        return text, injected

    out = text
    # Longest first so no name is stripped as the prefix of another.
    for name in sorted(get_mcp_tool_names(claude_req.get("tools")), key=len, reverse=True):
        out = out.replace(name, "")
    for pattern, replacement in _SEPARATOR_CLEANUPS:
        out = pattern.sub(replacement, out)

    if injected:
        return out, True
    return f"{out}\n\n{build_switch_hint(claude_req)}", True
