from protokollkoppler.mcp_bridge import (
    BridgeSegment,
    McpXmlStreamParser,
    bridge_active,
    build_mcp_tool_call_xml,
    build_mcp_tool_result_xml,
    build_mcp_xml_system_prompt,
    get_mcp_tool_names,
    parse_xml_to_object,
    try_parse_mcp_tool_call_xml,
)

TOOL = "mcp__srv__search"


def _collapse(segments: list[BridgeSegment]) -> list[tuple]:
    """Merge adjacent text segments so chunking does not affect comparison."""
    out: list[tuple] = []
    for segment in segments:
        if segment.kind == "text":
            if not segment.text:
                continue
            if out and out[-1][0] == "text":
                out[-1] = ("text", out[-1][1] + segment.text)
            else:
                out.append(("text", segment.text))
        else:
            out.append(("tool", segment.name, segment.input))
    return out


def _feed(parser: McpXmlStreamParser, chunks: list[str]) -> list[tuple]:
    segments: list[BridgeSegment] = []
    for chunk in chunks:
        segments.extend(parser.push_text(chunk))
    segments.extend(parser.flush())
    return _collapse(segments)


def test_tool_markup_is_recovered_at_every_split_point() -> None:
    text = f'Before <b>bold</b> <{TOOL}>{{"q":"x < y"}}</{TOOL}> after'
    expected = [("text", "Before <b>bold</b> "), ("tool", TOOL, {"q": "x < y"}), ("text", " after")]

    assert _feed(McpXmlStreamParser([TOOL]), [text]) == expected
    for split in range(1, len(text)):
        chunks = [text[:split], text[split:]]
        assert _feed(McpXmlStreamParser([TOOL]), chunks) == expected, chunks


def test_character_by_character_stream() -> None:
    text = f"a<{TOOL}><q>1</q></{TOOL}>b"

    assert _feed(McpXmlStreamParser([TOOL]), list(text)) == [
        ("text", "a"),
        ("tool", TOOL, {"q": "1"}),
        ("text", "b"),
    ]


def test_partial_tag_is_held_until_disambiguated() -> None:
    parser = McpXmlStreamParser([TOOL])

    assert parser.push_text("hello <mcp__s") == [BridgeSegment("text", text="hello ")]
    assert parser.pending == "<mcp__s"
    assert parser.push_text("omething else") == [BridgeSegment("text", text="<mcp__something else")]
    assert parser.pending == ""


def test_unknown_tool_names_stay_text() -> None:
    parser = McpXmlStreamParser([TOOL])

    assert _feed(parser, ["<mcp__other>{}</mcp__other>"]) == [("text", "<mcp__other>{}</mcp__other>")]


def test_longer_tool_name_wins() -> None:
    parser = McpXmlStreamParser(["mcp__a", "mcp__a_b"])

    assert _feed(parser, ["<mcp__a_b>{}</mcp__a_b>"]) == [("tool", "mcp__a_b", {})]


def test_unterminated_block_is_released_on_flush() -> None:
    parser = McpXmlStreamParser([TOOL])

    assert parser.push_text(f"<{TOOL}>{{") == []
    assert parser.flush() == [BridgeSegment("text", text=f"<{TOOL}>{{")]


def test_try_parse_variants() -> None:
    assert try_parse_mcp_tool_call_xml(f"<{TOOL}></{TOOL}>", TOOL) == (TOOL, {})
    assert try_parse_mcp_tool_call_xml(f"<{TOOL}>[1, 2]</{TOOL}>", TOOL) == (TOOL, [1, 2])
    assert try_parse_mcp_tool_call_xml(f"<{TOOL}>just words</{TOOL}>", TOOL) == (TOOL, {"raw": "just words"})
    assert try_parse_mcp_tool_call_xml(f"<{TOOL}>{{}}", TOOL) is None
    assert try_parse_mcp_tool_call_xml("<mcp__x>{}</mcp__x>", TOOL) is None


def test_parse_xml_to_object_collects_repeats_and_text() -> None:
    assert parse_xml_to_object("<r><a>1</a><a>2</a>tail</r>") == {"r": {"a": ["1", "2"], "_text": "tail"}}
    assert parse_xml_to_object("<r><e/></r>") == {"r": {"e": ""}}


def test_builders_and_activation() -> None:
    tools = [{"name": TOOL, "description": "Search", "input_schema": {"type": "object"}}, {"name": "read"}]

    assert get_mcp_tool_names(tools) == [TOOL]
    assert bridge_active(True, tools) is True
    assert bridge_active(False, tools) is False
    assert bridge_active(True, [{"name": "read"}]) is False

    assert build_mcp_tool_call_xml(TOOL, None) == f"<{TOOL}>{{}}</{TOOL}>"
    assert build_mcp_tool_result_xml(TOOL, "toolu_1", "boom", is_error=True) == (
        '<mcp_tool_result>{"name":"mcp__srv__search","tool_use_id":"toolu_1","result":"boom","is_error":true}'
        "</mcp_tool_result>"
    )

    prompt = build_mcp_xml_system_prompt(tools)
    assert f"- {TOOL}: Search" in prompt
    assert "read" not in prompt.split("Available MCP tools")[1]
    assert build_mcp_xml_system_prompt([]) == ""
