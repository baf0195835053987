import asyncio
import json

from protokollkoppler.config import KopplerConfig
from protokollkoppler.request_transcoder import transform_claude_request
from protokollkoppler.response_transcoder import to_claude_usage, transcode_json, transcode_stream
from protokollkoppler.signature_store import ThoughtSignatureStore
from protokollkoppler.sse import iter_sse_payloads


def _chunk(parts: list[dict], **candidate_fields) -> dict:
    candidate = {"content": {"role": "model", "parts": parts}, **candidate_fields}
    return {"response": {"responseId": "resp_1", "modelVersion": "backend-model", "candidates": [candidate]}}


def _run_stream(chunks: list[dict], *, done: bool = False, **kwargs) -> list[dict]:
    async def lines():
        for chunk in chunks:
            yield f"data: {json.dumps(chunk)}"
            yield ""
        if done:
            yield "data: [DONE]"

    async def collect() -> list[bytes]:
        return [event async for event in transcode_stream(lines(), **kwargs)]

    raw = b"".join(asyncio.run(collect())).decode("utf-8")
    return list(iter_sse_payloads(raw))


def _types(events: list[dict]) -> list[str]:
    return [event["type"] for event in events]


def _block_starts(events: list[dict]) -> list[dict]:
    return [event["content_block"] for event in events if event["type"] == "content_block_start"]


def test_streamed_text_produces_message_lifecycle() -> None:
    events = _run_stream(
        [
            _chunk([{"text": "Hel"}]),
            _chunk([{"text": "lo"}], finishReason="STOP"),
        ]
    )

    assert _types(events) == [
        "message_start",
        "content_block_start",
        "content_block_delta",
        "content_block_delta",
        "content_block_stop",
        "message_delta",
        "message_stop",
    ]
    assert events[0]["message"]["id"] == "resp_1"
    assert events[0]["message"]["model"] == "backend-model"
    assert "".join(e["delta"]["text"] for e in events if e["type"] == "content_block_delta") == "Hello"
    assert events[-2]["delta"]["stop_reason"] == "end_turn"


def test_usage_and_max_tokens_stop_reason() -> None:
    events = _run_stream(
        [
            _chunk([{"text": "x"}]),
            {
                "response": {
                    "candidates": [{"content": {"parts": []}, "finishReason": "MAX_TOKENS"}],
                    "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 5, "totalTokenCount": 18},
                }
            },
        ]
    )

    message_delta = events[-2]
    assert message_delta["delta"]["stop_reason"] == "max_tokens"
    assert message_delta["usage"] == {"input_tokens": 10, "output_tokens": 8}


def test_to_claude_usage_falls_back_to_candidates_plus_thoughts() -> None:
    assert to_claude_usage({"promptTokenCount": 10, "candidatesTokenCount": 3, "thoughtsTokenCount": 2}) == {
        "input_tokens": 10,
        "output_tokens": 5,
    }
    assert to_claude_usage(None) == {"input_tokens": 0, "output_tokens": 0}


def test_each_signature_lands_on_the_block_of_its_part() -> None:
    ledger = ThoughtSignatureStore()
    events = _run_stream(
        [
            _chunk([{"text": "pondering", "thought": True, "thoughtSignature": "SIG_THINK"}]),
            _chunk([{"functionCall": {"name": "read", "args": {"p": 1}}, "thoughtSignature": "SIG_CALL"}]),
            _chunk([{"text": "", "thoughtSignature": "SIG_EMPTY"}], finishReason="STOP"),
        ],
        signatures=ledger,
    )

    starts = _block_starts(events)
    assert [block["type"] for block in starts] == ["thinking", "tool_use", "thinking"]

    signatures_by_index: dict[int, list[str]] = {}
    for event in events:
        if event["type"] == "content_block_delta" and event["delta"]["type"] == "signature_delta":
            signatures_by_index.setdefault(event["index"], []).append(event["delta"]["signature"])
        if event["type"] == "content_block_start" and event["content_block"].get("signature"):
            signatures_by_index.setdefault(event["index"], []).append(event["content_block"]["signature"])

    assert signatures_by_index == {0: ["SIG_THINK"], 1: ["SIG_CALL"], 2: ["SIG_EMPTY"]}
    assert starts[2]["thinking"] == ""
    assert ledger.get(starts[1]["id"]) == "SIG_CALL"
    assert starts[1]["id"].startswith("toolu_vrtx_")
    assert events[-2]["delta"]["stop_reason"] == "tool_use"


def test_text_signature_is_dropped_without_reasoning() -> None:
    events = _run_stream([_chunk([{"text": "hi", "thoughtSignature": "SIG_X"}], finishReason="STOP")])

    assert "SIG_X" not in json.dumps(events)
    assert [block["type"] for block in _block_starts(events)] == ["text"]


def test_done_marker_finishes_exactly_once() -> None:
    events = _run_stream([_chunk([{"text": "partial"}])], done=True)

    assert _types(events).count("message_stop") == 1
    assert _types(events).count("message_delta") == 1
    assert events[-2]["delta"]["stop_reason"] == "end_turn"


def test_override_model_replaces_backend_model_name() -> None:
    events = _run_stream([_chunk([{"text": "x"}], finishReason="STOP")], override_model="claude-opus-4-5")

    assert events[0]["message"]["model"] == "claude-opus-4-5"


def test_undecodable_chunks_are_skipped() -> None:
    async def lines():
        yield "data: {not json"
        yield f"data: {json.dumps(_chunk([{'text': 'ok'}], finishReason='STOP'))}"

    async def collect() -> list[bytes]:
        return [event async for event in transcode_stream(lines())]

    events = list(iter_sse_payloads(b"".join(asyncio.run(collect())).decode()))
    assert _types(events)[0] == "message_start"
    assert _types(events)[-1] == "message_stop"


def test_grounded_stream_emits_search_blocks_in_fixed_order() -> None:
    events = _run_stream(
        [
            _chunk([{"text": "Answer "}], groundingMetadata={"webSearchQueries": ["q1"]}),
            _chunk(
                [{"text": "text"}],
                finishReason="STOP",
                groundingMetadata={
                    "webSearchQueries": ["q1"],
                    "groundingChunks": [{"web": {"uri": "https://example.com/a", "title": "A"}}],
                    "groundingSupports": [{"segment": {"text": "Answer"}, "groundingChunkIndices": [0]}],
                },
            ),
        ]
    )

    starts = _block_starts(events)
    assert [block["type"] for block in starts] == [
        "thinking",
        "server_tool_use",
        "web_search_tool_result",
        "text",
        "text",
    ]
    assert starts[1]["name"] == "web_search"
    assert starts[2]["tool_use_id"] == starts[1]["id"]
    assert starts[2]["content"][0]["url"] == "https://example.com/a"

    deltas = [event for event in events if event["type"] == "content_block_delta"]
    query = [d for d in deltas if d["delta"]["type"] == "input_json_delta"]
    assert json.loads(query[0]["delta"]["partial_json"]) == {"query": "q1"}
    citations = [d for d in deltas if d["delta"]["type"] == "citations_delta"]
    assert citations[0]["index"] == 3
    assert citations[0]["delta"]["citation"]["cited_text"] == "Answer"
    answer = "".join(d["delta"]["text"] for d in deltas if d["delta"]["type"] == "text_delta" and d["index"] == 4)
    assert answer == "Answer text"

    assert events[-2]["usage"]["server_tool_use"] == {"web_search_requests": 1}


def test_bridge_markup_in_streamed_text_becomes_tool_use() -> None:
    events = _run_stream(
        [
            _chunk([{"text": "Look <mcp__srv"}]),
            _chunk([{"text": '__search>{"q":"x"}</mcp__srv__search> done'}], finishReason="STOP"),
        ],
        bridge_tool_names=["mcp__srv__search"],
    )

    starts = _block_starts(events)
    assert [block["type"] for block in starts] == ["text", "tool_use", "text"]
    assert starts[1]["name"] == "mcp__srv__search"
    json_deltas = [
        event["delta"]["partial_json"]
        for event in events
        if event["type"] == "content_block_delta" and event["delta"]["type"] == "input_json_delta"
    ]
    assert [json.loads(item) for item in json_deltas] == [{"q": "x"}]
    texts = [
        event["delta"]["text"]
        for event in events
        if event["type"] == "content_block_delta" and event["delta"]["type"] == "text_delta"
    ]
    assert texts == ["Look ", " done"]
    assert events[-2]["delta"]["stop_reason"] == "tool_use"


def test_non_streaming_response_keeps_signatures_on_their_blocks() -> None:
    ledger = ThoughtSignatureStore()
    payload = _chunk(
        [
            {"text": "t", "thought": True, "thoughtSignature": "SIG_THINK"},
            {"text": "answer"},
            {"functionCall": {"name": "read", "args": {"p": 1}, "id": "call_1"}, "thoughtSignature": "SIG_CALL"},
        ],
        finishReason="STOP",
    )
    payload["response"]["usageMetadata"] = {"promptTokenCount": 4, "totalTokenCount": 9}

    message = asyncio.run(transcode_json(payload, signatures=ledger))

    assert message["id"] == "resp_1"
    assert message["content"] == [
        {"type": "thinking", "thinking": "t", "signature": "SIG_THINK"},
        {"type": "text", "text": "answer"},
        {"type": "tool_use", "id": "call_1", "name": "read", "input": {"p": 1}, "signature": "SIG_CALL"},
    ]
    assert message["stop_reason"] == "tool_use"
    assert message["usage"] == {"input_tokens": 4, "output_tokens": 5}
    assert ledger.get("call_1") == "SIG_CALL"


def test_non_streaming_empty_text_signature_gets_synthetic_thinking_block() -> None:
    payload = _chunk(
        [{"text": "t", "thought": True}, {"text": "answer"}, {"text": "", "thoughtSignature": "SIG_EMPTY"}],
        finishReason="STOP",
    )

    message = asyncio.run(transcode_json(payload, override_model="claude-sonnet-4-5"))

    assert message["model"] == "claude-sonnet-4-5"
    assert message["content"] == [
        {"type": "thinking", "thinking": "t"},
        {"type": "text", "text": "answer"},
        {"type": "thinking", "thinking": "", "signature": "SIG_EMPTY"},
    ]


def test_non_streaming_grounded_answer() -> None:
    payload = _chunk(
        [{"text": "Grounded answer"}],
        finishReason="STOP",
        groundingMetadata={
            "webSearchQueries": ["q1"],
            "groundingChunks": [{"web": {"uri": "https://example.com/a", "title": "A"}}],
            "groundingSupports": [{"segment": {"text": "Grounded"}, "groundingChunkIndices": [0]}],
        },
    )

    message = asyncio.run(transcode_json(payload))

    assert [block["type"] for block in message["content"]] == [
        "server_tool_use",
        "web_search_tool_result",
        "text",
        "text",
    ]
    assert message["content"][0]["input"] == {"query": "q1"}
    assert message["content"][2]["citations"][0]["url"] == "https://example.com/a"
    assert message["content"][3]["text"] == "Grounded answer"
    assert message["usage"]["server_tool_use"] == {"web_search_requests": 1}


def test_plain_text_survives_the_round_trip_unchanged() -> None:
    text = "Hello, wörld!\n  indented\ttab ✓"
    body = transform_claude_request(
        {"model": "claude-sonnet-4-5", "messages": [{"role": "user", "content": [{"type": "text", "text": text}]}]},
        "",
        KopplerConfig(),
        instruction_text="SYS",
    )
    sent = body["request"]["contents"][0]["parts"][0]["text"]

    message = asyncio.run(transcode_json(_chunk([{"text": sent}], finishReason="STOP")))

    assert message["content"] == [{"type": "text", "text": text}]


def test_second_reasoning_signature_opens_a_new_thinking_block() -> None:
    events = _run_stream(
        [
            _chunk([{"text": "first", "thought": True, "thoughtSignature": "SIG_A"}]),
            _chunk([{"text": "second", "thought": True, "thoughtSignature": "SIG_B"}]),
            _chunk([{"text": "answer"}], finishReason="STOP"),
        ]
    )

    assert [block["type"] for block in _block_starts(events)] == ["thinking", "thinking", "text"]
    signatures = [
        (event["index"], event["delta"]["signature"])
        for event in events
        if event["type"] == "content_block_delta" and event["delta"]["type"] == "signature_delta"
    ]
    assert signatures == [(0, "SIG_A"), (1, "SIG_B")]

    message = asyncio.run(
        transcode_json(
            _chunk(
                [
                    {"text": "first", "thought": True, "thoughtSignature": "SIG_A"},
                    {"text": "second", "thought": True, "thoughtSignature": "SIG_B"},
                    {"text": "answer"},
                ],
                finishReason="STOP",
            )
        )
    )
    assert message["content"] == [
        {"type": "thinking", "thinking": "first", "signature": "SIG_A"},
        {"type": "thinking", "thinking": "second", "signature": "SIG_B"},
        {"type": "text", "text": "answer"},
    ]
