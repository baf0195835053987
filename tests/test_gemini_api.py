import asyncio
import json

from protokollkoppler.config import KopplerConfig
from protokollkoppler.gemini_api import GeminiApi, normalize_tools, rewrite_stream_line, unwrap_response, wrap_request


def _wrap(body: dict, model_name: str, cfg: KopplerConfig | None = None) -> dict:
    return wrap_request(body, project_id="proj-1", model_name=model_name, cfg=cfg or KopplerConfig(), instruction_text="SYS")


def test_claude_model_with_empty_generation_config_gets_thinking_defaults() -> None:
    wrapped = _wrap(
        {
            "contents": [{"role": "user", "parts": [{"text": "hi"}]}],
            "toolConfig": {"functionCallingConfig": {"mode": "AUTO"}},
            "systemInstruction": {"parts": [{"text": "client system"}]},
        },
        "claude-sonnet-4-5",
    )

    inner = wrapped["request"]
    assert wrapped["project"] == "proj-1"
    assert wrapped["model"] == "claude-sonnet-4-5"
    assert wrapped["requestType"] == "agent"
    assert wrapped["requestId"].startswith("agent-")
    assert inner["toolConfig"]["functionCallingConfig"]["mode"] == "VALIDATED"
    assert inner["generationConfig"] == {
        "thinkingConfig": {"includeThoughts": True, "thinkingBudget": 31999},
        "maxOutputTokens": 64000,
    }
    assert {item["threshold"] for item in inner["safetySettings"]} == {"OFF"}
    assert inner["systemInstruction"] == {"role": "user", "parts": [{"text": "SYS"}]}


def test_claude_include_thoughts_without_budget_gets_default() -> None:
    wrapped = _wrap(
        {"generationConfig": {"thinkingConfig": {"includeThoughts": True, "thinkingBudget": 0}}},
        "claude-sonnet-4-5",
    )

    assert wrapped["request"]["generationConfig"]["thinkingConfig"]["thinkingBudget"] == 31999


def test_pro_preview_thinking_level_selects_variant() -> None:
    wrapped = _wrap(
        {"generationConfig": {"thinkingConfig": {"thinkingLevel": "HIGH", "includeThoughts": True}}},
        "gemini-3-pro-preview",
    )

    assert wrapped["model"] == "gemini-3-pro-high"
    assert wrapped["request"]["generationConfig"]["thinkingConfig"] == {"includeThoughts": True, "thinkingBudget": -1}
    assert wrapped["request"]["generationConfig"]["maxOutputTokens"] == 65535
    assert wrapped["request"]["systemInstruction"]["parts"] == [{"text": "SYS"}]

    low = _wrap({"generationConfig": {"thinkingConfig": {"thinkingLevel": "low"}}}, "gemini-3-pro-preview")
    assert low["model"] == "gemini-3-pro-low"
    assert "thinkingLevel" not in low["request"]["generationConfig"]["thinkingConfig"]


def test_flash_budget_is_clamped_and_client_system_kept() -> None:
    wrapped = _wrap(
        {
            "systemInstruction": {"parts": [{"text": "client system"}]},
            "generationConfig": {"thinkingConfig": {"thinkingBudget": 50000}},
        },
        "gemini-3-flash-preview",
    )

    assert wrapped["model"] == "gemini-3-flash"
    assert wrapped["request"]["generationConfig"]["thinkingConfig"]["thinkingBudget"] == 24576
    assert wrapped["request"]["systemInstruction"] == {"parts": [{"text": "client system"}]}
    assert "safetySettings" not in wrapped["request"]


def test_search_tool_routes_to_search_model() -> None:
    wrapped = _wrap({"tools": [{"googleSearch": {}}]}, "gemini-3-flash")

    assert wrapped["requestType"] == "web_search"
    assert wrapped["model"] == "gemini-2.5-flash"


def test_envelope_bodies_are_unwrapped_and_input_is_not_mutated() -> None:
    body = {"request": {"contents": [], "generationConfig": {"thinkingConfig": {"thinkingBudget": 99999}}}}

    wrapped = _wrap(body, "gemini-2.5-flash")

    assert wrapped["request"]["contents"] == []
    assert wrapped["request"]["generationConfig"]["thinkingConfig"]["thinkingBudget"] == 24576
    assert body["request"]["generationConfig"]["thinkingConfig"]["thinkingBudget"] == 99999


def test_normalize_tools_converts_json_schema_declarations() -> None:
    tools = [
        {
            "functionDeclarations": [
                {
                    "name": "read",
                    "parametersJsonSchema": {
                        "type": "object",
                        "properties": {"path": {"type": "string", "default": "."}},
                        "additionalProperties": False,
                    },
                },
                {"name": "noop", "parameters": {"type": "object"}},
            ]
        },
        {"googleSearch": {}},
    ]

    assert normalize_tools(tools) == [
        {
            "functionDeclarations": [
                {"name": "read", "parameters": {"type": "OBJECT", "properties": {"path": {"type": "STRING"}}}},
                {"name": "noop", "parameters": {"type": "OBJECT"}},
            ]
        },
        {"googleSearch": {}},
    ]


def test_unwrap_response_carries_trace_id() -> None:
    assert unwrap_response({"response": {"candidates": []}, "traceId": "t1"}) == {"candidates": [], "traceId": "t1"}
    assert unwrap_response({"response": {"traceId": "inner"}, "traceId": "outer"}) == {"traceId": "inner"}
    assert unwrap_response({"candidates": []}) == {"candidates": []}


def test_rewrite_stream_line() -> None:
    assert rewrite_stream_line("") is None
    assert rewrite_stream_line("data: [DONE]") == b"data: [DONE]\n\n"
    assert rewrite_stream_line(": keepalive") == b": keepalive\n"

    rewritten = rewrite_stream_line('data: {"response": {"candidates": [{"index": 0}]}, "traceId": "t"}')
    assert rewritten is not None and rewritten.endswith(b"\n\n")
    assert json.loads(rewritten[len(b"data: ") :]) == {"candidates": [{"index": 0}], "traceId": "t"}


def test_unsupported_action_and_bad_body() -> None:
    api = GeminiApi(KopplerConfig(), backend=None)  # type: ignore[arg-type]

    not_found = asyncio.run(api.handle_generate("gemini-3-flash:embedContent", {}))
    assert not_found.status == 404
    assert not_found.body["error"]["status"] == "NOT_FOUND"

    bad = asyncio.run(api.handle_generate("gemini-3-flash:generateContent", ["not", "an", "object"]))
    assert bad.status == 400
    assert bad.body["error"]["status"] == "INVALID_ARGUMENT"
