import asyncio
import json

import httpx
import pytest

from protokollkoppler.backend import BackendClient, relay_headers
from protokollkoppler.config import KopplerConfig


def _make_cfg(**overrides: object) -> KopplerConfig:
    raw = {
        "backend_base_url": "http://127.0.0.1:10000",
        "backend_project_id": "proj-1",
        "backend_retry_interval_ms": 0,
    }
    raw.update(overrides)
    return KopplerConfig.model_validate(raw)


class _FakeClient:
    """Stands in for httpx.AsyncClient; replies come from a scripted list."""

    def __init__(self, replies: list[object]) -> None:
        self.replies = list(replies)
        self.requests: list[httpx.Request] = []
        self.closed = False

    def build_request(self, method: str, url: str, **kwargs) -> httpx.Request:
        return httpx.Request(method, "http://127.0.0.1:10000" + url, **kwargs)

    async def send(self, request: httpx.Request, **_kwargs) -> httpx.Response:
        self.requests.append(request)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply  # type: ignore[return-value]

    async def aclose(self) -> None:
        self.closed = True


def _connect_error() -> httpx.ConnectError:
    return httpx.ConnectError("backend down", request=httpx.Request("POST", "http://127.0.0.1:10000"))


def _body_factory(seen: list[str]):
    def build(project: str) -> dict:
        seen.append(project)
        return {"project": project, "requestId": f"agent-{len(seen)}"}

    return build


def test_backend_connect_retries_defaults_to_zero() -> None:
    assert _make_cfg().backend_connect_retries == 0


def test_no_retry_when_backend_connect_retries_is_zero() -> None:
    fake = _FakeClient([_connect_error(), httpx.Response(200, json={})])
    client = BackendClient(_make_cfg(), client=fake)  # type: ignore[arg-type]

    with pytest.raises(httpx.ConnectError):
        asyncio.run(client.call("generateContent", model="m", build_body=_body_factory([])))
    assert len(fake.requests) == 1


def test_connect_errors_are_retried_with_a_fresh_body() -> None:
    fake = _FakeClient([_connect_error(), _connect_error(), httpx.Response(200, json={"ok": True})])
    client = BackendClient(_make_cfg(backend_connect_retries=2), client=fake)  # type: ignore[arg-type]
    seen: list[str] = []

    async def run() -> object:
        response = await client.call("generateContent", model="m", build_body=_body_factory(seen))
        try:
            return await response.json()
        finally:
            await response.aclose()

    assert asyncio.run(run()) == {"ok": True}
    assert seen == ["proj-1", "proj-1", "proj-1"]
    request_ids = [json.loads(request.content)["requestId"] for request in fake.requests]
    assert request_ids == ["agent-1", "agent-2", "agent-3"]


def test_overload_status_is_retried_then_relayed_when_exhausted() -> None:
    fake = _FakeClient([httpx.Response(503, text="busy"), httpx.Response(429, text="slow down")])
    client = BackendClient(_make_cfg(backend_connect_retries=1), client=fake)  # type: ignore[arg-type]

    response = asyncio.run(client.call("generateContent", model="m", build_body=_body_factory([])))

    assert len(fake.requests) == 2
    assert response.status_code == 429
    assert response.ok is False


def test_client_errors_are_not_retried() -> None:
    fake = _FakeClient([httpx.Response(400, json={"error": "bad"}), httpx.Response(200, json={})])
    client = BackendClient(_make_cfg(backend_connect_retries=3), client=fake)  # type: ignore[arg-type]

    response = asyncio.run(client.call("generateContent", model="m", build_body=_body_factory([])))

    assert response.status_code == 400
    assert len(fake.requests) == 1


def test_request_path_and_headers() -> None:
    fake = _FakeClient([httpx.Response(200, headers={"content-type": "text/event-stream"}, text="")])
    client = BackendClient(_make_cfg(backend_api_key="secret"), client=fake)  # type: ignore[arg-type]

    response = asyncio.run(
        client.call("streamGenerateContent", model="m", query_string="?alt=sse", build_body=_body_factory([]))
    )

    request = fake.requests[0]
    assert request.url.path == "/v1internal:streamGenerateContent"
    assert request.url.query == b"alt=sse"
    assert request.headers["authorization"] == "Bearer secret"
    assert request.headers["user-agent"] == "antigravity/1.11.3 linux/amd64"
    assert response.content_type == "text/event-stream"


def test_fetch_available_models_returns_model_table() -> None:
    models = {"claude-sonnet-4-5": {"displayName": "Claude Sonnet 4.5"}}
    fake = _FakeClient([httpx.Response(200, json={"models": models})])
    client = BackendClient(_make_cfg(), client=fake)  # type: ignore[arg-type]

    assert asyncio.run(client.fetch_available_models()) == models
    assert json.loads(fake.requests[0].content) == {"project": "proj-1"}

    asyncio.run(client.close())
    assert fake.closed is True


def test_fetch_available_models_raises_on_backend_error() -> None:
    fake = _FakeClient([httpx.Response(403, text="denied")])
    client = BackendClient(_make_cfg(), client=fake)  # type: ignore[arg-type]

    with pytest.raises(RuntimeError, match="status=403"):
        asyncio.run(client.fetch_available_models())


def test_relay_headers_drop_framing() -> None:
    headers = httpx.Headers(
        {"Content-Type": "application/json", "Content-Length": "12", "Content-Encoding": "gzip", "X-Trace": "t"}
    )

    relayed = {key.lower(): value for key, value in relay_headers(headers).items()}
    assert relayed == {"content-type": "application/json", "x-trace": "t"}
