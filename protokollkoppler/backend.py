"""Async HTTP client for the backend's wrapper (`v1internal`) API."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Callable

import httpx

from .config import KopplerConfig
from .json_helpers import to_bounded_json

LOG = logging.getLogger(__name__)

# Hop-by-hop and framing headers that must not be relayed to clients.
DROPPED_RELAY_HEADERS = frozenset({"content-encoding", "content-length", "transfer-encoding", "connection"})


def relay_headers(headers: httpx.Headers | dict[str, str]) -> dict[str, str]:
    """Copy backend headers for relaying, minus the framing ones."""
    return {key: value for key, value in headers.items() if key.lower() not in DROPPED_RELAY_HEADERS}


class BackendResponse:
    """One open backend response. Callers must `aclose()` it."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def ok(self) -> bool:
        return 200 <= self._response.status_code < 300

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    @property
    def content_type(self) -> str:
        return self._response.headers.get("content-type", "").lower()

    def aiter_lines(self) -> AsyncIterator[str]:
        return self._response.aiter_lines()

    async def aread(self) -> bytes:
        return await self._response.aread()

    async def json(self) -> Any:
        return json.loads(await self.aread())

    async def aclose(self) -> None:
        # Closing must finish even when the caller is being cancelled.
        await asyncio.shield(self._response.aclose())


class BackendClient:
    """Thin async client; every call opens a streamed response."""

    def __init__(self, cfg: KopplerConfig, *, client: httpx.AsyncClient | None = None) -> None:
        self.cfg = cfg
        self._base_url = cfg.backend_base_url.rstrip("/")
        timeout = cfg.backend_timeout_seconds
        self._timeout = httpx.Timeout(connect=10.0, read=timeout, write=120.0, pool=10.0)
        self._client = client or httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": self.cfg.backend_user_agent}
        if self.cfg.backend_api_key:
            headers["Authorization"] = f"Bearer {self.cfg.backend_api_key}"
        return headers

    def _retry_interval_seconds(self) -> float:
        return max(0.0, int(self.cfg.backend_retry_interval_ms or 0) / 1000.0)

    @staticmethod
    def _is_retryable_status(status: int) -> bool:
        return status == 429 or status >= 500

    async def call(
        self,
        method: str,
        *,
        model: str,
        query_string: str = "",
        build_body: Callable[[str], dict[str, Any]],
    ) -> BackendResponse:
        """POST one wrapper request and return the open response.

        `build_body` receives the project id and runs again for every attempt,
        so each retry carries a fresh request id. Transport errors and
        429/5xx statuses are retried `backend_connect_retries` times; after
        that the last response (or error) is handed to the caller.
        """
        retries = int(self.cfg.backend_connect_retries or 0)
        retry_delay = self._retry_interval_seconds()
        path = f"/v1internal:{method}{query_string}"
        attempt = 1
        while True:
            body = build_body(self.cfg.backend_project_id)
            started = time.monotonic()
            LOG.debug(
                "backend request method=%s model=%s attempt=%s retries=%s payload=%s",
                method,
                model,
                attempt,
                retries,
                to_bounded_json(body),
            )
            try:
                response = await self._client.send(
                    self._client.build_request("POST", path, headers=self._headers(), json=body),
                    stream=True,
                )
            except httpx.TransportError as exc:
                if attempt > retries:
                    raise
                LOG.warning(
                    "backend request failed method=%s attempt=%s retries=%s retry_in=%.3fs error=%s",
                    method,
                    attempt,
                    retries,
                    retry_delay,
                    exc,
                )
            else:
                LOG.debug(
                    "backend response method=%s status=%s elapsed=%.3fs",
                    method,
                    response.status_code,
                    time.monotonic() - started,
                )
                if not self._is_retryable_status(response.status_code) or attempt > retries:
                    return BackendResponse(response)
                LOG.warning(
                    "backend returned status=%s method=%s attempt=%s retries=%s retry_in=%.3fs",
                    response.status_code,
                    method,
                    attempt,
                    retries,
                    retry_delay,
                )
                await asyncio.shield(response.aclose())
            if retry_delay > 0:
                await asyncio.sleep(retry_delay)
            attempt += 1

    async def count_tokens(self, body: dict[str, Any], *, model: str) -> BackendResponse:
        return await self.call("countTokens", model=model, build_body=lambda _project: body)

    async def fetch_available_models(self) -> dict[str, Any]:
        """Return the backend's model table keyed by model id."""
        response = await self.call(
            "fetchAvailableModels",
            model="",
            build_body=lambda project: {"project": project},
        )
        try:
            if not response.ok:
                body = await response.aread()
                raise RuntimeError(
                    f"fetchAvailableModels failed status={response.status_code} body={body[:500]!r}"
                )
            data = await response.json()
        finally:
            await response.aclose()
        models = data.get("models") if isinstance(data, dict) else None
        return models if isinstance(models, dict) else {}
