"""Built-in search (grounding) results in message-protocol form.

Grounded answers carry search queries, result chunks and support spans.
They are rendered as a `server_tool_use` block, a `web_search_tool_result`
block and citation-only text blocks. Result URLs that point at the search
redirect service are resolved to their final destination on a best-effort
basis.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import secrets
import string
from dataclasses import dataclass, field
from typing import Any

import httpx

LOG = logging.getLogger(__name__)

GROUNDING_REDIRECT_PREFIX = "https://vertexaisearch.cloud.google.com/grounding-api-redirect/"
WEB_SEARCH_TOOL_NAME = "web_search"
WEB_SEARCH_USAGE = {"server_tool_use": {"web_search_requests": 1}}

_ID_ALPHABET = string.ascii_lowercase + string.digits


def make_server_tool_use_id() -> str:
    return "srvtoolu_" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(24))


def encode_opaque(payload: dict[str, Any]) -> str:
    """Encode a small JSON payload as the opaque base64 token clients expect."""
    raw = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def _first_query(grounding_metadata: Any) -> str | None:
    if not isinstance(grounding_metadata, dict):
        return None
    queries = grounding_metadata.get("webSearchQueries")
    if isinstance(queries, list) and queries and isinstance(queries[0], str):
        return queries[0]
    return None


def _candidate_or_metadata_list(candidate: dict[str, Any], key: str) -> list[Any] | None:
    value = candidate.get(key)
    if isinstance(value, list):
        return value
    metadata = candidate.get("groundingMetadata")
    if isinstance(metadata, dict) and isinstance(metadata.get(key), list):
        return metadata[key]
    return None


def is_grounded_candidate(candidate: Any) -> bool:
    """Return whether a complete candidate carries search grounding data."""
    if not isinstance(candidate, dict):
        return False
    return (
        _first_query(candidate.get("groundingMetadata")) is not None
        or _candidate_or_metadata_list(candidate, "groundingChunks") is not None
        or _candidate_or_metadata_list(candidate, "groundingSupports") is not None
    )


def has_grounding_fields(candidate: Any) -> bool:
    """Streaming variant: any grounding key on the chunk switches to search mode."""
    if not isinstance(candidate, dict):
        return False
    return any(key in candidate for key in ("groundingMetadata", "groundingChunks", "groundingSupports"))


def to_web_search_results(grounding_chunks: list[Any]) -> list[dict[str, Any]]:
    results = []
    for chunk in grounding_chunks:
        web = chunk.get("web") if isinstance(chunk, dict) and isinstance(chunk.get("web"), dict) else {}
        url = web.get("uri") if isinstance(web.get("uri"), str) else ""
        if isinstance(web.get("title"), str):
            title = web["title"]
        elif isinstance(web.get("domain"), str):
            title = web["domain"]
        else:
            title = ""
        if not url and not title:
            continue
        results.append(
            {
                "type": "web_search_result",
                "title": title,
                "url": url,
                "encrypted_content": encode_opaque({"url": url, "title": title}),
                "page_age": None,
            }
        )
    return results


def build_citation(results: list[dict[str, Any]], support: Any) -> dict[str, Any] | None:
    """Build one citation from a grounding support span, or None if unusable."""
    if not isinstance(support, dict):
        return None
    segment = support.get("segment") if isinstance(support.get("segment"), dict) else {}
    cited_text = segment.get("text")
    if not isinstance(cited_text, str) or not cited_text:
        return None
    indices = support.get("groundingChunkIndices")
    index = indices[0] if isinstance(indices, list) and indices else None
    if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(results):
        return None
    result = results[index]
    return {
        "type": "web_search_result_location",
        "cited_text": cited_text,
        "url": result["url"],
        "title": result["title"],
        "encrypted_index": encode_opaque({"url": result["url"], "title": result["title"], "cited_text": cited_text}),
    }


@dataclass
class WebSearchState:
    """Search data collected across streamed chunks."""

    tool_use_id: str = field(default_factory=make_server_tool_use_id)
    query: str = ""
    results: list[dict[str, Any]] = field(default_factory=list)
    supports: list[Any] = field(default_factory=list)
    buffered_text: list[str] = field(default_factory=list)

    def update(self, candidate: dict[str, Any]) -> None:
        query = _first_query(candidate.get("groundingMetadata"))
        if query is not None:
            self.query = query
        chunks = _candidate_or_metadata_list(candidate, "groundingChunks")
        if chunks is not None:
            self.results = to_web_search_results(chunks)
        supports = _candidate_or_metadata_list(candidate, "groundingSupports")
        if supports is not None:
            self.supports = supports

    def citations(self) -> list[dict[str, Any]]:
        out = []
        for support in self.supports:
            citation = build_citation(self.results, support)
            if citation is not None:
                out.append(citation)
        return out


class RedirectResolver:
    """Resolve search redirect URLs to their final destination.

    Resolutions are cached by source URL for the life of the process; the
    cache is simply cleared once it outgrows its bound. Failures keep the
    original URL.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 1.5,
        max_results: int = 10,
        concurrency: int = 5,
        cache_max_entries: int = 2000,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._timeout = httpx.Timeout(timeout_seconds)
        self._max_results = max_results
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._cache_max_entries = cache_max_entries
        self._cache: dict[str, str] = {}
        self._inflight: dict[str, asyncio.Future[str]] = {}
        self._client = client
        self._owns_client = client is None

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._client

    async def resolve_results(self, results: list[dict[str, Any]]) -> None:
        """Rewrite redirect URLs in place for the first results."""
        targets = [result for result in results[: self._max_results] if result.get("url")]
        if not targets:
            return
        resolved = await asyncio.gather(*(self.resolve(result["url"]) for result in targets))
        for result, final_url in zip(targets, resolved):
            if final_url and final_url != result["url"]:
                result["url"] = final_url
                result["encrypted_content"] = encode_opaque({"url": final_url, "title": result["title"]})

    async def resolve(self, url: str) -> str:
        if not url.startswith(GROUNDING_REDIRECT_PREFIX):
            return url
        cached = self._cache.get(url)
        if cached is not None:
            return cached
        inflight = self._inflight.get(url)
        if inflight is not None:
            return await asyncio.shield(inflight)

        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._inflight[url] = future
        try:
            final_url = await self._fetch_final_url(url)
        except BaseException:
            # Concurrent waiters fall back to the unresolved URL.
            future.set_result(url)
            raise
        finally:
            self._inflight.pop(url, None)
        if final_url is None:
            future.set_result(url)
            return url
        future.set_result(final_url)
        self._cache[url] = final_url
        if len(self._cache) > self._cache_max_entries:
            self._cache.clear()
        return final_url

    async def _fetch_final_url(self, url: str) -> str | None:
        """Follow redirects within one overall time budget. Returns None on any failure."""
        client = self._get_client()
        async with self._semaphore:
            try:
                return await asyncio.wait_for(self._follow_redirects(client, url), timeout=self._timeout_seconds)
            except asyncio.TimeoutError:
                LOG.debug("redirect resolution timed out url=%s; keeping original", url)
            except Exception as exc:
                LOG.debug("redirect resolution failed url=%s error=%s; keeping original", url, exc)
            return None

    async def _follow_redirects(self, client: httpx.AsyncClient, url: str) -> str:
        try:
            response = await client.head(url, follow_redirects=True, timeout=self._timeout)
            return str(response.url) or url
        except httpx.HTTPError as exc:
            LOG.debug("redirect HEAD failed url=%s error=%s; trying GET", url, exc)
        # Some hosts reject HEAD; only the final URL is needed, not the body.
        async with client.stream("GET", url, follow_redirects=True, timeout=self._timeout) as response:
            return str(response.url) or url
