"""Server-sent event helpers shared by both protocol front-ends."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, AsyncGenerator, AsyncIterator, Iterator

from fastapi import Request
from fastapi.responses import StreamingResponse

LOG = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
PING_EVENT = b'event: ping\ndata: {"type": "ping"}\n\n'


def sse_event(event_type: str, payload: dict[str, Any]) -> bytes:
    """Encode one named SSE event."""
    return f"event: {event_type}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def sse_data(payload: dict[str, Any]) -> bytes:
    """Encode one unnamed SSE `data:` event."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def sse_comment(text: str) -> bytes:
    """Encode one SSE comment/heartbeat event."""
    return f": {text}\n\n".encode("utf-8")


def build_sse_response(stream: AsyncIterator[bytes], *, status_code: int = 200) -> StreamingResponse:
    """Build standard SSE response with consistent proxy-safe headers."""
    return StreamingResponse(
        stream,
        status_code=status_code,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def sse_line_payload(line: str) -> str | None:
    """Return the payload of a `data:` line, or None for any other line."""
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    return payload or None


def iter_sse_payloads(text: str) -> Iterator[dict[str, Any]]:
    """Decode every JSON `data:` payload in a buffered SSE transcript."""
    for line in text.splitlines():
        payload = sse_line_payload(line)
        if payload is None or payload == DONE_SENTINEL:
            continue
        try:
            decoded = json.loads(payload)
        except json.JSONDecodeError:
            continue
        if isinstance(decoded, dict):
            yield decoded


async def stream_with_keepalive(
    source: AsyncGenerator[bytes, None],
    *,
    keepalive_seconds: float,
    request: Request | None = None,
    keepalive_event: bytes = PING_EVENT,
) -> AsyncGenerator[bytes, None]:
    """Forward stream chunks, emit heartbeats while waiting, stop on disconnect.

    A client disconnect cancels the pending read, and closing `source` closes
    the backend response behind it.
    """
    started = time.monotonic()
    try:
        emit_keepalive = keepalive_seconds > 0
        poll_seconds = keepalive_seconds if emit_keepalive else 0.5

        iterator = source.__aiter__()
        while True:
            next_item = asyncio.ensure_future(iterator.__anext__())
            try:
                while not next_item.done():
                    done, _ = await asyncio.wait({next_item}, timeout=poll_seconds)
                    if done:
                        break
                    if request is not None and await request.is_disconnected():
                        LOG.debug(
                            "client disconnected, stopping stream elapsed=%.3fs",
                            time.monotonic() - started,
                        )
                        next_item.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await next_item
                        return
                    if emit_keepalive:
                        yield keepalive_event
                yield next_item.result()
            except StopAsyncIteration:
                return
            except BaseException:
                if not next_item.done():
                    next_item.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await next_item
                raise
    finally:
        cleanup_cancelled = False
        try:
            await asyncio.shield(source.aclose())
        except asyncio.CancelledError:
            cleanup_cancelled = True
        except Exception as exc:
            LOG.debug("stream source close failed error=%s", exc)
        LOG.debug("stream wrapper closed elapsed=%.3fs", time.monotonic() - started)
        if cleanup_cancelled:
            raise asyncio.CancelledError
