"""Server-Sent Events framing and the per-request output channel."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, AsyncGenerator, Awaitable, Callable

from fastapi.responses import StreamingResponse

LOG = logging.getLogger(__name__)

SSE_DONE = b"data: [DONE]\n\n"

TERMINAL_DONE = "done"
TERMINAL_ERROR = "error"
TERMINAL_DISCONNECTED = "disconnected"


def sse_data(payload: dict[str, Any]) -> bytes:
    """Encode one SSE `data:` event."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def sse_comment(text: str) -> bytes:
    """Encode one SSE comment/heartbeat event."""
    return f": {text}\n\n".encode("utf-8")


def build_sse_response(stream: AsyncGenerator[bytes, None]) -> StreamingResponse:
    """Build standard SSE response with consistent proxy-safe headers."""
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


class OutputChannel:
    """Push channel for one request.

    The relay writes frames, the HTTP response drains them. Exactly one
    terminal action happens per channel: the `[DONE]` sentinel, an error
    frame, or a silent close after the client went away.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._closed = False
        self._terminal: str | None = None
        self._closed_event = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def terminal(self) -> str | None:
        """Which terminal action ended the channel, if any."""
        return self._terminal

    def send(self, payload: dict[str, Any]) -> bool:
        """Queue one data frame; returns False when the channel is closed."""
        if self._closed:
            return False
        self._queue.put_nowait(sse_data(payload))
        return True

    def finish(self) -> bool:
        """Write the terminal sentinel and close."""
        if self._closed:
            return False
        self._queue.put_nowait(SSE_DONE)
        self._close(TERMINAL_DONE)
        return True

    def fail(self, message: str) -> bool:
        """Write an `{error: ...}` frame and close."""
        if self._closed:
            return False
        self._queue.put_nowait(sse_data({"error": message}))
        self._close(TERMINAL_ERROR)
        return True

    def disconnect(self) -> None:
        """Mark the consumer as gone; a no-op after a terminal frame."""
        if self._closed:
            return
        self._close(TERMINAL_DISCONNECTED)

    def _close(self, terminal: str) -> None:
        self._closed = True
        self._terminal = terminal
        self._closed_event.set()
        self._queue.put_nowait(None)

    async def wait_closed(self) -> None:
        """Block until a terminal action or a disconnect closes the channel."""
        await self._closed_event.wait()

    async def frames(self) -> AsyncGenerator[bytes, None]:
        """Yield queued frames until the channel is closed and drained."""
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame

    def drain_nowait(self) -> list[bytes]:
        """Return every frame queued so far without waiting."""
        out: list[bytes] = []
        while not self._queue.empty():
            frame = self._queue.get_nowait()
            if frame is not None:
                out.append(frame)
        return out


async def stream_with_keepalive(
    source: AsyncGenerator[bytes, None],
    *,
    keepalive_seconds: float,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    on_disconnect: Callable[[], None] | None = None,
) -> AsyncGenerator[bytes, None]:
    """Forward stream chunks and emit periodic SSE heartbeats while waiting."""
    started = time.monotonic()
    emit_keepalive = keepalive_seconds > 0
    poll_seconds = min(keepalive_seconds, 0.5) if emit_keepalive else 0.5
    keepalive_due = started + keepalive_seconds

    async def _client_gone() -> bool:
        if is_disconnected is None or not await is_disconnected():
            return False
        LOG.debug("client disconnected, stopping stream elapsed=%.3fs", time.monotonic() - started)
        if on_disconnect is not None:
            on_disconnect()
        return True

    iterator = source.__aiter__()
    try:
        while True:
            next_item = asyncio.ensure_future(iterator.__anext__())
            try:
                while not next_item.done():
                    done, _ = await asyncio.wait({next_item}, timeout=poll_seconds)
                    if done:
                        break
                    if await _client_gone():
                        next_item.cancel()
                        with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                            await next_item
                        return
                    if emit_keepalive and time.monotonic() >= keepalive_due:
                        keepalive_due = time.monotonic() + keepalive_seconds
                        yield sse_comment("keepalive")
                yield next_item.result()
            except StopAsyncIteration:
                return
            except BaseException:
                if not next_item.done():
                    next_item.cancel()
                    with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                        await next_item
                raise
    finally:
        cleanup_cancelled = False
        try:
            await asyncio.shield(source.aclose())
        except asyncio.CancelledError:
            cleanup_cancelled = True
        except Exception:
            LOG.debug("stream source close failed", exc_info=True)
        LOG.debug("stream wrapper closed elapsed=%.3fs", time.monotonic() - started)
        if cleanup_cancelled:
            raise asyncio.CancelledError
