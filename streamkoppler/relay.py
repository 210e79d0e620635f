"""Relay service runtime and per-request stream orchestration."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable

from .builtin_tools import register_builtin_tools
from .config import RelayConfig, RetrievalConfig
from .logging_utils import RequestLogAdapter, request_logger
from .messages import (
    assistant_message,
    assistant_tool_call_message,
    is_instruction,
    latest_user_content,
    wire_messages,
)
from .progressive import ProgressiveCoordinator
from .retrieval import Embedder, HashEmbedder, RetrievalAugmenter, UpstreamEmbedder
from .session_store import Session, SessionStore
from .sse import OutputChannel
from .stream_chunks import content_chunk, delta_content, new_completion_id
from .tool_calls import ToolCallStateMachine, ToolProtocolError
from .tool_registry import ToolRegistry
from .upstream import ProviderError, UpstreamClient
from .utils import new_request_id, preview, to_bounded_json

LOG = logging.getLogger(__name__)


@dataclass
class RelayRequest:
    """One inbound chat request after transport-level parsing."""

    messages: list[dict[str, Any]] = field(default_factory=list)
    session_id: str | None = None
    model: str | None = None
    progressive_response: bool | None = None
    request_id: str = field(default_factory=new_request_id)


def _build_embedder(cfg: RetrievalConfig, upstream: Any) -> Embedder:
    if cfg.embedding == "upstream":
        return UpstreamEmbedder(upstream, cfg.embedding_model)
    return HashEmbedder()


class RelayService:
    """Runtime container for the provider client, session store, and helpers."""

    def __init__(
        self,
        cfg: RelayConfig,
        *,
        upstream: Any | None = None,
        tools: ToolRegistry | None = None,
        sessions: SessionStore | None = None,
    ) -> None:
        """Initialize the service with config-bound collaborators."""
        self.cfg = cfg
        self.upstream = upstream if upstream is not None else UpstreamClient(cfg)
        self.sessions = sessions if sessions is not None else SessionStore(cfg.sessions, cfg.default_instruction)
        self.tools = tools if tools is not None else register_builtin_tools(ToolRegistry())
        self.progressive = ProgressiveCoordinator(cfg.progressive, self.upstream)
        self.augmenter = RetrievalAugmenter(cfg.retrieval, _build_embedder(cfg.retrieval, self.upstream))
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._retired_upstreams: list[Any] = []
        self._retired_closers: set[asyncio.Task[None]] = set()

    async def start(self) -> None:
        """Start the expiry sweep and embed the retrieval corpus."""
        await self.sessions.start()
        if self.cfg.retrieval.enabled:
            await _load_corpus(self.augmenter)

    async def close(self) -> None:
        """Shut down clients and background resources."""
        await self.sessions.close()
        for task in list(self._retired_closers):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        retired, self._retired_upstreams = self._retired_upstreams, []
        for upstream in retired:
            await _close_upstream(upstream)
        await _close_upstream(self.upstream)

    async def reload(self, new_cfg: RelayConfig) -> None:
        """Hot-reload configuration; sessions survive, clients are swapped."""
        old_upstream = self.upstream
        new_upstream = UpstreamClient(new_cfg)
        new_augmenter = RetrievalAugmenter(new_cfg.retrieval, _build_embedder(new_cfg.retrieval, new_upstream))
        if new_cfg.retrieval.enabled:
            await _load_corpus(new_augmenter)

        self.cfg = new_cfg
        self.upstream = new_upstream
        self.progressive = ProgressiveCoordinator(new_cfg.progressive, new_upstream)
        self.augmenter = new_augmenter
        self.sessions.reconfigure(new_cfg.sessions, new_cfg.default_instruction)

        self._retired_upstreams.append(old_upstream)
        task = asyncio.create_task(self._close_when_idle(old_upstream))
        self._retired_closers.add(task)
        task.add_done_callback(self._retired_closers.discard)

    async def _close_when_idle(self, upstream: Any) -> None:
        # In-flight requests keep using the client they started with.
        await self._idle.wait()
        if upstream in self._retired_upstreams:
            self._retired_upstreams.remove(upstream)
            await _close_upstream(upstream)

    async def handle(self, request: RelayRequest, channel: OutputChannel) -> None:
        """Drive one request end-to-end, writing frames to `channel`."""
        self._inflight += 1
        self._idle.clear()
        try:
            await relay_chat(self, request, channel)
        finally:
            self._inflight -= 1
            if self._inflight == 0:
                self._idle.set()

    def health(self) -> dict[str, Any]:
        return {
            "sessions": len(self.sessions),
            "tools": self.tools.names() if self.cfg.tools.enabled else [],
            "retrieval_documents": len(self.augmenter.documents),
        }


async def _load_corpus(augmenter: RetrievalAugmenter) -> None:
    try:
        await augmenter.load()
    except Exception:
        LOG.warning("retrieval corpus could not be loaded, augmentation will be a no-op", exc_info=True)


async def _close_upstream(upstream: Any) -> None:
    close = getattr(upstream, "close", None)
    if close is not None:
        await close()


def _fold_request_messages(service: RelayService, session: Session, messages: list[dict[str, Any]]) -> None:
    """Merge inbound messages; a leading instruction replaces index 0."""
    if not messages:
        return
    store = service.sessions
    remaining = messages
    if is_instruction(messages[0]):
        if session.ephemeral:
            session.set_instruction(messages[0])
        else:
            store.replace_instruction(session.session_id, messages[0])
        remaining = messages[1:]

    for message in remaining:
        if session.ephemeral:
            session.add(message, store.max_messages)
        else:
            store.append(session.session_id, message)


async def _unless_closed(channel: OutputChannel, awaitable: Awaitable[Any]) -> tuple[bool, Any]:
    """Await `awaitable` unless the channel closes first.

    Returns `(True, result)` on completion. When the client goes away the
    pending work is cancelled and `(False, None)` is returned. Exceptions
    raised by `awaitable` propagate.
    """
    work = asyncio.ensure_future(awaitable)
    closed = asyncio.ensure_future(channel.wait_closed())
    try:
        await asyncio.wait({work, closed}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        closed.cancel()
        if not work.done():
            work.cancel()
            with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                await work
    if work.cancelled():
        return False, None
    result = work.result()
    if channel.closed:
        return False, None
    return True, result


async def _augment_instruction(
    service: RelayService,
    augmenter: RetrievalAugmenter,
    session: Session,
    log: RequestLogAdapter,
) -> list[str]:
    """Recompute the instruction from the session's base instruction."""
    if not service.cfg.retrieval.enabled:
        return []
    query = latest_user_content(session.messages)
    if not query:
        return []
    log.info("enhancing instruction with retrieval query=%r", preview(query))
    enhanced = await augmenter.augment(query, session.base_instruction)
    session.set_instruction(enhanced, base=False)
    sources = list(enhanced.get("sources") or [])
    if sources:
        log.info("retrieval sources: %s", ", ".join(sources))
    return sources


@dataclass
class _TurnResult:
    text: str
    completed: bool


async def _stream_turn(
    service: RelayService,
    upstream: Any,
    session: Session,
    *,
    model: str,
    channel: OutputChannel,
    log: RequestLogAdapter,
) -> _TurnResult:
    """Stream the primary call and any tool continuations to the channel."""
    parts: list[str] = []
    history = list(session.messages)
    tools_cfg = service.cfg.tools
    tool_rounds = 0

    while True:
        payload: dict[str, Any] = {"model": model, "messages": wire_messages(history)}
        if tools_cfg.enabled and len(service.tools) and tool_rounds < tools_cfg.max_rounds:
            payload["tools"] = service.tools.get_openai_tools()

        machine = ToolCallStateMachine()
        invocation = None
        stream = upstream.stream_chat_completion(payload, trace_id=f"{log.request_id}:round{tool_rounds + 1}")
        try:
            while invocation is None:
                try:
                    alive, chunk = await _unless_closed(channel, stream.__anext__())
                except StopAsyncIteration:
                    machine.end_of_stream()
                    break
                if not alive:
                    log.warning("client disconnected during streaming")
                    return _TurnResult("".join(parts), completed=False)
                machine.feed(chunk)
                invocation = machine.take_ready()
                if invocation is not None or machine.active:
                    continue
                content = delta_content(chunk)
                if content:
                    parts.append(content)
                    channel.send(chunk)
        finally:
            await stream.aclose()

        if invocation is None:
            return _TurnResult("".join(parts), completed=True)

        log.info(
            "executing tool call id=%s name=%s arguments=%s",
            invocation.id,
            invocation.name,
            to_bounded_json(invocation.arguments, max_len=2000),
        )
        alive, result = await _unless_closed(channel, service.tools.execute(invocation))
        if not alive:
            log.warning("client disconnected during tool execution name=%s", invocation.name)
            return _TurnResult("".join(parts), completed=False)
        machine.mark_executed(result)

        call_message = assistant_tool_call_message([invocation.to_tool_call()])
        result_message = service.tools.format_tool_message(invocation.id, result)
        service.sessions.record(session, call_message)
        service.sessions.record(session, result_message)
        history = [*history, call_message, result_message]
        machine.reset()
        tool_rounds += 1
        log.info("continuation request with tool result round=%s", tool_rounds)


async def relay_chat(service: RelayService, request: RelayRequest, channel: OutputChannel) -> None:
    """Run one request; exactly one terminal action reaches the channel."""
    log = request_logger(LOG, request.request_id)
    if channel.closed:
        log.info("output channel unavailable or closed, aborting")
        return

    upstream = service.upstream
    progressive = service.progressive
    augmenter = service.augmenter
    model = request.model or service.cfg.upstream_default_model
    completion_id = new_completion_id()
    started = time.monotonic()
    log.info(
        "request received session_id=%s messages=%s model=%s",
        request.session_id or "-",
        len(request.messages),
        model,
    )

    try:
        session = service.sessions.resolve(request.session_id)
        _fold_request_messages(service, session, request.messages)
        alive, sources = await _unless_closed(channel, _augment_instruction(service, augmenter, session, log))
        if not alive:
            log.info("client disconnected during retrieval")
            return
        notice = service.cfg.retrieval.notice_text
        if sources and notice:
            channel.send(content_chunk(notice, completion_id=completion_id, model=model))

        latest = request.messages[-1] if request.messages else None
        alive, _ = await _unless_closed(
            channel,
            progressive.maybe_emit_preamble(
                latest,
                channel,
                override=request.progressive_response,
                completion_id=completion_id,
                request_id=log.request_id,
            ),
        )
        if not alive:
            log.info("client disconnected before primary call")
            return

        log.info("sending streaming request with %s messages", len(session.messages))
        turn = await _stream_turn(service, upstream, session, model=model, channel=channel, log=log)

        text = turn.text
        if turn.completed and sources and service.cfg.retrieval.append_references:
            references = f"\n\nReferences: {', '.join(sources)}"
            text += references
            channel.send(content_chunk(references, completion_id=completion_id, model=model))

        log.info(
            "streaming finished completed=%s elapsed=%.3fs response_len=%s",
            turn.completed,
            time.monotonic() - started,
            len(text),
        )
        if text:
            service.sessions.record(session, assistant_message(text))

        if turn.completed and channel.finish():
            log.debug("output channel closed properly")
    except asyncio.CancelledError:
        raise
    except (ProviderError, ToolProtocolError) as exc:
        log.warning("streaming request failed: %s", exc)
        channel.fail(str(exc))
    except Exception as exc:
        log.exception("error in streaming request")
        channel.fail(str(exc) or "Unknown error")
