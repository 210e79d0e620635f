"""In-memory conversation sessions with bounded history and idle expiry."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .config import SessionConfig
from .messages import instruction_message

LOG = logging.getLogger(__name__)


@dataclass
class Session:
    """Conversation history for one session id (or one ephemeral request)."""

    session_id: str | None
    messages: list[dict[str, Any]]
    base_instruction: dict[str, Any]
    created_at: float
    last_accessed_at: float = field(default=0.0)

    @property
    def ephemeral(self) -> bool:
        return self.session_id is None

    def add(self, message: dict[str, Any], max_messages: int) -> bool:
        """Append one message and trim to `[instruction] + last max_messages`.

        Returns True when older messages were evicted.
        """
        self.messages.append(message)
        if len(self.messages) <= max_messages + 1:
            return False
        self.messages = [self.messages[0], *self.messages[-max_messages:]]
        return True

    def set_instruction(self, message: dict[str, Any], *, base: bool = True) -> None:
        """Overwrite index 0; `base=False` keeps the un-augmented base instruction."""
        self.messages[0] = message
        if base:
            self.base_instruction = message


class SessionStore:
    """Owns all registered sessions.

    Every operation is synchronous and runs on the event loop thread, so each
    call is atomic with respect to other request tasks. The expiry sweep runs
    as a task on the same loop.
    """

    def __init__(
        self,
        cfg: SessionConfig,
        instruction_text: str,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cfg = cfg
        self._instruction_text = instruction_text
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    @property
    def max_messages(self) -> int:
        return self.cfg.max_messages

    def _new_session(self, session_id: str | None) -> Session:
        now = self._clock()
        seed = instruction_message(self._instruction_text)
        return Session(
            session_id=session_id,
            messages=[seed],
            base_instruction=seed,
            created_at=now,
            last_accessed_at=now,
        )

    def resolve(self, session_id: str | None = None) -> Session:
        """Return the session for an id, creating it on first reference.

        Without an id a fresh, unregistered session is returned every time.
        """
        if not session_id:
            LOG.debug("no session id provided, using ephemeral session")
            return self._new_session(None)

        session = self._sessions.get(session_id)
        if session is None:
            LOG.info("creating session session_id=%s", session_id)
            session = self._new_session(session_id)
            self._sessions[session_id] = session
        else:
            LOG.debug("resolved session session_id=%s messages=%s", session_id, len(session.messages))
            session.last_accessed_at = self._clock()
        return session

    def get(self, session_id: str) -> Session | None:
        """Look up a registered session without creating or refreshing it."""
        return self._sessions.get(session_id)

    def append(self, session_id: str | None, message: dict[str, Any]) -> Session | None:
        """Append a message to a registered session; discarded without an id."""
        if not session_id:
            LOG.debug("no session id provided, message not stored role=%s", message.get("role"))
            return None
        session = self.resolve(session_id)
        self._add(session, message)
        return session

    def record(self, session: Session, message: dict[str, Any]) -> bool:
        """Append to `session` only while it is still the registered one.

        Used after a request has awaited the provider: a session that expired
        in the meantime is not brought back holding only half a turn.
        """
        if session.ephemeral:
            return False
        if self._sessions.get(session.session_id) is not session:
            LOG.warning(
                "session expired while a request was in flight, message not stored session_id=%s role=%s",
                session.session_id,
                message.get("role"),
            )
            return False
        session.last_accessed_at = self._clock()
        self._add(session, message)
        return True

    def _add(self, session: Session, message: dict[str, Any]) -> None:
        if session.add(message, self.cfg.max_messages):
            LOG.info(
                "session exceeded max length, trimmed session_id=%s max_messages=%s",
                session.session_id,
                self.cfg.max_messages,
            )

    def replace_instruction(self, session_id: str | None, message: dict[str, Any]) -> Session | None:
        """Overwrite the pinned instruction message of a registered session."""
        if not session_id:
            return None
        session = self.resolve(session_id)
        session.set_instruction(message)
        LOG.info("replaced instruction message session_id=%s", session_id)
        return session

    def sweep_expired(self, now: float | None = None) -> int:
        """Remove sessions idle longer than the configured expiry."""
        current = self._clock() if now is None else now
        expiry = self.cfg.expiry_seconds
        expired = [sid for sid, session in self._sessions.items() if current - session.last_accessed_at > expiry]
        for sid in expired:
            LOG.info("session expired, removing session_id=%s", sid)
            del self._sessions[sid]
        if expired:
            LOG.info("session sweep removed=%s remaining=%s", len(expired), len(self._sessions))
        return len(expired)

    def reconfigure(self, cfg: SessionConfig, instruction_text: str) -> None:
        """Apply new limits after a config reload; existing sessions are kept."""
        self.cfg = cfg
        self._instruction_text = instruction_text

    async def start(self) -> None:
        """Launch the periodic expiry sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._periodic_sweep_loop())
        LOG.info(
            "session store started max_messages=%s expiry_seconds=%s",
            self.cfg.max_messages,
            self.cfg.expiry_seconds,
        )

    async def close(self) -> None:
        """Stop the sweep task."""
        if self._sweep_task:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

    async def _periodic_sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cfg.sweep_interval_seconds)
            try:
                self.sweep_expired()
            except Exception:
                LOG.exception("session sweep failed")
