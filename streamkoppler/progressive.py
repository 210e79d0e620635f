"""Progressive response: a short secondary-model acknowledgement sent first."""

from __future__ import annotations

import logging
import time
from typing import Any

from .config import ProgressiveConfig
from .logging_utils import NO_REQUEST_ID, request_logger
from .messages import ROLE_INSTRUCTION, ROLE_USER
from .sse import OutputChannel
from .stream_chunks import content_chunk, message_content, new_completion_id

LOG = logging.getLogger(__name__)


class ProgressiveCoordinator:
    """Issues one best-effort non-streaming call to the secondary model."""

    def __init__(self, cfg: ProgressiveConfig, upstream: Any) -> None:
        self.cfg = cfg
        self._upstream = upstream

    def is_active(self, override: bool | None) -> bool:
        """An explicit request flag always wins over the deployment default."""
        if override is not None:
            return override
        return self.cfg.enabled

    async def maybe_emit_preamble(
        self,
        latest_message: dict[str, Any] | None,
        channel: OutputChannel,
        *,
        override: bool | None = None,
        completion_id: str | None = None,
        request_id: str = NO_REQUEST_ID,
    ) -> bool:
        """Send the acknowledgement ahead of the primary stream.

        Returns True when a preamble was written. Failures are logged and
        swallowed; the primary call is never affected.
        """
        if not self.is_active(override):
            return False
        if not isinstance(latest_message, dict) or latest_message.get("role") != ROLE_USER:
            return False
        user_content = latest_message.get("content")
        if not user_content or channel.closed:
            return False

        log = request_logger(LOG, request_id)
        log.info("generating progressive preamble model=%s", self.cfg.model)
        started = time.monotonic()
        try:
            response = await self._upstream.chat_completion(
                {
                    "model": self.cfg.model,
                    "messages": [
                        {"role": ROLE_INSTRUCTION, "content": self.cfg.instruction},
                        {"role": ROLE_USER, "content": user_content},
                    ],
                    "temperature": self.cfg.temperature,
                    "max_tokens": self.cfg.max_tokens,
                }
            )
            text = message_content(response)
        except Exception as exc:
            log.warning("progressive preamble failed: %s", exc)
            return False

        log.info(
            "progressive preamble elapsed=%.3fs text=%r",
            time.monotonic() - started,
            text,
        )
        if not text:
            return False
        return channel.send(
            content_chunk(
                f"{text}\n\n",
                completion_id=completion_id or new_completion_id(),
                model=self.cfg.model,
            )
        )
