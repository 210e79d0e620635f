"""Helpers for reading and building OpenAI-compatible streaming chunks."""

from __future__ import annotations

import time
import uuid
from typing import Any


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def client_chunk(
    *,
    completion_id: str,
    model: str,
    created: int | None = None,
    delta: dict[str, Any],
    finish_reason: str | None = None,
) -> dict[str, Any]:
    """Build a canonical `chat.completion.chunk` payload for clients."""
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()) if created is None else created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def content_chunk(text: str, *, completion_id: str, model: str) -> dict[str, Any]:
    """Relay-generated content unit (preamble, notices, references)."""
    return client_chunk(
        completion_id=completion_id,
        model=model,
        delta={"role": "assistant", "content": text},
    )


def pick_primary_choice(chunk: dict[str, Any]) -> dict[str, Any] | None:
    """Return the primary choice (index 0 if present) from an upstream chunk."""
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return None

    for choice in choices:
        if isinstance(choice, dict) and choice.get("index") == 0:
            return choice

    first = choices[0]
    return first if isinstance(first, dict) else None


def primary_delta(chunk: dict[str, Any]) -> dict[str, Any]:
    choice = pick_primary_choice(chunk) or {}
    delta = choice.get("delta")
    return delta if isinstance(delta, dict) else {}


def delta_content(chunk: dict[str, Any]) -> str:
    """Text content carried by a chunk, or an empty string."""
    content = primary_delta(chunk).get("content")
    return content if isinstance(content, str) else ""


def delta_tool_calls(chunk: dict[str, Any]) -> list[dict[str, Any]]:
    """Tool-call fragments carried by a chunk."""
    tool_calls = primary_delta(chunk).get("tool_calls")
    if not isinstance(tool_calls, list):
        return []
    return [fragment for fragment in tool_calls if isinstance(fragment, dict)]


def finish_reason(chunk: dict[str, Any]) -> str | None:
    choice = pick_primary_choice(chunk) or {}
    reason = choice.get("finish_reason")
    return reason if isinstance(reason, str) and reason else None


def message_content(response: dict[str, Any]) -> str:
    """Assistant text from a non-streaming completion payload."""
    choice = pick_primary_choice(response) or {}
    message = choice.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    return content if isinstance(content, str) else ""
