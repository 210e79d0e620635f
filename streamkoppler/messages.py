"""Chat message helpers shared by the session store and the relay.

Messages stay in the OpenAI wire shape (plain dicts) so that they can be
passed to the provider unchanged.
"""

from __future__ import annotations

from typing import Any

ROLE_INSTRUCTION = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL_RESULT = "tool"

_ROLE_ALIASES = {
    "instruction": ROLE_INSTRUCTION,
    "tool-result": ROLE_TOOL_RESULT,
    "tool_result": ROLE_TOOL_RESULT,
}

_WIRE_KEYS = {"role", "content", "name", "tool_calls", "tool_call_id"}


def normalize_role(role: Any) -> str:
    """Map accepted role spellings to the wire role names."""
    text = str(role or "").strip().lower()
    return _ROLE_ALIASES.get(text, text)


def instruction_message(content: str) -> dict[str, Any]:
    """Build the pinned instruction (system) message."""
    return {"role": ROLE_INSTRUCTION, "content": content}


def assistant_message(content: str) -> dict[str, Any]:
    return {"role": ROLE_ASSISTANT, "content": content}


def assistant_tool_call_message(tool_calls: list[dict[str, Any]]) -> dict[str, Any]:
    """Assistant turn that carries only the invocation record."""
    return {"role": ROLE_ASSISTANT, "content": None, "tool_calls": tool_calls}


def is_instruction(message: Any) -> bool:
    return isinstance(message, dict) and normalize_role(message.get("role")) == ROLE_INSTRUCTION


def content_text(content: Any) -> str | None:
    """Return plain text for string or text-block list content."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        if parts:
            return "\n".join(parts)
    return None


def latest_user_content(messages: list[Any]) -> str | None:
    """Return the latest non-empty user message text, if any."""
    for msg in reversed(messages):
        if not isinstance(msg, dict):
            continue
        if normalize_role(msg.get("role")) != ROLE_USER:
            continue
        text = content_text(msg.get("content"))
        if text:
            return text
    return None


def wire_message(message: dict[str, Any]) -> dict[str, Any]:
    """Strip relay-only keys (e.g. retrieval `sources`) before sending upstream."""
    return {key: value for key, value in message.items() if key in _WIRE_KEYS}


def wire_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [wire_message(msg) for msg in messages]
