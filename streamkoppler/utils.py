"""Shared utility helpers for the streamkoppler package."""

from __future__ import annotations

import json
import secrets
import string
from typing import Any

_REQUEST_ID_ALPHABET = string.ascii_lowercase + string.digits


def to_bounded_json(payload: Any, max_len: int = 8000) -> str:
    """Serialize arbitrary values into bounded JSON-like text for logging.

    The helper never raises and truncates long payloads to keep log lines readable.
    """
    try:
        raw = json.dumps(payload, ensure_ascii=False)
    except Exception:
        raw = repr(payload)
    if len(raw) > max_len:
        return raw[:max_len] + "...<truncated>"
    return raw


def new_request_id(length: int = 8) -> str:
    """Return a short random id used to correlate log lines of one request."""
    return "".join(secrets.choice(_REQUEST_ID_ALPHABET) for _ in range(length))


def preview(text: str | None, max_len: int = 30) -> str:
    """Shorten user text for log lines."""
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."
