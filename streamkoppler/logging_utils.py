"""Logging setup and request-scoped loggers for streamkoppler.

Every record passing the root handler carries a `request_id` attribute.
Relay code logs through `request_logger(...)`, which tags records with the
id of the request being handled; records from anywhere else get `-`.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, MutableMapping

from .config import LoggingConfig

NO_REQUEST_ID = "-"

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s]: %(message)s"

_CONTROLLED_LOGGER_PREFIXES = (
    "httpcore",
    "httpx",
    "uvicorn",
    "watchdog",
)


class RequestLogAdapter(logging.LoggerAdapter):
    """Logger adapter that stamps the request id onto every record."""

    def __init__(self, logger: logging.Logger, request_id: str) -> None:
        super().__init__(logger, {"request_id": request_id or NO_REQUEST_ID})

    @property
    def request_id(self) -> str:
        return self.extra["request_id"]

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def request_logger(logger: logging.Logger, request_id: str | None) -> RequestLogAdapter:
    """Return `logger` bound to one request id."""
    return RequestLogAdapter(logger, request_id or NO_REQUEST_ID)


class RequestIdFilter(logging.Filter):
    """Give records logged outside a request the placeholder id."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = NO_REQUEST_ID
        return True


class JsonLogFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", NO_REQUEST_ID)
        if request_id and request_id != NO_REQUEST_ID:
            payload["request_id"] = request_id
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _align_third_party_loggers(level: int) -> None:
    # Stale DEBUG levels must not survive a config reload.
    known = [str(name) for name in logging.root.manager.loggerDict]
    for prefix in _CONTROLLED_LOGGER_PREFIXES:
        for name in (prefix, *(n for n in known if n.startswith(f"{prefix}."))):
            logger = logging.getLogger(name)
            logger.setLevel(level)
            logger.handlers.clear()
            logger.propagate = True


def setup_logging(cfg: LoggingConfig) -> None:
    """Install one root handler (plain text or JSON lines) at the configured level."""
    level = getattr(logging, cfg.level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(JsonLogFormatter() if cfg.json_logs else logging.Formatter(PLAIN_FORMAT))

    root.handlers.clear()
    root.addHandler(handler)
    _align_third_party_loggers(level)
