"""HTTP application for the streamkoppler relay.

Exposes one streaming chat endpoint (also under the OpenAI path) that relays
provider output as Server-Sent Events, with server-held sessions, an optional
progressive preamble, retrieval-augmented instructions and mid-stream tools.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncGenerator, Mapping
from urllib.parse import urlparse

import uvicorn
import yaml
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import DEFAULT_CONFIG_PATH, ConfigurationError, RelayConfig, load_config
from .config_reload import ConfigReloadWatcher
from .logging_utils import request_logger, setup_logging
from .messages import ROLE_ASSISTANT, ROLE_INSTRUCTION, ROLE_TOOL_RESULT, ROLE_USER, normalize_role
from .relay import RelayRequest, RelayService
from .sse import OutputChannel, build_sse_response, stream_with_keepalive
from .utils import new_request_id, to_bounded_json

LOG = logging.getLogger(__name__)

SESSION_HEADERS = ("x-task-id", "x-session-id")

_KNOWN_ROLES = {ROLE_INSTRUCTION, ROLE_USER, ROLE_ASSISTANT, ROLE_TOOL_RESULT}


class ChatMessage(BaseModel):
    """One inbound conversation message."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    role: str
    content: Any = None
    name: str | None = None
    tool_calls: list[dict[str, Any]] | None = Field(
        default=None,
        validation_alias=AliasChoices("tool_calls", "toolInvocations"),
    )
    tool_call_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("tool_call_id", "toolInvocationRef"),
    )

    @field_validator("role")
    @classmethod
    def _normalize_role(cls, value: str) -> str:
        role = normalize_role(value)
        if role not in _KNOWN_ROLES:
            raise ValueError(f"unsupported message role: {value!r}")
        return role

    def to_wire(self) -> dict[str, Any]:
        out: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            out["name"] = self.name
        if self.tool_calls:
            out["tool_calls"] = self.tool_calls
        if self.tool_call_id:
            out["tool_call_id"] = self.tool_call_id
        return out


class ChatRequest(BaseModel):
    """Chat request body; camelCase spellings are accepted as aliases."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    messages: list[ChatMessage] = Field(default_factory=list)
    model: str | None = None
    session_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("session_id", "sessionId", "taskId"),
    )
    progressive_response: bool | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "progressive_response",
            "progressiveResponseOverride",
            "useProgressiveResponse",
        ),
    )


def resolve_session_id(headers: Mapping[str, str], body: ChatRequest) -> str | None:
    """Header session id wins over the body field."""
    for name in SESSION_HEADERS:
        value = (headers.get(name) or "").strip()
        if value:
            return value
    return body.session_id or None


def _service_bind_addr(service_base_url: str) -> tuple[str, int]:
    parsed = urlparse(service_base_url)
    if not parsed.hostname or parsed.port is None:
        raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:8080")
    return parsed.hostname, parsed.port


def create_app(
    config_path: str | None = None,
    *,
    cfg: RelayConfig | None = None,
    service: RelayService | None = None,
    watch_config: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    if service is not None:
        cfg = service.cfg
    elif cfg is None:
        cfg = load_config(config_path)
    setup_logging(cfg.logging)
    service = service or RelayService(cfg)

    config_file = Path(config_path or os.getenv("STREAMKOPPLER_CONFIG") or DEFAULT_CONFIG_PATH)
    relay_tasks: set[asyncio.Task[None]] = set()

    async def apply_config(new_cfg: RelayConfig) -> None:
        setup_logging(new_cfg.logging)
        await service.reload(new_cfg)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Application startup/shutdown lifecycle."""
        await service.start()
        reload_task: asyncio.Task[None] | None = None
        if watch_config and config_file.exists():
            watcher = ConfigReloadWatcher(config_file=config_file, loader=load_config, apply=apply_config)
            reload_task = asyncio.create_task(watcher.run_forever())
        try:
            yield
        finally:
            pending = [task for task in (reload_task, *relay_tasks) if task is not None]
            for task in pending:
                task.cancel()
            for task in pending:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            await service.close()

    app = FastAPI(title="streamkoppler", version="0.1.0", lifespan=lifespan)
    app.state.service = service

    async def relay_frames(relay_request: RelayRequest, request: Request) -> AsyncGenerator[bytes, None]:
        channel = OutputChannel()
        task = asyncio.create_task(service.handle(relay_request, channel))
        relay_tasks.add(task)
        task.add_done_callback(relay_tasks.discard)
        try:
            async for frame in stream_with_keepalive(
                channel.frames(),
                keepalive_seconds=float(service.cfg.stream_keepalive_seconds or 0),
                is_disconnected=request.is_disconnected,
                on_disconnect=channel.disconnect,
            ):
                yield frame
        finally:
            # Wakes the relay if it is still waiting on the provider or a tool.
            channel.disconnect()

    async def chat(request: Request, body: ChatRequest):
        relay_request = RelayRequest(
            messages=[msg.to_wire() for msg in body.messages],
            session_id=resolve_session_id(request.headers, body),
            model=body.model,
            progressive_response=body.progressive_response,
            request_id=new_request_id(),
        )
        request_logger(LOG, relay_request.request_id).debug(
            "incoming chat request client=%s payload=%s",
            getattr(request.client, "host", None),
            to_bounded_json(relay_request.messages),
        )
        return build_sse_response(relay_frames(relay_request, request))

    app.add_api_route("/v1/chat/completions", chat, methods=["POST"])
    app.add_api_route("/chat", chat, methods=["POST"])

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        """Return service status, session count and retrieval corpus size."""
        return JSONResponse(
            {
                "service": "streamkoppler",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **service.health(),
            }
        )

    return app


def main() -> None:
    """CLI entry point that validates configuration and runs uvicorn."""

    def fail(message: str, exit_code: int = 2) -> None:
        print(f"ERROR: {message}", file=sys.stderr)
        raise SystemExit(exit_code)

    parser = argparse.ArgumentParser(description="streamkoppler streaming chat relay")
    parser.add_argument("--config", default=None, help="Path to config YAML")
    args = parser.parse_args()

    try:
        cfg = load_config(args.config)
    except ConfigurationError as exc:
        fail(str(exc))
    except ValidationError as exc:
        fail(f"Invalid configuration: {exc}")
    except (ValueError, yaml.YAMLError) as exc:
        fail(f"Failed to load configuration: {exc}")

    try:
        app = create_app(args.config, cfg=cfg)
        host, port = _service_bind_addr(cfg.service_base_url)
    except Exception as exc:
        fail(f"Failed to create app: {exc}")

    try:
        uvicorn.run(app, host=host, port=port, log_config=None)
    except Exception as exc:
        fail(f"Server failed to start: {exc}", exit_code=1)


if __name__ == "__main__":
    main()
