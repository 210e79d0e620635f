"""Local OpenAI-compatible provider for trying the relay without an API key.

Run with `uvicorn examples.mock_upstream_server:app --port 9000` and point
`upstream_base_url` at `http://127.0.0.1:9000/v1`.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

app = FastAPI(title="mock-upstream")

TOKEN_DELAY_SECONDS = 0.05


def _chunk(completion_id: str, model: str, delta: dict[str, Any], finish_reason: str | None = None) -> str:
    payload = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    return f"data: {json.dumps(payload)}\n\n"


def _reply_text(messages: list[dict[str, Any]]) -> str:
    last_tool = next((m for m in reversed(messages) if m.get("role") == "tool"), None)
    if last_tool is not None:
        return f"Tool result received: {last_tool.get('content')}"
    last_user = next((m for m in reversed(messages) if m.get("role") == "user"), {})
    return f"You said: {last_user.get('content') or ''}"


def _wants_weather(messages: list[dict[str, Any]], tools: list[dict[str, Any]]) -> bool:
    if not tools or not messages or messages[-1].get("role") != "user":
        return False
    return "weather" in str(messages[-1].get("content") or "").lower()


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    payload = await request.json()
    messages: list[dict[str, Any]] = payload.get("messages") or []
    tools: list[dict[str, Any]] = payload.get("tools") or []
    model = payload.get("model") or "demo-model"
    completion_id = f"chatcmpl-{uuid.uuid4().hex}"

    if not payload.get("stream"):
        return JSONResponse(
            {
                "id": completion_id,
                "object": "chat.completion",
                "created": int(time.time()),
                "model": model,
                "choices": [
                    {
                        "index": 0,
                        "message": {"role": "assistant", "content": "One moment, let me check"},
                        "finish_reason": "stop",
                    }
                ],
            }
        )

    async def gen():
        if _wants_weather(messages, tools):
            call_id = f"call_{uuid.uuid4().hex[:12]}"
            arguments = json.dumps({"location": "Berlin", "unit": "celsius"})
            head = {"index": 0, "id": call_id, "type": "function", "function": {"name": "get_weather", "arguments": ""}}
            yield _chunk(completion_id, model, {"role": "assistant", "tool_calls": [head]})
            for start in range(0, len(arguments), 8):
                await asyncio.sleep(TOKEN_DELAY_SECONDS)
                fragment = {"index": 0, "function": {"arguments": arguments[start : start + 8]}}
                yield _chunk(completion_id, model, {"tool_calls": [fragment]})
            yield _chunk(completion_id, model, {}, finish_reason="tool_calls")
        else:
            for word in _reply_text(messages).split(" "):
                await asyncio.sleep(TOKEN_DELAY_SECONDS)
                yield _chunk(completion_id, model, {"content": f"{word} "})
            yield _chunk(completion_id, model, {}, finish_reason="stop")
        yield "data: [DONE]\n\n"

    return StreamingResponse(gen(), media_type="text/event-stream")


@app.post("/v1/embeddings")
async def embeddings(request: Request) -> JSONResponse:
    payload = await request.json()
    texts = payload.get("input") or []
    if isinstance(texts, str):
        texts = [texts]
    data = []
    for index, text in enumerate(texts):
        digest = hashlib.sha256(str(text).encode("utf-8")).digest()
        data.append({"object": "embedding", "index": index, "embedding": [byte / 255 for byte in digest[:20]]})
    return JSONResponse({"object": "list", "data": data, "model": payload.get("model")})
