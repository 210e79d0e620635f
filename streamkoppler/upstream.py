"""Client wrapper for upstream OpenAI-compatible APIs."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncGenerator

import httpx

from .config import RelayConfig
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)

_DONE_MARKER = "[DONE]"


class ProviderError(RuntimeError):
    """Upstream call failed, disconnected, or returned malformed data."""


def _error_detail(exc: httpx.HTTPError) -> str:
    """Extract a readable message from an httpx failure."""
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        status = exc.response.status_code
        try:
            body = exc.response.json()
        except Exception:
            body = None
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return f"{status} {error['message']}"
            if isinstance(error, str) and error:
                return f"{status} {error}"
        return f"{status} {exc.response.reason_phrase}".strip()
    return str(exc) or exc.__class__.__name__


class UpstreamClient:
    """Thin async HTTP client for upstream model endpoints."""

    def __init__(self, cfg: RelayConfig) -> None:
        """Create an upstream client from relay configuration."""
        self.cfg = cfg
        self._base_url = cfg.upstream_base_url.rstrip("/")
        self._timeout = httpx.Timeout(connect=10.0, read=cfg.upstream_timeout_seconds, write=120.0, pool=10.0)
        self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)

    async def close(self) -> None:
        """Close underlying HTTP resources."""
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        """Build authorization headers for upstream calls."""
        headers = {"Content-Type": "application/json"}
        if self.cfg.upstream_api_key:
            headers["Authorization"] = f"Bearer {self.cfg.upstream_api_key}"
        return headers

    async def chat_completion(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Run one non-streaming upstream chat completion."""
        req_payload = dict(payload)
        req_payload["stream"] = False
        LOG.debug(
            "forwarding upstream request method=POST path=/chat/completions stream=false payload=%s",
            to_bounded_json(req_payload),
        )
        try:
            response = await self._client.post("/chat/completions", headers=self._headers(), json=req_payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise ProviderError(f"Upstream chat completion failed: {_error_detail(exc)}") from exc
        except ValueError as exc:
            raise ProviderError("Upstream chat completion returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise ProviderError("Upstream chat completion returned a non-object payload")
        return data

    async def embeddings(self, model: str, texts: list[str]) -> list[list[float]]:
        """Embed texts with the upstream `/embeddings` endpoint, preserving input order."""
        payload = {"model": model, "input": texts}
        LOG.debug("forwarding upstream request method=POST path=/embeddings count=%s", len(texts))
        try:
            response = await self._client.post("/embeddings", headers=self._headers(), json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise ProviderError(f"Upstream embeddings failed: {_error_detail(exc)}") from exc
        except ValueError as exc:
            raise ProviderError("Upstream embeddings returned invalid JSON") from exc

        entries = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entries, list) or len(entries) != len(texts):
            raise ProviderError("Upstream embeddings returned an unexpected payload")
        ordered = sorted(entries, key=lambda entry: entry.get("index", 0) if isinstance(entry, dict) else 0)
        vectors: list[list[float]] = []
        for entry in ordered:
            vector = entry.get("embedding") if isinstance(entry, dict) else None
            if not isinstance(vector, list):
                raise ProviderError("Upstream embeddings entry is missing its vector")
            vectors.append([float(value) for value in vector])
        return vectors

    async def stream_chat_completion(
        self,
        payload: dict[str, Any],
        *,
        trace_id: str | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Run streaming upstream chat completion and yield decoded chunk objects."""
        req_payload = dict(payload)
        req_payload["stream"] = True
        started = time.monotonic()
        tag = trace_id or "-"
        LOG.debug(
            "upstream stream start trace=%s method=POST path=/chat/completions payload=%s",
            tag,
            to_bounded_json(req_payload),
        )

        response: httpx.Response | None = None
        chunk_count = 0
        try:
            response = await self._client.send(
                self._client.build_request(
                    "POST",
                    "/chat/completions",
                    headers=self._headers(),
                    json=req_payload,
                ),
                stream=True,
            )
            if response.status_code >= 400:
                await response.aread()
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line or not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if data == _DONE_MARKER:
                    LOG.debug(
                        "upstream stream done marker trace=%s elapsed=%.3fs chunks=%s",
                        tag,
                        time.monotonic() - started,
                        chunk_count,
                    )
                    return
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError as exc:
                    raise ProviderError(f"Upstream stream returned a malformed chunk: {data[:200]}") from exc
                if not isinstance(chunk, dict):
                    raise ProviderError("Upstream stream returned a non-object chunk")
                upstream_error = chunk.get("error")
                if upstream_error:
                    message = upstream_error.get("message") if isinstance(upstream_error, dict) else upstream_error
                    raise ProviderError(f"Upstream stream reported an error: {message}")
                chunk_count += 1
                yield chunk
        except httpx.HTTPError as exc:
            raise ProviderError(f"Upstream stream failed: {_error_detail(exc)}") from exc
        finally:
            if response is not None:
                cleanup_cancelled = False
                try:
                    await asyncio.shield(response.aclose())
                except asyncio.CancelledError:
                    cleanup_cancelled = True
                except Exception:
                    LOG.debug("upstream stream close failed trace=%s", tag, exc_info=True)
                LOG.debug(
                    "upstream stream closed trace=%s elapsed=%.3fs chunks=%s",
                    tag,
                    time.monotonic() - started,
                    chunk_count,
                )
                if cleanup_cancelled:
                    raise asyncio.CancelledError
