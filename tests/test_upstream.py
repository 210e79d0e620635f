import asyncio

import httpx
import pytest

from streamkoppler.config import RelayConfig
from streamkoppler.upstream import ProviderError, UpstreamClient


def _make_cfg(**overrides: object) -> RelayConfig:
    raw = {
        "service_base_url": "http://127.0.0.1:10001",
        "upstream_base_url": "http://127.0.0.1:10000/v1",
        "upstream_api_key": "test-key",
    }
    raw.update(overrides)
    return RelayConfig.model_validate(raw)


class _FakeStreamResponse:
    def __init__(self, lines: list[str], status_code: int = 200) -> None:
        self.lines = lines
        self.status_code = status_code
        self.closed = False

    async def aread(self) -> bytes:
        return b""

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("POST", "http://127.0.0.1:10000/v1/chat/completions")
            response = httpx.Response(self.status_code, request=request, json={"error": {"message": "bad key"}})
            raise httpx.HTTPStatusError("upstream rejected", request=request, response=response)

    async def aiter_lines(self):
        for line in self.lines:
            yield line

    async def aclose(self) -> None:
        self.closed = True


class _FakeStreamClient:
    def __init__(self, response: _FakeStreamResponse | None = None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.requests: list[dict[str, object]] = []

    def build_request(self, method: str, url: str, **kwargs: object) -> object:
        self.requests.append({"method": method, "url": url, **kwargs})
        return object()

    async def send(self, *_args, **_kwargs):
        if self.error is not None:
            raise self.error
        return self.response

    async def aclose(self) -> None:
        return None


def _collect(client: UpstreamClient) -> list[dict[str, object]]:
    async def run() -> list[dict[str, object]]:
        return [chunk async for chunk in client.stream_chat_completion({"model": "gpt-4o", "messages": []})]

    return asyncio.run(run())


def test_stream_yields_chunks_until_done_marker() -> None:
    response = _FakeStreamResponse(
        [
            ": keepalive",
            'data: {"id":"x","choices":[{"index":0,"delta":{"content":"Hi"},"finish_reason":null}]}',
            "",
            'data: {"id":"x","choices":[{"index":0,"delta":{},"finish_reason":"stop"}]}',
            "data: [DONE]",
            'data: {"id":"ignored"}',
        ]
    )
    fake = _FakeStreamClient(response)
    client = UpstreamClient(_make_cfg())
    client._client = fake  # type: ignore[assignment]

    chunks = _collect(client)

    assert [chunk["choices"][0]["delta"] for chunk in chunks] == [{"content": "Hi"}, {}]
    assert response.closed
    request = fake.requests[0]
    assert request["url"] == "/chat/completions"
    assert request["json"]["stream"] is True
    assert request["headers"]["Authorization"] == "Bearer test-key"


def test_malformed_chunk_raises_provider_error() -> None:
    response = _FakeStreamResponse(["data: {not json"])
    client = UpstreamClient(_make_cfg())
    client._client = _FakeStreamClient(response)  # type: ignore[assignment]

    with pytest.raises(ProviderError, match="malformed chunk"):
        _collect(client)
    assert response.closed


def test_inline_error_chunk_raises_provider_error() -> None:
    response = _FakeStreamResponse(['data: {"error": {"message": "rate limited"}}'])
    client = UpstreamClient(_make_cfg())
    client._client = _FakeStreamClient(response)  # type: ignore[assignment]

    with pytest.raises(ProviderError, match="rate limited"):
        _collect(client)


def test_transport_failure_is_wrapped_without_retry() -> None:
    request = httpx.Request("POST", "http://127.0.0.1:10000/v1/chat/completions")
    client = UpstreamClient(_make_cfg())
    client._client = _FakeStreamClient(error=httpx.ConnectError("upstream down", request=request))  # type: ignore[assignment]

    with pytest.raises(ProviderError, match="upstream down"):
        _collect(client)


def test_http_status_error_carries_provider_message() -> None:
    client = UpstreamClient(_make_cfg())
    client._client = _FakeStreamClient(_FakeStreamResponse([], status_code=401))  # type: ignore[assignment]

    with pytest.raises(ProviderError, match="401 bad key"):
        _collect(client)


def _mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url="http://127.0.0.1:10000/v1", transport=httpx.MockTransport(handler))


def test_chat_completion_is_non_streaming() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"choices": [{"index": 0, "message": {"content": "ok"}}]})

    async def run() -> dict[str, object]:
        client = UpstreamClient(_make_cfg())
        client._client = _mock_client(handler)
        try:
            return await client.chat_completion({"model": "small", "messages": []})
        finally:
            await client.close()

    result = asyncio.run(run())

    assert result["choices"][0]["message"]["content"] == "ok"
    assert seen[0].url.path == "/v1/chat/completions"
    assert b'"stream":false' in seen[0].content.replace(b" ", b"")


def test_embeddings_are_returned_in_input_order() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": [
                    {"index": 1, "embedding": [0.0, 1.0]},
                    {"index": 0, "embedding": [1.0, 0.0]},
                ]
            },
        )

    async def run() -> list[list[float]]:
        client = UpstreamClient(_make_cfg())
        client._client = _mock_client(handler)
        try:
            return await client.embeddings("text-embedding-ada-002", ["first", "second"])
        finally:
            await client.close()

    assert asyncio.run(run()) == [[1.0, 0.0], [0.0, 1.0]]


def test_chat_completion_http_error_is_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "overloaded"})

    async def run() -> None:
        client = UpstreamClient(_make_cfg())
        client._client = _mock_client(handler)
        try:
            await client.chat_completion({"model": "small", "messages": []})
        finally:
            await client.close()

    with pytest.raises(ProviderError, match="503 overloaded"):
        asyncio.run(run())
