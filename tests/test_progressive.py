import asyncio
import json

from streamkoppler.config import ProgressiveConfig
from streamkoppler.progressive import ProgressiveCoordinator
from streamkoppler.sse import OutputChannel


class _FakeUpstream:
    def __init__(self, content: str = "Okay, let me explain", error: Exception | None = None) -> None:
        self.content = content
        self.error = error
        self.payloads: list[dict[str, object]] = []

    async def chat_completion(self, payload: dict[str, object]) -> dict[str, object]:
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return {"choices": [{"index": 0, "message": {"role": "assistant", "content": self.content}}]}


def _user(text: str) -> dict[str, str]:
    return {"role": "user", "content": text}


def test_is_active_prefers_request_override() -> None:
    enabled = ProgressiveCoordinator(ProgressiveConfig(enabled=True), _FakeUpstream())
    disabled = ProgressiveCoordinator(ProgressiveConfig(enabled=False), _FakeUpstream())

    assert enabled.is_active(None) is True
    assert enabled.is_active(False) is False
    assert disabled.is_active(None) is False
    assert disabled.is_active(True) is True


def test_preamble_is_written_as_one_content_chunk() -> None:
    upstream = _FakeUpstream()
    coordinator = ProgressiveCoordinator(ProgressiveConfig(enabled=True), upstream)
    channel = OutputChannel()

    sent = asyncio.run(coordinator.maybe_emit_preamble(_user("Explain quantum mechanics"), channel, completion_id="c1"))

    assert sent is True
    [frame] = channel.drain_nowait()
    chunk = json.loads(frame.decode("utf-8")[len("data: ") :])
    assert chunk["id"] == "c1"
    assert chunk["choices"][0]["delta"]["content"] == "Okay, let me explain\n\n"
    assert upstream.payloads[0]["messages"][0]["role"] == "system"


def test_no_preamble_for_non_user_latest_message() -> None:
    upstream = _FakeUpstream()
    coordinator = ProgressiveCoordinator(ProgressiveConfig(enabled=True), upstream)

    sent = asyncio.run(coordinator.maybe_emit_preamble({"role": "tool", "content": "{}"}, OutputChannel()))

    assert sent is False
    assert upstream.payloads == []


def test_no_preamble_when_channel_closed() -> None:
    upstream = _FakeUpstream()
    coordinator = ProgressiveCoordinator(ProgressiveConfig(enabled=True), upstream)
    channel = OutputChannel()
    channel.disconnect()

    assert asyncio.run(coordinator.maybe_emit_preamble(_user("hi"), channel)) is False
    assert upstream.payloads == []


def test_secondary_failure_is_swallowed() -> None:
    coordinator = ProgressiveCoordinator(ProgressiveConfig(enabled=True), _FakeUpstream(error=RuntimeError("down")))
    channel = OutputChannel()

    assert asyncio.run(coordinator.maybe_emit_preamble(_user("hi"), channel)) is False
    assert channel.drain_nowait() == []
    assert not channel.closed


def test_empty_secondary_reply_sends_nothing() -> None:
    coordinator = ProgressiveCoordinator(ProgressiveConfig(enabled=True), _FakeUpstream(content=""))
    channel = OutputChannel()

    assert asyncio.run(coordinator.maybe_emit_preamble(_user("hi"), channel)) is False
    assert channel.drain_nowait() == []
