import asyncio
import json

import pytest

from streamkoppler import builtin_tools
from streamkoppler.builtin_tools import register_builtin_tools
from streamkoppler.tool_calls import ToolInvocation
from streamkoppler.tool_registry import NOT_IMPLEMENTED_ERROR, ToolRegistry


def _invocation(name: str, arguments: str) -> ToolInvocation:
    return ToolInvocation(id="call_1", name=name, fragments=[arguments], complete=True)


def _registry() -> ToolRegistry:
    registry = ToolRegistry()

    async def echo(text: str) -> dict[str, str]:
        return {"echo": text}

    def shout(text: str) -> str:
        return text.upper()

    def broken() -> None:
        raise RuntimeError("backend unavailable")

    registry.register("echo", echo, description="Echo text")
    registry.register("shout", shout, description="Upper-case text")
    registry.register("broken", broken, description="Always fails")
    return registry


def test_declarations_are_openai_function_tools() -> None:
    registry = register_builtin_tools(ToolRegistry())

    tools = registry.get_openai_tools()

    assert [tool["function"]["name"] for tool in tools] == ["get_weather"]
    assert tools[0]["type"] == "function"
    assert tools[0]["function"]["parameters"]["required"] == ["location"]

    tools[0]["function"]["name"] = "mutated"
    assert registry.get_openai_tools()[0]["function"]["name"] == "get_weather"


def test_execute_async_and_sync_handlers() -> None:
    registry = _registry()

    async def run() -> tuple[str, str]:
        return (
            await registry.execute(_invocation("echo", '{"text": "hi"}')),
            await registry.execute(_invocation("shout", '{"text": "hi"}')),
        )

    echoed, shouted = asyncio.run(run())

    assert json.loads(echoed) == {"echo": "hi"}
    assert shouted == "HI"


def test_unknown_tool_yields_not_implemented_payload() -> None:
    result = asyncio.run(_registry().execute(_invocation("missing", "{}")))

    assert json.loads(result) == {"error": NOT_IMPLEMENTED_ERROR}


def test_unparsable_arguments_yield_error_payload() -> None:
    result = asyncio.run(_registry().execute(_invocation("echo", '{"text": ')))

    assert json.loads(result)["error"].startswith("Error parsing arguments:")


def test_non_object_arguments_yield_error_payload() -> None:
    result = asyncio.run(_registry().execute(_invocation("echo", "[1, 2]")))

    assert "must be a JSON object" in json.loads(result)["error"]


def test_handler_failure_is_reported_in_payload() -> None:
    result = asyncio.run(_registry().execute(_invocation("broken", "")))

    assert json.loads(result) == {"error": "backend unavailable"}


def test_format_tool_message_links_invocation() -> None:
    assert ToolRegistry.format_tool_message("call_1", '{"ok": true}') == {
        "role": "tool",
        "tool_call_id": "call_1",
        "content": '{"ok": true}',
    }


@pytest.mark.parametrize(("unit", "symbol"), [("celsius", "°C"), ("fahrenheit", "°F")])
def test_get_weather_returns_simulated_report(monkeypatch, unit: str, symbol: str) -> None:
    monkeypatch.setattr(builtin_tools, "SIMULATED_LATENCY_SECONDS", 0)

    report = asyncio.run(builtin_tools.get_weather("Paris", unit))

    assert report["location"] == "Paris"
    assert report["unit"] == symbol
    assert report["description"] in builtin_tools._WEATHER_TYPES
    assert 0 <= report["humidity"] <= 100
