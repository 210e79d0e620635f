"""Demo tools registered by default."""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime
from typing import Any

from .tool_registry import ToolRegistry

LOG = logging.getLogger(__name__)

SIMULATED_LATENCY_SECONDS = 0.5

_WEATHER_TYPES = [
    "sunny",
    "cloudy",
    "overcast",
    "light rain",
    "heavy rain",
    "thunderstorm",
    "light snow",
    "heavy snow",
]

WEATHER_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {
        "location": {
            "type": "string",
            "description": "City name or location, e.g. 'Beijing'",
        },
        "unit": {
            "type": "string",
            "enum": ["celsius", "fahrenheit"],
            "description": "Temperature unit, celsius or fahrenheit",
        },
    },
    "required": ["location"],
}


async def get_weather(location: str, unit: str = "celsius") -> dict[str, Any]:
    """Return simulated current weather for a location."""
    if SIMULATED_LATENCY_SECONDS > 0:
        await asyncio.sleep(SIMULATED_LATENCY_SECONDS)

    temp_celsius = round(random.random() * 35) - 5
    temperature = temp_celsius if unit == "celsius" else temp_celsius * 9 / 5 + 32
    description = random.choice(_WEATHER_TYPES)
    symbol = "°C" if unit == "celsius" else "°F"
    LOG.info("simulated weather location=%s temperature=%s%s description=%s", location, temperature, symbol, description)
    return {
        "location": location,
        "temperature": temperature,
        "unit": symbol,
        "description": description,
        "humidity": round(random.random() * 100),
        "windSpeed": round(random.random() * 30),
        "time": datetime.now().isoformat(timespec="seconds"),
        "note": "This is simulated weather data for testing purposes",
    }


def register_builtin_tools(registry: ToolRegistry) -> ToolRegistry:
    registry.register(
        "get_weather",
        get_weather,
        description="Get current weather information for a specific location",
        parameters=WEATHER_PARAMETERS,
    )
    return registry
