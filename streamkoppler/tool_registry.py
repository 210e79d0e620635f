"""Tool declaration and dispatch registry.

The registry exposes the OpenAI-tool-facing declarations sent with primary
calls and executes one requested invocation, turning every failure into a
result payload the model can see.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

from .messages import ROLE_TOOL_RESULT
from .tool_calls import ToolInvocation
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)

NOT_IMPLEMENTED_ERROR = "Function not implemented"


class UnknownToolError(LookupError):
    """No handler is registered for a requested tool name."""


@dataclass
class ToolBinding:
    """One registered tool: declaration plus handler."""

    name: str
    description: str
    parameters: dict[str, Any]
    handler: Callable[..., Any]

    def declaration(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolRegistry:
    """Owns tool declarations and handlers for the relay."""

    def __init__(self) -> None:
        self._bindings: dict[str, ToolBinding] = {}

    def __len__(self) -> int:
        return len(self._bindings)

    def register(
        self,
        name: str,
        handler: Callable[..., Any],
        *,
        description: str,
        parameters: dict[str, Any] | None = None,
    ) -> ToolBinding:
        """Register a sync or async handler called with keyword arguments."""
        binding = ToolBinding(
            name=name,
            description=description,
            parameters=parameters or {"type": "object", "properties": {}},
            handler=handler,
        )
        self._bindings[name] = binding
        LOG.debug("registered tool name=%s", name)
        return binding

    def names(self) -> list[str]:
        return sorted(self._bindings)

    def get_openai_tools(self) -> list[dict[str, Any]]:
        """Return a deep copy of the current OpenAI tool declarations."""
        return copy.deepcopy([binding.declaration() for binding in self._bindings.values()])

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        """Dispatch one call to its handler; sync handlers run in a worker thread."""
        binding = self._bindings.get(name)
        if binding is None:
            raise UnknownToolError(name)

        LOG.info("dispatching tool call tool=%s", name)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("tool call args tool=%s args=%s", name, to_bounded_json(arguments))

        if inspect.iscoroutinefunction(binding.handler):
            result = await binding.handler(**arguments)
        else:
            result = await asyncio.to_thread(binding.handler, **arguments)

        LOG.info("tool call finished tool=%s", name)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("tool call result tool=%s result=%s", name, to_bounded_json(result))
        return result

    async def execute(self, invocation: ToolInvocation) -> str:
        """Run a complete invocation and return the serialized result payload.

        Unknown tools, unparsable arguments and handler failures are reported
        in the payload instead of being raised.
        """
        try:
            arguments = invocation.parse_arguments()
        except ValueError as exc:
            LOG.warning("tool arguments could not be parsed tool=%s error=%s", invocation.name, exc)
            return _serialize({"error": f"Error parsing arguments: {exc}"})

        try:
            result = await self.call_tool(invocation.name, arguments)
        except UnknownToolError:
            LOG.warning("tool call requested for unregistered tool=%s", invocation.name)
            return _serialize({"error": NOT_IMPLEMENTED_ERROR})
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOG.warning("tool call failed tool=%s error=%s", invocation.name, exc, exc_info=True)
            return _serialize({"error": str(exc) or exc.__class__.__name__})
        return _serialize(result)

    @staticmethod
    def format_tool_message(tool_call_id: str, content: str) -> dict[str, Any]:
        """Format one OpenAI `role=tool` message for upstream continuation."""
        return {
            "role": ROLE_TOOL_RESULT,
            "tool_call_id": tool_call_id,
            "content": content,
        }


def _serialize(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)
