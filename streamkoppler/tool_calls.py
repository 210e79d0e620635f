"""State machine for tool invocations embedded in a streamed assistant turn.

States are explicit variants: `Idle -> Accumulating -> Ready -> Executed -> Idle`.
Argument fragments are concatenated strictly in arrival order; only one
invocation may be in flight per assistant turn.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Union

from .stream_chunks import delta_tool_calls, finish_reason

LOG = logging.getLogger(__name__)

TOOL_CALLS_FINISH_REASON = "tool_calls"


class ToolProtocolError(RuntimeError):
    """The provider emitted a tool-call sequence the relay cannot follow."""


@dataclass
class ToolInvocation:
    """One provider-requested tool call being assembled from fragments."""

    id: str
    name: str
    index: int | None = None
    fragments: list[str] = field(default_factory=list)
    complete: bool = False

    @property
    def arguments(self) -> str:
        return "".join(self.fragments)

    def parse_arguments(self) -> dict[str, Any]:
        """Parse the assembled argument buffer; only valid once complete."""
        if not self.complete:
            raise ToolProtocolError(f"arguments of tool call {self.id} are still accumulating")
        raw = self.arguments.strip() or "{}"
        parsed = json.loads(raw)
        if not isinstance(parsed, dict):
            raise ValueError("tool arguments must be a JSON object")
        return parsed

    def to_tool_call(self) -> dict[str, Any]:
        """OpenAI-style tool call record for the assistant message."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Accumulating:
    invocation: ToolInvocation


@dataclass(frozen=True)
class Ready:
    invocation: ToolInvocation


@dataclass(frozen=True)
class Executed:
    invocation: ToolInvocation
    result: str


ToolState = Union[Idle, Accumulating, Ready, Executed]


class ToolCallStateMachine:
    """Observes primary-stream chunks and assembles one tool invocation."""

    def __init__(self) -> None:
        self.state: ToolState = Idle()

    @property
    def active(self) -> bool:
        """True while an invocation is being assembled or awaits execution."""
        return not isinstance(self.state, Idle)

    def feed(self, chunk: dict[str, Any]) -> ToolState:
        """Consume one stream chunk and return the resulting state."""
        for fragment in delta_tool_calls(chunk):
            self._accept_fragment(fragment)

        if finish_reason(chunk) == TOOL_CALLS_FINISH_REASON:
            state = self.state
            if isinstance(state, Accumulating):
                state.invocation.complete = True
                self.state = Ready(state.invocation)
                LOG.debug(
                    "tool call ready id=%s name=%s arguments=%s",
                    state.invocation.id,
                    state.invocation.name,
                    state.invocation.arguments,
                )
            elif isinstance(state, Idle):
                raise ToolProtocolError(
                    "Upstream indicated tool_calls but did not provide tool call payloads in stream"
                )
        return self.state

    def _accept_fragment(self, fragment: dict[str, Any]) -> None:
        fragment_id = fragment.get("id") or None
        fragment_index = fragment.get("index") if isinstance(fragment.get("index"), int) else None
        function = fragment.get("function") if isinstance(fragment.get("function"), dict) else {}
        name = function.get("name") or ""
        arguments = function.get("arguments")

        state = self.state
        if isinstance(state, Idle):
            invocation = ToolInvocation(
                id=str(fragment_id or f"call_{uuid.uuid4().hex}"),
                name=str(name),
                index=fragment_index,
            )
            self.state = Accumulating(invocation)
            LOG.info("tool call started id=%s name=%s", invocation.id, invocation.name)
        elif isinstance(state, Accumulating):
            invocation = state.invocation
            if fragment_id is not None and fragment_id != invocation.id:
                raise ToolProtocolError(
                    f"Interleaved tool calls are not supported (got {fragment_id} while assembling {invocation.id})"
                )
            if fragment_index is not None and invocation.index is not None and fragment_index != invocation.index:
                raise ToolProtocolError(
                    f"Interleaved tool calls are not supported (index {fragment_index} while assembling "
                    f"index {invocation.index})"
                )
            if name and not invocation.name:
                invocation.name = str(name)
        else:
            raise ToolProtocolError("Tool call fragment received after the invocation was complete")

        if isinstance(arguments, str) and arguments:
            invocation.fragments.append(arguments)

    def take_ready(self) -> ToolInvocation | None:
        """Return the completed invocation if the machine is in `Ready`."""
        state = self.state
        if isinstance(state, Ready):
            return state.invocation
        return None

    def mark_executed(self, result: str) -> Executed:
        state = self.state
        if not isinstance(state, Ready):
            raise ToolProtocolError(f"Cannot execute tool call from state {type(state).__name__}")
        self.state = Executed(state.invocation, result)
        return self.state

    def reset(self) -> None:
        """Return to `Idle` after the result was folded into history."""
        if not isinstance(self.state, (Idle, Executed)):
            raise ToolProtocolError(f"Cannot reset tool call from state {type(self.state).__name__}")
        self.state = Idle()

    def end_of_stream(self) -> None:
        """Validate that the stream did not end mid-invocation."""
        if isinstance(self.state, Accumulating):
            raise ToolProtocolError(
                f"Upstream stream ended while tool call {self.state.invocation.id} was still accumulating"
            )
