"""
Event system for agent runs.

Two channels leave a run:

- ``StreamEvent`` objects, pushed in order to the caller's stream.
- Lifecycle events on an ``EventBus``, for observers such as persistence
  or billing that act on the final run state.

Example:
    from agent_run_engine.events import RUN_END, EventBus

    bus = EventBus()

    @bus.on(RUN_END)
    async def persist(event):
        await store.save(event.conversation_id, event.state.messages)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from agent_run_engine.logging import get_logger

logger = get_logger("events")


# ---------------------------------------------------------------------------
# Lifecycle events
# ---------------------------------------------------------------------------

RUN_START = "run_start"
RUN_END = "run_end"
TURN_START = "turn_start"
TURN_END = "turn_end"
TOOL_RESULT = "tool_result"


@dataclass
class RunStartEvent:
    """Emitted once Setup has completed."""

    conversation_id: str
    agent_name: str
    tool_names: list[str]


@dataclass
class RunEndEvent:
    """Emitted when the run stops, on every exit path."""

    conversation_id: str
    finish_reason: str  # "complete", "max_cycles", "error", "aborted"
    state: Any = None  # RunState, None if Setup failed
    error: str | None = None


@dataclass
class TurnStartEvent:
    """Emitted before each model call."""

    turn: int
    message_count: int  # Messages in the window sent to the model


@dataclass
class TurnEndEvent:
    """Emitted when a turn (a model call plus its tool dispatch) completes."""

    turn: int
    tool_call_count: int
    input_tokens: int
    output_tokens: int


@dataclass
class ToolResultEvent:
    """Emitted for each tool result appended to the transcript."""

    tool_call_id: str
    tool_name: str
    is_error: bool
    turn: int


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass
class StreamEvent:
    """
    A structured event emitted to the caller while a run executes.

    Event type lifecycle for a run:
        run_start
        (turn_start → text_delta* → message → tool_call* → tool_result* → turn_end)+
        done | error
    """

    type: str
    """Event type. One of:
    - ``run_start``
    - ``turn_start``, ``turn_end``
    - ``text_delta``, ``message``
    - ``tool_call``, ``tool_result``
    - ``done``, ``error``
    """

    content: str = ""
    """Text delta, final assistant text, or JSON-encoded tool result."""

    tool_name: str | None = None
    tool_call_id: str | None = None
    arguments: Any = None
    """Tool call arguments (for tool_call)."""

    is_error: bool = False
    """True for error-flagged tool results."""

    turn: int = 0

    error: str | None = None
    """Caller-safe error message (for error and failed tool_result events)."""

    code: str | None = None
    """Error category (for error and failed tool_result events)."""

    finish_reason: str | None = None
    """Finish reason (for done events)."""

    usage: dict[str, int] | None = None
    """Token counters (for turn_end and done events)."""

    data: dict[str, Any] = field(default_factory=dict)
    """Extra fields for run_start."""

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible form, omitting empty fields."""
        out: dict[str, Any] = {"type": self.type}
        if self.content:
            out["content"] = self.content
        if self.tool_name:
            out["tool_name"] = self.tool_name
        if self.tool_call_id:
            out["tool_call_id"] = self.tool_call_id
        if self.arguments is not None:
            out["arguments"] = self.arguments
        if self.is_error:
            out["is_error"] = True
        if self.type in ("turn_start", "turn_end", "message", "tool_call", "tool_result"):
            out["turn"] = self.turn
        if self.error:
            out["error"] = self.error
        if self.code:
            out["code"] = self.code
        if self.finish_reason:
            out["finish_reason"] = self.finish_reason
        if self.usage is not None:
            out["usage"] = dict(self.usage)
        if self.data:
            out.update(self.data)
        return out


# Sink the state machine pushes stream events into
EmitFn = Callable[[StreamEvent], None]


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------

EventHandler = Callable[..., Any]


@dataclass
class _HandlerEntry:
    """Internal: a registered handler with metadata."""

    event: str
    handler: EventHandler
    priority: int = 0  # lower runs first


class EventBus:
    """
    An event bus for run lifecycle events.

    Handlers are called in priority order (lower first) and may be sync or
    async. A failing handler is logged and skipped; it never affects the run.

    Usage:
        bus = EventBus()

        @bus.on("run_end")
        def on_end(event: RunEndEvent):
            print(event.finish_reason)

        unsub = bus.on("turn_end", my_handler)
        unsub()
    """

    def __init__(self) -> None:
        self._handlers: list[_HandlerEntry] = []

    def on(
        self,
        event: str,
        handler: EventHandler | None = None,
        priority: int = 0,
    ) -> Callable[[], None] | Callable[[EventHandler], EventHandler]:
        """
        Register an event handler.

        Called with a handler it returns an unsubscribe function; called
        without one it acts as a decorator.
        """
        if handler is not None:
            entry = _HandlerEntry(event=event, handler=handler, priority=priority)
            self._handlers.append(entry)

            def unsubscribe() -> None:
                try:
                    self._handlers.remove(entry)
                except ValueError:
                    pass

            return unsubscribe

        def decorator(fn: EventHandler) -> EventHandler:
            self.on(event, fn, priority=priority)
            return fn

        return decorator

    def off(self, event: str, handler: EventHandler) -> None:
        """Remove a specific handler for an event."""
        self._handlers = [
            h for h in self._handlers if not (h.event == event and h.handler is handler)
        ]

    def has_handlers(self, event: str) -> bool:
        """Check if any handlers are registered for an event."""
        return any(h.event == event for h in self._handlers)

    async def emit(self, event: str, data: Any = None) -> list[Any]:
        """
        Emit an event and collect non-None handler results.

        Args:
            event: Event name
            data: Event data object (e.g., RunEndEvent)
        """
        relevant = sorted(
            (h for h in self._handlers if h.event == event),
            key=lambda h: h.priority,
        )

        results: list[Any] = []
        for entry in relevant:
            try:
                result = entry.handler(data)
                if asyncio.iscoroutine(result) or asyncio.isfuture(result):
                    result = await result
                if result is not None:
                    results.append(result)
            except Exception as e:
                logger.warning("Event handler error (event=%s): %s", event, e)
        return results
