"""
Stream adapter: turns a run into a Server-Sent Events byte stream.

The run executes in its own task and pushes events into a queue; the
consumer side yields them as ``data: <json>\\n\\n`` frames and finishes
with ``data: [DONE]\\n\\n``. Internal error detail never reaches the
caller; errors are mapped to fixed, caller-safe messages.

Example:
    adapter = StreamAdapter(machine, request)
    async for chunk in adapter.iter_bytes():
        await send(chunk)
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import replace
from typing import TYPE_CHECKING

from agent_run_engine.errors import (
    AgentRunError,
    InvalidToolArgumentsError,
    ToolExecutionError,
    ToolNotFoundError,
)
from agent_run_engine.events import StreamEvent
from agent_run_engine.logging import run_logger
from agent_run_engine.models import RunRequest

if TYPE_CHECKING:
    from agent_run_engine.agent import AgentStateMachine

END_MARKER = "data: [DONE]\n\n"

GENERIC_ERROR_MESSAGE = "An unknown error occurred."


def user_facing_error_message(code: str | None, tool_name: str | None = None) -> str:
    """Map an error category to the message shown to the caller."""
    name = tool_name or "unknown"
    if code == ToolNotFoundError.code:
        return f"The model tried to call an unknown tool: {name}"
    if code == InvalidToolArgumentsError.code:
        return f"The model called a tool with invalid arguments: {name}"
    if code == ToolExecutionError.code:
        return f"An error occurred during tool execution: {name}"
    return GENERIC_ERROR_MESSAGE


def error_event(exc: BaseException) -> StreamEvent:
    """Build the terminal error frame for a failed run."""
    code = exc.code if isinstance(exc, AgentRunError) else "unknown"
    tool_name = getattr(exc, "tool_name", None)
    return StreamEvent(
        type="error",
        error=user_facing_error_message(code, tool_name),
        code=code,
    )


def encode_event(event: StreamEvent) -> str:
    """Frame one event as an SSE ``data:`` line."""
    return f"data: {json.dumps(event.to_dict(), default=str)}\n\n"


def _sanitize(event: StreamEvent) -> StreamEvent:
    # Failed tool results carry the raw failure; replace it with the safe message
    if event.type == "tool_result" and event.is_error:
        return replace(
            event,
            content="",
            error=user_facing_error_message(event.code, event.tool_name),
        )
    return event


class StreamAdapter:
    """
    Streams the events of one run.

    The adapter owns an abort signal for the run. If the consumer stops
    iterating early (client disconnect), the run is aborted, its task is
    cancelled and awaited, and no end marker is written.
    """

    def __init__(
        self,
        machine: AgentStateMachine,
        request: RunRequest,
        abort: asyncio.Event | None = None,
    ) -> None:
        self.machine = machine
        self.request = request
        self.abort = abort or asyncio.Event()
        self.log = run_logger("stream", request.conversation_id)

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield the run's events, ending with exactly one ``done`` or ``error``."""
        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()

        async def produce() -> None:
            try:
                await self.machine.run(self.request, emit=queue.put_nowait, abort=self.abort)
            except Exception as exc:
                if isinstance(exc, AgentRunError):
                    self.log.warning("Run failed: %s", exc)
                else:
                    self.log.error("Run failed unexpectedly", exc_info=True)
                queue.put_nowait(error_event(exc))
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(produce())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield _sanitize(event)
        finally:
            if not task.done():
                self.log.info("Stream closed early, aborting run")
                self.abort.set()
                task.cancel()
                await asyncio.wait({task})

    async def iter_sse(self) -> AsyncIterator[str]:
        """Yield SSE frames, followed by the end marker."""
        async with aclosing(self.events()) as events:
            async for event in events:
                yield encode_event(event)
        yield END_MARKER

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        async with aclosing(self.iter_sse()) as frames:
            async for frame in frames:
                yield frame.encode("utf-8")
