"""
Agent state machine.

Drives one run through Setup, then alternating ModelCall and ToolDispatch
steps, until the model answers without requesting tools.

    SETUP -> MODEL_CALL -> TOOL_DISPATCH -> MODEL_CALL -> ... -> DONE

The run state is an immutable value. Each step returns a new RunState
built by applying a StateUpdate, so a reference to an earlier state (or
its transcript) never changes underneath its holder.

Example:
    machine = create_state_machine(EngineConfig.from_env())
    state = await machine.run(request, emit=print)
    print(state.messages[-1].text_content)
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, TypeVar

from agent_run_engine.adapters.base import ModelClient, create_model_client
from agent_run_engine.config import EngineConfig
from agent_run_engine.context import build_context_window, sanitize_incomplete_tool_calls
from agent_run_engine.errors import (
    InvalidToolArgumentsError,
    MissingCredentialsError,
    RunAbortedError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
)
from agent_run_engine.events import (
    RUN_END,
    RUN_START,
    TOOL_RESULT,
    TURN_END,
    TURN_START,
    EmitFn,
    EventBus,
    RunEndEvent,
    RunStartEvent,
    StreamEvent,
    ToolResultEvent,
    TurnEndEvent,
    TurnStartEvent,
)
from agent_run_engine.identity import (
    AgentIdentityProvider,
    HttpAgentIdentityProvider,
    StaticAgentIdentityProvider,
)
from agent_run_engine.invoker import ModelInvoker
from agent_run_engine.logging import get_logger, run_logger
from agent_run_engine.models import AgentIdentity, Message, RunRequest, ToolCall, ToolResult
from agent_run_engine.prompts import build_system_prompt
from agent_run_engine.tools.builtin import register_builtin_tools
from agent_run_engine.tools.catalog import HttpToolCatalog
from agent_run_engine.tools.registry import ToolHandle, ToolLoader, ToolRegistry
from agent_run_engine.tools.remote import RemoteToolFactory

logger = get_logger("agent")

T = TypeVar("T")


class AgentStep(str, Enum):
    SETUP = "setup"
    MODEL_CALL = "model_call"
    TOOL_DISPATCH = "tool_dispatch"
    DONE = "done"


@dataclass(frozen=True)
class StateUpdate:
    """A delta produced by one step. Merged into RunState by its reducers."""

    messages: tuple[Message, ...] = ()
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class RunState:
    """State threaded through one run."""

    conversation_id: str
    messages: tuple[Message, ...] = ()
    input_tokens: int = 0
    output_tokens: int = 0
    agent: AgentIdentity | None = None  # Set once in Setup
    tools: tuple[ToolHandle, ...] = ()  # Set once in Setup
    system_prompt: str = ""
    cycles: int = 0  # Completed model calls
    finish_reason: str | None = None

    def apply(self, update: StateUpdate) -> RunState:
        """Merge ``update``: messages concatenate, token counters sum."""
        if update.input_tokens < 0 or update.output_tokens < 0:
            raise ValueError("Token counters never decrease")
        return replace(
            self,
            messages=self.messages + tuple(update.messages),
            input_tokens=self.input_tokens + update.input_tokens,
            output_tokens=self.output_tokens + update.output_tokens,
        )

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    @property
    def usage(self) -> dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}

    def tool_names(self) -> list[str]:
        return [t.name for t in self.tools]


def _discard(_event: StreamEvent) -> None:
    pass


class AgentStateMachine:
    """
    Runs the agent loop for one request at a time per call.

    A single instance is safe to share across concurrent runs: it holds
    only collaborators, never per-run state.

    Args:
        invoker: Model invoker (owns the retry policy)
        identity_provider: Loads the agent bound to a conversation
        tool_loader: Builds the per-run tool set
        token_budget: Max estimated input tokens per model call
        thinking_budget: Tokens reserved for model reasoning
        max_cycles: Max model calls per run (None = unbounded)
        events: Lifecycle event bus
        prompt_builder: Builds the system prompt from the agent identity
    """

    def __init__(
        self,
        invoker: ModelInvoker,
        identity_provider: AgentIdentityProvider,
        tool_loader: ToolLoader,
        *,
        token_budget: int = 20_000,
        thinking_budget: int = 1024,
        max_cycles: int | None = 25,
        events: EventBus | None = None,
        prompt_builder: Callable[[AgentIdentity], str] = build_system_prompt,
    ) -> None:
        self.invoker = invoker
        self.identity_provider = identity_provider
        self.tool_loader = tool_loader
        self.token_budget = token_budget
        self.thinking_budget = thinking_budget
        self.max_cycles = max_cycles
        self.events = events or EventBus()
        self.prompt_builder = prompt_builder

    async def aclose(self) -> None:
        """Close every collaborator that holds a network client."""
        collaborators = (
            self.invoker.client,
            self.identity_provider,
            self.tool_loader.catalog,
            self.tool_loader.registry.fallback,
        )
        for collaborator in collaborators:
            close = getattr(collaborator, "close", None)
            if close is not None:
                await close()

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def run(
        self,
        request: RunRequest,
        emit: EmitFn | None = None,
        abort: asyncio.Event | None = None,
    ) -> RunState:
        """
        Execute one run to completion.

        Stream events are pushed to ``emit`` in order. Setting ``abort``
        cancels the in-flight model call or tool invocations and raises
        RunAbortedError.

        Returns:
            The final RunState

        Raises:
            MissingCredentialsError, AgentLoadError, ToolCatalogError: Setup failed
            ModelFatalError: The model call failed for good
            RunAbortedError: The run was aborted
        """
        emit = emit or _discard
        log = run_logger("agent", request.conversation_id)
        state: RunState | None = None
        finish_reason = "error"
        error: str | None = None

        try:
            state = await self._setup(request, abort)
            emit(
                StreamEvent(
                    type="run_start",
                    data={
                        "conversation_id": state.conversation_id,
                        "agent": state.agent.name if state.agent else None,
                        "tools": state.tool_names(),
                    },
                )
            )
            await self.events.emit(
                RUN_START,
                RunStartEvent(
                    conversation_id=state.conversation_id,
                    agent_name=state.agent.name if state.agent else "",
                    tool_names=state.tool_names(),
                ),
            )

            step = AgentStep.MODEL_CALL
            finish = "complete"
            while step is not AgentStep.DONE:
                self._check_abort(abort)
                if step is AgentStep.MODEL_CALL:
                    state = await self._model_call(state, emit, abort)
                    step = self._route(state)
                    if step is AgentStep.DONE:
                        await self._end_turn(state, 0, emit)
                else:
                    state, dispatched = await self._tool_dispatch(state, emit, abort)
                    await self._end_turn(state, dispatched, emit)
                    if self.max_cycles is not None and state.cycles >= self.max_cycles:
                        log.warning("Reached the cycle limit of %d", self.max_cycles)
                        finish = "max_cycles"
                        step = AgentStep.DONE
                    else:
                        step = AgentStep.MODEL_CALL

            finish_reason = finish
            state = replace(state, finish_reason=finish_reason)
            emit(StreamEvent(type="done", finish_reason=finish_reason, usage=state.usage))
            log.info(
                "Run finished (%s) after %d model calls, %d in / %d out tokens",
                finish_reason,
                state.cycles,
                state.input_tokens,
                state.output_tokens,
            )
            return state
        except (RunAbortedError, asyncio.CancelledError):
            finish_reason = "aborted"
            log.info("Run aborted")
            raise
        except Exception as exc:
            error = str(exc)
            log.error("Run failed: %s", exc)
            raise
        finally:
            await self.events.emit(
                RUN_END,
                RunEndEvent(
                    conversation_id=request.conversation_id,
                    finish_reason=finish_reason,
                    state=state,
                    error=error,
                ),
            )

    @staticmethod
    def _route(state: RunState) -> AgentStep:
        last = state.last_message
        if last is None or last.role != "assistant":
            return AgentStep.DONE
        if last.tool_calls:
            return AgentStep.TOOL_DISPATCH
        return AgentStep.DONE

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _setup(self, request: RunRequest, abort: asyncio.Event | None) -> RunState:
        missing = request.credentials.missing_fields()
        if missing:
            raise MissingCredentialsError(missing)

        identity = await self._race(
            self.identity_provider.get_agent(request.conversation_id, request.credentials),
            abort,
        )
        tools = await self._race(
            self.tool_loader.load(request.credentials, request.conversation_id),
            abort,
        )

        messages = sanitize_incomplete_tool_calls(request.messages)
        logger.debug(
            "Setup complete for %s: agent=%s, %d tools, %d messages",
            request.conversation_id,
            identity.name,
            len(tools),
            len(messages),
        )
        return RunState(
            conversation_id=request.conversation_id,
            messages=tuple(messages),
            agent=identity,
            tools=tuple(tools),
            system_prompt=self.prompt_builder(identity),
        )

    async def _model_call(
        self, state: RunState, emit: EmitFn, abort: asyncio.Event | None
    ) -> RunState:
        turn = state.cycles
        window = build_context_window(
            state.system_prompt, state.messages, self.token_budget, self.thinking_budget
        )
        emit(StreamEvent(type="turn_start", turn=turn))
        await self.events.emit(TURN_START, TurnStartEvent(turn=turn, message_count=len(window)))

        def on_text_delta(text: str) -> None:
            emit(StreamEvent(type="text_delta", content=text, turn=turn))

        response = await self._race(
            self.invoker.invoke(
                window,
                [t.definition() for t in state.tools],
                system_prompt=state.system_prompt,
                on_text_delta=on_text_delta,
            ),
            abort,
        )

        message = response.message
        state = state.apply(
            StateUpdate(
                messages=(message,),
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
            )
        )
        state = replace(state, cycles=state.cycles + 1)

        emit(StreamEvent(type="message", content=message.text_content, turn=turn))
        for tc in message.tool_calls:
            emit(
                StreamEvent(
                    type="tool_call",
                    tool_name=tc.name,
                    tool_call_id=tc.id,
                    arguments=tc.arguments,
                    turn=turn,
                )
            )
        return state

    async def _tool_dispatch(
        self, state: RunState, emit: EmitFn, abort: asyncio.Event | None
    ) -> tuple[RunState, int]:
        turn = state.cycles - 1
        calls = state.last_message.tool_calls if state.last_message else ()
        handles = {t.name: t for t in state.tools}

        # Results come back in issue order regardless of completion order
        results: list[ToolResult] = await self._race(
            asyncio.gather(*(self._dispatch_one(tc, handles) for tc in calls)),
            abort,
        )

        state = state.apply(StateUpdate(messages=tuple(r.to_message() for r in results)))

        for result, message in zip(results, state.messages[-len(results):]):
            code = result.result.get("code") if result.is_error else None
            emit(
                StreamEvent(
                    type="tool_result",
                    tool_name=result.name,
                    tool_call_id=result.tool_call_id,
                    content=message.text_content,
                    is_error=result.is_error,
                    code=code,
                    turn=turn,
                )
            )
            await self.events.emit(
                TOOL_RESULT,
                ToolResultEvent(
                    tool_call_id=result.tool_call_id,
                    tool_name=result.name,
                    is_error=result.is_error,
                    turn=turn,
                ),
            )
        return state, len(results)

    async def _dispatch_one(self, call: ToolCall, handles: dict[str, ToolHandle]) -> ToolResult:
        handle = handles.get(call.name)
        if handle is None:
            logger.warning("Model called unknown tool: %s", call.name)
            return _error_result(
                call,
                ToolNotFoundError(
                    call.name,
                    f"No such tool: {call.name}",
                    details={"available_tools": sorted(handles)},
                ),
            )

        try:
            arguments = parse_tool_arguments(call.arguments)
        except ValueError as exc:
            return _error_result(call, InvalidToolArgumentsError(call.name, str(exc)))

        logger.debug("Invoking tool %s (%s)", call.name, call.id)
        outcome = await handle.invoke(arguments)
        if outcome.success:
            return ToolResult(tool_call_id=call.id, name=call.name, result=outcome.data)

        error_cls = (
            InvalidToolArgumentsError
            if outcome.kind == "invalid_arguments"
            else ToolExecutionError
        )
        logger.info("Tool %s failed: %s", call.name, outcome.error)
        return _error_result(
            call, error_cls(call.name, outcome.error or "Tool failed", details=outcome.details)
        )

    async def _end_turn(self, state: RunState, tool_call_count: int, emit: EmitFn) -> None:
        turn = state.cycles - 1
        emit(StreamEvent(type="turn_end", turn=turn, usage=state.usage))
        await self.events.emit(
            TURN_END,
            TurnEndEvent(
                turn=turn,
                tool_call_count=tool_call_count,
                input_tokens=state.input_tokens,
                output_tokens=state.output_tokens,
            ),
        )

    # ------------------------------------------------------------------
    # Abort
    # ------------------------------------------------------------------

    @staticmethod
    def _check_abort(abort: asyncio.Event | None) -> None:
        if abort is not None and abort.is_set():
            raise RunAbortedError("Run aborted")

    @staticmethod
    async def _race(aw: Awaitable[T], abort: asyncio.Event | None) -> T:
        """Await ``aw``, cancelling it if ``abort`` is set first."""
        task = asyncio.ensure_future(aw)
        if abort is None:
            return await task

        waiter = asyncio.ensure_future(abort.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.wait({task})

        if task in done:
            return task.result()
        raise RunAbortedError("Run aborted")


def parse_tool_arguments(arguments: Any) -> dict[str, Any]:
    """
    Normalize tool call arguments to a JSON object.

    Raises:
        ValueError: Arguments are not valid JSON or not an object
    """
    if arguments is None:
        return {}
    if isinstance(arguments, str):
        if not arguments.strip():
            return {}
        try:
            arguments = json.loads(arguments)
        except ValueError as exc:
            raise ValueError(f"Arguments are not valid JSON: {exc}") from exc
    if not isinstance(arguments, dict):
        raise ValueError(f"Arguments must be a JSON object, got {type(arguments).__name__}")
    return arguments


def _error_result(call: ToolCall, error: ToolError) -> ToolResult:
    return ToolResult(
        tool_call_id=call.id,
        name=call.name,
        result={
            "success": False,
            "error": str(error),
            "details": error.details,
            "code": error.code,
        },
        is_error=True,
    )


def create_state_machine(
    config: EngineConfig,
    model_client: ModelClient | None = None,
    events: EventBus | None = None,
) -> AgentStateMachine:
    """
    Wire a state machine from configuration.

    Service URLs left unset fall back to local stand-ins: a generic agent
    identity, no catalog, and no remote tools.
    """
    client = model_client or create_model_client(config)

    if config.identity_url:
        identity_provider: AgentIdentityProvider = HttpAgentIdentityProvider(
            config.identity_url, timeout=config.service_timeout
        )
    else:
        identity_provider = StaticAgentIdentityProvider(AgentIdentity(name="Agent"))

    fallback = (
        RemoteToolFactory(config.tool_service_url, timeout=config.service_timeout)
        if config.tool_service_url
        else None
    )
    registry = ToolRegistry(fallback=fallback)
    register_builtin_tools(registry)

    catalog = (
        HttpToolCatalog(config.catalog_url, timeout=config.service_timeout)
        if config.catalog_url
        else None
    )

    return AgentStateMachine(
        ModelInvoker.from_config(client, config),
        identity_provider,
        ToolLoader(registry, catalog=catalog, static_tool_ids=config.static_tool_ids),
        token_budget=config.token_budget,
        thinking_budget=config.thinking_budget,
        max_cycles=config.max_cycles,
        events=events,
    )

