"""Shared pytest fixtures for agent-run-engine tests."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

import pytest

from agent_run_engine.adapters.base import ModelClient, ModelResponse
from agent_run_engine.agent import AgentStateMachine
from agent_run_engine.errors import ModelError, ModelFatalError
from agent_run_engine.events import EventBus
from agent_run_engine.identity import StaticAgentIdentityProvider
from agent_run_engine.invoker import ModelInvoker
from agent_run_engine.models import (
    AgentIdentity,
    CallerCredentials,
    Message,
    RunRequest,
    ToolCall,
)
from agent_run_engine.tools.builtin import register_builtin_tools
from agent_run_engine.tools.catalog import StaticToolCatalog
from agent_run_engine.tools.registry import ToolLoader, ToolRegistry


def text_response(text: str, input_tokens: int = 10, output_tokens: int = 5) -> ModelResponse:
    return ModelResponse(
        message=Message(role="assistant", content=text),
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )


def tool_response(*calls: ToolCall, text: str = "", input_tokens: int = 10, output_tokens: int = 5) -> ModelResponse:
    return ModelResponse(
        message=Message(role="assistant", content=text, tool_calls=tuple(calls)),
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )


class FakeModelClient(ModelClient):
    """Replays scripted responses. Exceptions in the script are raised."""

    model = "fake-model"

    def __init__(self, responses: Sequence[ModelResponse | BaseException] = ()) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def complete(self, messages, tools, *, system_prompt, on_text_delta=None):
        self.calls.append(
            {"messages": list(messages), "tools": list(tools), "system_prompt": system_prompt}
        )
        if not self.responses:
            raise AssertionError("Unexpected model call")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if on_text_delta is not None and item.message.text_content:
            on_text_delta(item.message.text_content)
        return item

    def classify_error(self, exc: Exception) -> ModelError:
        return ModelFatalError(str(exc))


class BlockingModelClient(ModelClient):
    """Never answers; records whether its call was cancelled."""

    model = "blocking-model"

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False

    async def complete(self, messages, tools, *, system_prompt, on_text_delta=None):
        self.started.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        raise AssertionError("Blocking client should have been cancelled")

    def classify_error(self, exc: Exception) -> ModelError:
        return ModelFatalError(str(exc))


class SleepRecorder:
    """Injectable sleep that records waits instead of sleeping."""

    def __init__(self) -> None:
        self.waits: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


@pytest.fixture
def credentials() -> CallerCredentials:
    return CallerCredentials(
        client_user_id="user-1",
        client_organization_id="org-1",
        platform_user_id="platform-1",
        platform_api_key="secret-key",
    )


@pytest.fixture
def identity() -> AgentIdentity:
    return AgentIdentity(name="Ada", memory="Helps with arithmetic.", id="agent-1", job_title="Analyst")


@pytest.fixture
def make_request(credentials):
    def _make(*messages: Message, conversation_id: str = "conv-1", creds: CallerCredentials | None = None) -> RunRequest:
        if not messages:
            messages = (Message(role="user", content="What's 2+2 using the calculator tool"),)
        return RunRequest(
            conversation_id=conversation_id,
            messages=tuple(messages),
            credentials=creds or credentials,
        )

    return _make


@pytest.fixture
def registry() -> ToolRegistry:
    registry = ToolRegistry()
    register_builtin_tools(registry)
    return registry


@pytest.fixture
def make_machine(registry, identity):
    def _make(
        client: ModelClient,
        *,
        catalog: Any = None,
        events: EventBus | None = None,
        max_cycles: int | None = 25,
        token_budget: int = 20_000,
        thinking_budget: int = 1024,
    ) -> AgentStateMachine:
        invoker = ModelInvoker(client, sleep=SleepRecorder(), attempt_timeout=None)
        loader = ToolLoader(
            registry,
            catalog=catalog or StaticToolCatalog(),
            static_tool_ids=["utility_get_current_datetime", "calculator"],
        )
        return AgentStateMachine(
            invoker,
            StaticAgentIdentityProvider(identity),
            loader,
            token_budget=token_budget,
            thinking_budget=thinking_budget,
            max_cycles=max_cycles,
            events=events,
        )

    return _make
