"""Tests for the agent state machine."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from agent_run_engine.agent import (
    AgentStateMachine,
    AgentStep,
    RunState,
    StateUpdate,
    create_state_machine,
    parse_tool_arguments,
)
from agent_run_engine.config import EngineConfig
from agent_run_engine.context import estimate_tokens
from agent_run_engine.errors import (
    MissingCredentialsError,
    ModelFatalError,
    RunAbortedError,
    ToolCatalogError,
)
from agent_run_engine.events import RUN_END, RUN_START, TOOL_RESULT, TURN_END, EventBus, StreamEvent
from agent_run_engine.identity import HttpAgentIdentityProvider, StaticAgentIdentityProvider
from agent_run_engine.models import CallerCredentials, Message, ToolCall
from agent_run_engine.prompts import build_system_prompt
from agent_run_engine.tools.catalog import HttpToolCatalog, StaticToolCatalog

from conftest import FakeModelClient, text_response, tool_response

EMPTY_SCHEMA = {"type": "object", "properties": {}}


def _add_call(call_id: str = "c1", **arguments) -> ToolCall:
    return ToolCall(id=call_id, name="calculator", arguments=arguments or {"op": "add", "a": 2, "b": 2})


def _tool_payload(message: Message) -> dict:
    assert message.role == "tool"
    return json.loads(message.text_content)


class FailingCatalog:
    async def list_tool_ids(self, credentials, conversation_id):
        raise ToolCatalogError("catalog down")


class TestRunState:
    def test_apply_concatenates_and_sums(self) -> None:
        state = RunState(conversation_id="c", messages=(Message(role="user", content="hi"),))
        new = state.apply(
            StateUpdate(
                messages=(Message(role="assistant", content="hello"),),
                input_tokens=3,
                output_tokens=2,
            )
        )
        assert len(new.messages) == 2
        assert new.usage == {"input_tokens": 3, "output_tokens": 2}
        assert len(state.messages) == 1
        assert state.input_tokens == 0

    def test_apply_rejects_negative_tokens(self) -> None:
        state = RunState(conversation_id="c")
        with pytest.raises(ValueError):
            state.apply(StateUpdate(input_tokens=-1))

    def test_route(self) -> None:
        route = AgentStateMachine._route
        assert route(RunState(conversation_id="c")) is AgentStep.DONE
        user = Message(role="user", content="hi")
        assert route(RunState(conversation_id="c", messages=(user,))) is AgentStep.DONE
        answer = Message(role="assistant", content="done")
        assert route(RunState(conversation_id="c", messages=(user, answer))) is AgentStep.DONE
        asking = Message(role="assistant", content="", tool_calls=(_add_call(),))
        assert route(RunState(conversation_id="c", messages=(user, asking))) is AgentStep.TOOL_DISPATCH


class TestParseToolArguments:
    def test_empty_values(self) -> None:
        assert parse_tool_arguments(None) == {}
        assert parse_tool_arguments("") == {}
        assert parse_tool_arguments("   ") == {}

    def test_json_object(self) -> None:
        assert parse_tool_arguments('{"a": 1}') == {"a": 1}
        assert parse_tool_arguments({"a": 1}) == {"a": 1}

    def test_invalid(self) -> None:
        with pytest.raises(ValueError, match="valid JSON"):
            parse_tool_arguments("{not json")
        with pytest.raises(ValueError, match="JSON object"):
            parse_tool_arguments("[1, 2]")
        with pytest.raises(ValueError, match="JSON object"):
            parse_tool_arguments(3)


class TestAgentRun:
    @pytest.mark.asyncio
    async def test_calculator_round_trip(self, make_machine, make_request) -> None:
        client = FakeModelClient(
            [
                tool_response(_add_call(), input_tokens=12, output_tokens=4),
                text_response("2 + 2 = 4", input_tokens=20, output_tokens=6),
            ]
        )
        state = await make_machine(client).run(make_request())

        assert [m.role for m in state.messages] == ["user", "assistant", "tool", "assistant"]
        assert _tool_payload(state.messages[2]) == {"result": 4}
        assert state.messages[2].tool_call_id == "c1"
        assert state.messages[-1].text_content == "2 + 2 = 4"
        assert state.finish_reason == "complete"
        assert state.cycles == 2
        assert state.usage == {"input_tokens": 32, "output_tokens": 10}
        assert state.agent.name == "Ada"
        assert "calculator" in state.tool_names()

    @pytest.mark.asyncio
    async def test_model_sees_tools_and_system_prompt(self, make_machine, make_request, identity) -> None:
        client = FakeModelClient([text_response("hello")])
        await make_machine(client).run(make_request())

        call = client.calls[0]
        assert call["system_prompt"] == build_system_prompt(identity)
        assert sorted(t["name"] for t in call["tools"]) == ["calculator", "utility_get_current_datetime"]

    @pytest.mark.asyncio
    async def test_plain_answer_makes_one_call(self, make_machine, make_request) -> None:
        client = FakeModelClient([text_response("Hi there")])
        state = await make_machine(client).run(make_request(Message(role="user", content="hi")))
        assert len(client.calls) == 1
        assert state.cycles == 1
        assert len(state.messages) == 2

    @pytest.mark.asyncio
    async def test_results_keep_issue_order(self, make_machine, make_request, registry) -> None:
        completed: list[str] = []

        async def slow(args):
            await asyncio.sleep(0.05)
            completed.append("slow")
            return "slow"

        def fast(args):
            completed.append("fast")
            return "fast"

        registry.register_function("slow", "Slow tool", EMPTY_SCHEMA, slow)
        registry.register_function("fast", "Fast tool", EMPTY_SCHEMA, fast)
        client = FakeModelClient(
            [
                tool_response(ToolCall(id="1", name="slow"), ToolCall(id="2", name="fast")),
                text_response("done"),
            ]
        )
        machine = make_machine(client, catalog=StaticToolCatalog(["slow", "fast"]))
        state = await machine.run(make_request())

        assert completed == ["fast", "slow"]
        results = [m for m in state.messages if m.role == "tool"]
        assert [m.tool_call_id for m in results] == ["1", "2"]
        assert [json.loads(m.text_content) for m in results] == ["slow", "fast"]

    @pytest.mark.asyncio
    async def test_unknown_tool_is_reported_to_model(self, make_machine, make_request) -> None:
        client = FakeModelClient(
            [
                tool_response(ToolCall(id="x1", name="send_email", arguments={})),
                text_response("I cannot send email."),
            ]
        )
        state = await make_machine(client).run(make_request())

        result = state.messages[2]
        assert result.is_error is True
        payload = _tool_payload(result)
        assert payload["success"] is False
        assert payload["code"] == "unknown_tool"
        assert payload["details"] == {
            "available_tools": ["calculator", "utility_get_current_datetime"]
        }
        assert state.finish_reason == "complete"
        assert client.calls[1]["messages"][-1] == result

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "arguments",
        ['{"op": "add", "a": 2', "[1, 2]", {"op": "add", "a": "two", "b": 2}, {"op": "add"}],
    )
    async def test_invalid_arguments(self, make_machine, make_request, arguments) -> None:
        client = FakeModelClient(
            [
                tool_response(ToolCall(id="c1", name="calculator", arguments=arguments)),
                text_response("Sorry."),
            ]
        )
        state = await make_machine(client).run(make_request())

        payload = _tool_payload(state.messages[2])
        assert payload["code"] == "invalid_tool_arguments"
        assert state.messages[2].is_error is True

    @pytest.mark.asyncio
    async def test_tool_execution_error(self, make_machine, make_request) -> None:
        client = FakeModelClient(
            [
                tool_response(_add_call(op="divide", a=1, b=0)),
                text_response("Cannot divide by zero."),
            ]
        )
        state = await make_machine(client).run(make_request())

        payload = _tool_payload(state.messages[2])
        assert payload["code"] == "tool_execution"
        assert payload["error"] == "Division by zero"
        assert state.finish_reason == "complete"

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_before_model_call(self, make_machine, make_request) -> None:
        client = FakeModelClient([text_response("never")])
        creds = CallerCredentials(client_user_id="user-1")

        with pytest.raises(MissingCredentialsError) as exc_info:
            await make_machine(client).run(make_request(creds=creds))

        assert "platform_api_key" in exc_info.value.missing
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_catalog_failure_is_fatal(self, make_machine, make_request) -> None:
        client = FakeModelClient([text_response("never")])
        with pytest.raises(ToolCatalogError):
            await make_machine(client, catalog=FailingCatalog()).run(make_request())
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_fatal_model_error_propagates(self, make_machine, make_request) -> None:
        bus = EventBus()
        ended = []
        bus.on(RUN_END, ended.append)
        client = FakeModelClient([ModelFatalError("invalid request")])

        with pytest.raises(ModelFatalError):
            await make_machine(client, events=bus).run(make_request())

        assert ended[0].finish_reason == "error"
        assert ended[0].error == "invalid request"
        assert ended[0].state.cycles == 0

    @pytest.mark.asyncio
    async def test_setup_failure_ends_without_state(self, make_machine, make_request) -> None:
        bus = EventBus()
        ended = []
        bus.on(RUN_END, ended.append)

        with pytest.raises(ToolCatalogError):
            await make_machine(FakeModelClient(), catalog=FailingCatalog(), events=bus).run(make_request())

        assert ended[0].finish_reason == "error"
        assert ended[0].state is None

    @pytest.mark.asyncio
    async def test_max_cycles_stops_the_loop(self, make_machine, make_request) -> None:
        client = FakeModelClient([tool_response(_add_call("c1")), tool_response(_add_call("c2"))])
        events: list[StreamEvent] = []

        state = await make_machine(client, max_cycles=2).run(make_request(), emit=events.append)

        assert len(client.calls) == 2
        assert [m.role for m in state.messages] == ["user", "assistant", "tool", "assistant", "tool"]
        assert state.finish_reason == "max_cycles"
        assert events[-1].type == "done"
        assert events[-1].finish_reason == "max_cycles"

    @pytest.mark.asyncio
    async def test_abort_cancels_running_tool(self, make_machine, make_request, registry) -> None:
        started = asyncio.Event()
        cancelled = []

        async def hang(args):
            started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        registry.register_function("hang", "Never finishes", EMPTY_SCHEMA, hang)
        bus = EventBus()
        ended = []
        bus.on(RUN_END, ended.append)
        client = FakeModelClient([tool_response(ToolCall(id="h1", name="hang"))])
        machine = make_machine(client, catalog=StaticToolCatalog(["hang"]), events=bus)
        abort = asyncio.Event()

        task = asyncio.create_task(machine.run(make_request(), abort=abort))
        await asyncio.wait_for(started.wait(), timeout=5)
        abort.set()

        with pytest.raises(RunAbortedError):
            await task
        assert cancelled == [True]
        assert ended[0].finish_reason == "aborted"

    @pytest.mark.asyncio
    async def test_preset_abort_skips_model(self, make_machine, make_request) -> None:
        client = FakeModelClient([text_response("never")])
        abort = asyncio.Event()
        abort.set()

        with pytest.raises(RunAbortedError):
            await make_machine(client).run(make_request(), abort=abort)
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_stream_event_order(self, make_machine, make_request) -> None:
        client = FakeModelClient([tool_response(_add_call()), text_response("4")])
        events: list[StreamEvent] = []

        await make_machine(client).run(make_request(), emit=events.append)

        assert [e.type for e in events] == [
            "run_start",
            "turn_start",
            "message",
            "tool_call",
            "tool_result",
            "turn_end",
            "turn_start",
            "text_delta",
            "message",
            "turn_end",
            "done",
        ]
        assert [e.turn for e in events if e.type == "turn_end"] == [0, 1]
        assert events[3].tool_call_id == "c1"
        assert events[7].content == "4"
        assert events[0].data["agent"] == "Ada"
        assert events[-1].usage == {"input_tokens": 20, "output_tokens": 10}

    @pytest.mark.asyncio
    async def test_failed_tool_result_event_carries_code(self, make_machine, make_request) -> None:
        client = FakeModelClient([tool_response(ToolCall(id="x", name="nope")), text_response("ok")])
        events: list[StreamEvent] = []

        await make_machine(client).run(make_request(), emit=events.append)

        (result,) = [e for e in events if e.type == "tool_result"]
        assert result.is_error is True
        assert result.code == "unknown_tool"
        assert result.tool_name == "nope"

    @pytest.mark.asyncio
    async def test_lifecycle_events(self, make_machine, make_request) -> None:
        bus = EventBus()
        seen: list[str] = []
        final = []
        bus.on(RUN_START, lambda e: seen.append("run_start"))
        bus.on(TOOL_RESULT, lambda e: seen.append(f"tool_result:{e.tool_name}"))
        bus.on(TURN_END, lambda e: seen.append(f"turn_end:{e.turn}"))
        bus.on(RUN_END, lambda e: final.append(e))
        bus.on(RUN_END, lambda e: 1 / 0)
        client = FakeModelClient([tool_response(_add_call()), text_response("4")])

        state = await make_machine(client, events=bus).run(make_request())

        assert seen == ["run_start", "tool_result:calculator", "turn_end:0", "turn_end:1"]
        assert final[0].finish_reason == "complete"
        assert final[0].state is state
        assert len(final[0].state.messages) == 4

    @pytest.mark.asyncio
    async def test_setup_drops_unanswered_tool_calls(self, make_machine, make_request) -> None:
        question = Message(role="user", content="What time is it?")
        dangling = Message(
            role="assistant",
            content="",
            tool_calls=(ToolCall(id="old", name="utility_get_current_datetime"),),
        )
        client = FakeModelClient([text_response("Noon.")])

        state = await make_machine(client).run(make_request(question, dangling))

        assert client.calls[0]["messages"] == [question]
        assert state.messages == (question, state.messages[-1])

    @pytest.mark.asyncio
    async def test_small_budget_trims_window_not_state(self, make_machine, make_request, identity) -> None:
        history = (
            Message(role="user", content="a" * 400),
            Message(role="assistant", content="b" * 400),
            Message(role="user", content="c" * 40),
        )
        budget = estimate_tokens(build_system_prompt(identity)) + 50
        client = FakeModelClient([text_response("ok")])

        state = await make_machine(client, token_budget=budget, thinking_budget=0).run(
            make_request(*history)
        )

        assert client.calls[0]["messages"] == [history[2]]
        assert state.messages[:3] == history
        assert len(state.messages) == 4

    @pytest.mark.asyncio
    async def test_machine_is_reusable(self, make_machine, make_request) -> None:
        client = FakeModelClient([text_response("one"), text_response("two")])
        machine = make_machine(client)

        first = await machine.run(make_request(conversation_id="a"))
        second = await machine.run(make_request(conversation_id="b"))

        assert first.messages[-1].text_content == "one"
        assert second.messages[-1].text_content == "two"
        assert len(second.messages) == 2


class TestCreateStateMachine:
    def test_local_fallbacks(self) -> None:
        machine = create_state_machine(EngineConfig(max_cycles=7), model_client=FakeModelClient())
        assert isinstance(machine.identity_provider, StaticAgentIdentityProvider)
        assert machine.tool_loader.catalog is None
        assert machine.tool_loader.registry.fallback is None
        assert machine.max_cycles == 7
        assert machine.tool_loader.registry.has("calculator")

    def test_service_clients(self) -> None:
        config = EngineConfig(
            identity_url="http://agents:3000",
            catalog_url="http://catalog:3050",
            tool_service_url="http://tools:3050",
        )
        machine = create_state_machine(config, model_client=FakeModelClient())
        assert isinstance(machine.identity_provider, HttpAgentIdentityProvider)
        assert isinstance(machine.tool_loader.catalog, HttpToolCatalog)
        assert machine.tool_loader.registry.fallback is not None
        assert machine.invoker.max_attempts == config.max_attempts

    @pytest.mark.asyncio
    async def test_aclose_closes_service_clients(self) -> None:
        config = EngineConfig(
            identity_url="http://agents:3000",
            catalog_url="http://catalog:3050",
            tool_service_url="http://tools:3050",
        )
        model_client = FakeModelClient()
        model_client.close = AsyncMock()
        machine = create_state_machine(config, model_client=model_client)

        await machine.aclose()

        model_client.close.assert_awaited_once()
        assert machine.identity_provider._client.is_closed
        assert machine.tool_loader.catalog._client.is_closed
        assert machine.tool_loader.registry.fallback._client.is_closed

    @pytest.mark.asyncio
    async def test_aclose_with_local_fallbacks(self) -> None:
        model_client = FakeModelClient()
        model_client.close = AsyncMock()
        machine = create_state_machine(EngineConfig(), model_client=model_client)

        await machine.aclose()

        model_client.close.assert_awaited_once()
