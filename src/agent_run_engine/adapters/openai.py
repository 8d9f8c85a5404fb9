"""
OpenAI model client.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, TypedDict

import openai
from openai import AsyncOpenAI

from agent_run_engine.adapters.base import (
    ModelClient,
    ModelResponse,
    TextDeltaCallback,
    arguments_as_json,
    assistant_message,
    split_system_messages,
)
from agent_run_engine.errors import ModelError, ModelFatalError, ModelTransientError
from agent_run_engine.logging import get_logger
from agent_run_engine.models import Message, ToolCall

logger = get_logger("adapters.openai")

TRANSIENT_STATUSES = frozenset({503, 529})


class OpenAIFunction(TypedDict):
    """OpenAI function definition."""

    name: str
    description: str
    parameters: dict[str, Any]


class OpenAITool(TypedDict):
    """OpenAI tool definition."""

    type: str
    function: OpenAIFunction


class OpenAIModelClient(ModelClient):
    """
    Model client backed by the OpenAI Chat Completions API.

    Tool call arguments are passed through as the raw JSON string the
    model produced; parsing happens at dispatch.
    """

    def __init__(
        self,
        model: str = "gpt-4o",
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def close(self) -> None:
        await self.client.close()

    @staticmethod
    def _to_openai_tools(tools: Sequence[dict[str, Any]]) -> list[OpenAITool]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "parameters": tool.get("parameters") or {"type": "object", "properties": {}},
                },
            }
            for tool in tools
        ]

    @staticmethod
    def _to_openai_messages(system: str, messages: Sequence[Message]) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = []
        if system:
            result.append({"role": "system", "content": system})
        for msg in messages:
            if msg.role == "tool":
                result.append(
                    {
                        "role": "tool",
                        "tool_call_id": msg.tool_call_id or "",
                        "content": msg.text_content,
                    }
                )
            elif msg.role == "assistant":
                entry: dict[str, Any] = {"role": "assistant", "content": msg.text_content or None}
                if msg.tool_calls:
                    entry["tool_calls"] = [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {"name": tc.name, "arguments": arguments_as_json(tc.arguments)},
                        }
                        for tc in msg.tool_calls
                    ]
                result.append(entry)
            else:
                result.append({"role": "user", "content": msg.text_content})
        return result

    async def complete(
        self,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]],
        *,
        system_prompt: str,
        on_text_delta: TextDeltaCallback | None = None,
    ) -> ModelResponse:
        system, rest = split_system_messages(system_prompt, messages)

        request_kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": self._to_openai_messages(system, rest),
            "max_tokens": self.max_tokens,
        }
        if self.temperature is not None:
            request_kwargs["temperature"] = self.temperature
        if tools:
            request_kwargs["tools"] = self._to_openai_tools(tools)

        logger.debug("Calling %s with %d messages and %d tools", self.model, len(rest), len(tools))
        try:
            if on_text_delta is None:
                response = await self.client.chat.completions.create(**request_kwargs)
                return self._parse_response(response)
            return await self._stream(request_kwargs, on_text_delta)
        except openai.APIError as exc:
            raise self.classify_error(exc) from exc

    @staticmethod
    def _parse_response(response: Any) -> ModelResponse:
        message = response.choices[0].message
        tool_calls = [
            ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "")
            for tc in message.tool_calls or []
        ]
        usage = response.usage
        return ModelResponse(
            message=assistant_message(message.content or "", tool_calls),
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )

    async def _stream(
        self, request_kwargs: dict[str, Any], on_text_delta: TextDeltaCallback
    ) -> ModelResponse:
        stream = await self.client.chat.completions.create(
            **request_kwargs,
            stream=True,
            stream_options={"include_usage": True},
        )

        text = ""
        # Track tool calls by stream index: index -> {id, name, args}
        active_tool_calls: dict[int, dict[str, str]] = {}
        input_tokens = output_tokens = 0

        async for chunk in stream:
            if chunk.usage:
                input_tokens = getattr(chunk.usage, "prompt_tokens", 0) or 0
                output_tokens = getattr(chunk.usage, "completion_tokens", 0) or 0
            if not chunk.choices:
                continue

            delta = chunk.choices[0].delta
            if delta.content:
                text += delta.content
                on_text_delta(delta.content)

            for tc_delta in delta.tool_calls or []:
                entry = active_tool_calls.setdefault(
                    tc_delta.index, {"id": "", "name": "", "args": ""}
                )
                if tc_delta.id:
                    entry["id"] = tc_delta.id
                if tc_delta.function:
                    if tc_delta.function.name:
                        entry["name"] = tc_delta.function.name
                    if tc_delta.function.arguments:
                        entry["args"] += tc_delta.function.arguments

        tool_calls = [
            ToolCall(id=tc["id"], name=tc["name"], arguments=tc["args"])
            for _, tc in sorted(active_tool_calls.items())
        ]
        return ModelResponse(
            message=assistant_message(text, tool_calls),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    def classify_error(self, exc: Exception) -> ModelError:
        if isinstance(exc, ModelError):
            return exc
        if isinstance(exc, openai.APITimeoutError):
            return ModelTransientError(f"OpenAI request timed out: {exc}")
        if isinstance(exc, openai.APIStatusError):
            if exc.status_code in TRANSIENT_STATUSES:
                return ModelTransientError(f"OpenAI is unavailable ({exc.status_code}): {exc}")
            return ModelFatalError(f"OpenAI request failed ({exc.status_code}): {exc}")
        return ModelFatalError(f"OpenAI request failed: {exc}")
