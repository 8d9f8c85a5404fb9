"""
Anthropic model client.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, TypedDict

import anthropic
from anthropic import AsyncAnthropic

from agent_run_engine.adapters.base import (
    ModelClient,
    ModelResponse,
    TextDeltaCallback,
    arguments_as_dict,
    assistant_message,
    split_system_messages,
)
from agent_run_engine.errors import ModelError, ModelFatalError, ModelTransientError
from agent_run_engine.logging import get_logger
from agent_run_engine.models import Message, ToolCall

logger = get_logger("adapters.anthropic")

OVERLOADED_STATUS = 529


class AnthropicTool(TypedDict):
    """Anthropic tool definition."""

    name: str
    description: str
    input_schema: dict[str, Any]


class AnthropicModelClient(ModelClient):
    """
    Model client backed by the Anthropic Messages API.

    Example:
        client = AnthropicModelClient(model="claude-sonnet-4-20250514")
        response = await client.complete(
            [Message(role="user", content="What is 2+2?")],
            tools=[],
            system_prompt="You are helpful.",
        )
    """

    def __init__(
        self,
        model: str = "claude-sonnet-4-20250514",
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float | None = None,
        client: AsyncAnthropic | None = None,
    ) -> None:
        # Retries are owned by the invoker
        self.client = client or AsyncAnthropic(api_key=api_key, base_url=base_url, max_retries=0)
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def close(self) -> None:
        await self.client.close()

    @staticmethod
    def _to_anthropic_tools(tools: Sequence[dict[str, Any]]) -> list[AnthropicTool]:
        return [
            {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "input_schema": tool.get("parameters") or {"type": "object", "properties": {}},
            }
            for tool in tools
        ]

    @staticmethod
    def _to_anthropic_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
        """Convert transcript messages. Consecutive tool results share one user message."""
        result: list[dict[str, Any]] = []
        for msg in messages:
            if msg.role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id or "",
                    "content": msg.text_content,
                }
                if msg.is_error:
                    block["is_error"] = True
                prev = result[-1] if result else None
                if (
                    prev is not None
                    and prev["role"] == "user"
                    and isinstance(prev["content"], list)
                    and all(b.get("type") == "tool_result" for b in prev["content"])
                ):
                    prev["content"].append(block)
                else:
                    result.append({"role": "user", "content": [block]})
            elif msg.role == "assistant":
                content: list[dict[str, Any]] = []
                if msg.text_content:
                    content.append({"type": "text", "text": msg.text_content})
                for tc in msg.tool_calls:
                    content.append(
                        {
                            "type": "tool_use",
                            "id": tc.id,
                            "name": tc.name,
                            "input": arguments_as_dict(tc.arguments),
                        }
                    )
                result.append({"role": "assistant", "content": content or ""})
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
            "max_tokens": self.max_tokens,
            "messages": self._to_anthropic_messages(rest),
        }
        if system:
            request_kwargs["system"] = system
        if self.temperature is not None:
            request_kwargs["temperature"] = self.temperature
        if tools:
            request_kwargs["tools"] = self._to_anthropic_tools(tools)

        logger.debug("Calling %s with %d messages and %d tools", self.model, len(rest), len(tools))
        try:
            if on_text_delta is None:
                response = await self.client.messages.create(**request_kwargs)
            else:
                async with self.client.messages.stream(**request_kwargs) as stream:
                    async for text in stream.text_stream:
                        on_text_delta(text)
                    response = await stream.get_final_message()
        except anthropic.APIError as exc:
            raise self.classify_error(exc) from exc

        return self._parse_response(response)

    @staticmethod
    def _parse_response(response: Any) -> ModelResponse:
        text = ""
        tool_calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                text += block.text
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=block.input))

        usage = response.usage
        return ModelResponse(
            message=assistant_message(text, tool_calls),
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )

    def classify_error(self, exc: Exception) -> ModelError:
        if isinstance(exc, ModelError):
            return exc
        if isinstance(exc, anthropic.APITimeoutError):
            return ModelTransientError(f"Anthropic request timed out: {exc}")
        if isinstance(exc, anthropic.APIStatusError):
            if exc.status_code == OVERLOADED_STATUS or _error_type(exc.body) == "overloaded_error":
                return ModelTransientError(f"Anthropic is overloaded: {exc}")
            return ModelFatalError(f"Anthropic request failed ({exc.status_code}): {exc}")
        return ModelFatalError(f"Anthropic request failed: {exc}")


def _error_type(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict):
        return error.get("type")
    return body.get("type")
