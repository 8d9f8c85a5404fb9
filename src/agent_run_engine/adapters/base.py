"""
Base model client interface.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from agent_run_engine.errors import ModelError
from agent_run_engine.models import Message, ToolCall

if TYPE_CHECKING:
    from agent_run_engine.config import EngineConfig

# Receives each text fragment as the model produces it
TextDeltaCallback = Callable[[str], None]


@dataclass(frozen=True)
class ModelResponse:
    """One completed model call."""

    message: Message  # role="assistant"
    input_tokens: int = 0
    output_tokens: int = 0


class ModelClient(ABC):
    """
    Abstract base class for model provider clients.

    A client performs exactly one provider call per ``complete`` and never
    retries on its own; retry policy lives in the invoker. Provider errors
    are translated into ``ModelTransientError`` or ``ModelFatalError``.

    Example implementation for a custom provider:

        class MyModelClient(ModelClient):
            async def complete(self, messages, tools, *, system_prompt, on_text_delta=None):
                reply = await my_sdk.chat(system=system_prompt, messages=...)
                return ModelResponse(message=Message(role="assistant", content=reply.text))

            def classify_error(self, exc):
                return ModelFatalError(str(exc))
    """

    model: str = ""

    @abstractmethod
    async def complete(
        self,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]],
        *,
        system_prompt: str,
        on_text_delta: TextDeltaCallback | None = None,
    ) -> ModelResponse:
        """
        Send one request to the model.

        Args:
            messages: Context window, oldest first
            tools: Provider-neutral tool definitions (name, description, parameters)
            system_prompt: System prompt for the call
            on_text_delta: Called with each text fragment when streaming

        Returns:
            ModelResponse carrying the assistant message and token usage
        """

    @abstractmethod
    def classify_error(self, exc: Exception) -> ModelError:
        """Map a provider SDK exception to the engine's error taxonomy."""

    async def close(self) -> None:
        """Release provider resources."""


def split_system_messages(system_prompt: str, messages: Sequence[Message]) -> tuple[str, list[Message]]:
    """Fold transcript system messages into the system prompt."""
    parts = [system_prompt] if system_prompt else []
    rest: list[Message] = []
    for msg in messages:
        if msg.role == "system":
            if msg.text_content:
                parts.append(msg.text_content)
        else:
            rest.append(msg)
    return "\n\n".join(parts), rest


def arguments_as_dict(arguments: dict[str, Any] | str) -> dict[str, Any]:
    """Best-effort conversion of tool call arguments to an object for replay."""
    if isinstance(arguments, dict):
        return arguments
    try:
        parsed = json.loads(arguments) if arguments else {}
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def arguments_as_json(arguments: dict[str, Any] | str) -> str:
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments)


def assistant_message(text: str, tool_calls: Sequence[ToolCall]) -> Message:
    return Message(
        role="assistant",
        content=text,
        tool_calls=tuple(tool_calls),
    )


def create_model_client(config: EngineConfig) -> ModelClient:
    """
    Build the model client for ``config.provider``.

    Called once at startup; the client is shared by every run.
    """
    if config.provider == "anthropic":
        from agent_run_engine.adapters.anthropic import AnthropicModelClient

        return AnthropicModelClient(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )
    if config.provider == "openai":
        from agent_run_engine.adapters.openai import OpenAIModelClient

        return OpenAIModelClient(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )
    raise ValueError(f"Unknown provider: {config.provider}")
