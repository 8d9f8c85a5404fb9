"""
Model invocation with retry.

Transient failures (provider overload, attempt timeout) are retried with
exponential backoff; everything else fails immediately.

Example:
    invoker = ModelInvoker(client, max_attempts=5, initial_delay=1.0)
    response = await invoker.invoke(window, tools, system_prompt=prompt)
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from agent_run_engine.adapters.base import ModelClient, ModelResponse, TextDeltaCallback
from agent_run_engine.errors import (
    ModelError,
    ModelFatalError,
    ModelRetriesExhaustedError,
    ModelTransientError,
)
from agent_run_engine.logging import get_logger
from agent_run_engine.models import Message

if TYPE_CHECKING:
    from agent_run_engine.config import EngineConfig

logger = get_logger("invoker")

SleepFn = Callable[[float], Awaitable[Any]]


class ModelInvoker:
    """
    Calls a ModelClient under a bounded retry policy.

    The wait before retry ``n`` (1-based) is ``initial_delay * 2 ** (n - 1)``
    capped at ``max_delay``, plus up to ``jitter`` random seconds. With the
    defaults the waits are 1, 2, 4 and 8 seconds, and at most
    ``max_attempts`` calls are made.
    """

    def __init__(
        self,
        client: ModelClient,
        max_attempts: int = 5,
        initial_delay: float = 1.0,
        max_delay: float = 16.0,
        jitter: float = 0.0,
        attempt_timeout: float | None = 120.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.attempt_timeout = attempt_timeout
        self._sleep = sleep

    @classmethod
    def from_config(cls, client: ModelClient, config: EngineConfig) -> ModelInvoker:
        return cls(
            client,
            max_attempts=config.max_attempts,
            initial_delay=config.initial_retry_delay,
            max_delay=config.max_retry_delay,
            jitter=config.retry_jitter,
            attempt_timeout=config.attempt_timeout,
        )

    def _retrying(self) -> AsyncRetrying:
        wait = wait_exponential(multiplier=self.initial_delay, max=self.max_delay)
        if self.jitter > 0:
            wait = wait + wait_random(0, self.jitter)
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_attempts),
            wait=wait,
            retry=retry_if_exception_type(ModelTransientError),
            sleep=self._sleep,
            before_sleep=self._log_retry,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Model call failed (attempt %d/%d): %s. Retrying in %.1fs",
            retry_state.attempt_number,
            self.max_attempts,
            exc,
            delay,
        )

    async def invoke(
        self,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]],
        *,
        system_prompt: str,
        on_text_delta: TextDeltaCallback | None = None,
    ) -> ModelResponse:
        """
        Call the model, retrying transient failures.

        Raises:
            ModelRetriesExhaustedError: Every attempt failed transiently
            ModelFatalError: A non-transient failure
        """
        try:
            async for attempt in self._retrying():
                with attempt:
                    return await self._attempt(messages, tools, system_prompt, on_text_delta)
        except ModelTransientError as exc:
            logger.error("Model call failed after %d attempts: %s", self.max_attempts, exc)
            raise ModelRetriesExhaustedError(self.max_attempts, exc) from exc
        raise ModelFatalError("Model call produced no result")  # pragma: no cover

    async def _attempt(
        self,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]],
        system_prompt: str,
        on_text_delta: TextDeltaCallback | None,
    ) -> ModelResponse:
        call = self.client.complete(
            messages, tools, system_prompt=system_prompt, on_text_delta=on_text_delta
        )
        try:
            if self.attempt_timeout is None:
                return await call
            return await asyncio.wait_for(call, timeout=self.attempt_timeout)
        except asyncio.TimeoutError as exc:
            raise ModelTransientError(
                f"Model call timed out after {self.attempt_timeout}s"
            ) from exc
        except ModelError:
            raise
        except Exception as exc:
            raise ModelFatalError(f"Model call failed: {exc}") from exc
