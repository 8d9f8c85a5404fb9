"""
Context management for model calls.

Provides token estimation, recency-biased history truncation, and the
transcript sanitizers that keep tool call / tool result pairing intact.

Example:
    from agent_run_engine.context import truncate_history

    window = truncate_history(system_prompt, messages, token_budget=20_000, thinking_budget=1024)
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from agent_run_engine.logging import get_logger
from agent_run_engine.models import (
    Message,
    MessageContent,
    TextContent,
    ToolCallContent,
    ToolResultContent,
)

logger = get_logger("context")


# ---------------------------------------------------------------------------
# Token estimation
# ---------------------------------------------------------------------------


def estimate_tokens(text: str) -> int:
    """
    Estimate token count from text using chars/4 heuristic.

    Empty text costs nothing; any non-empty text costs at least one token.
    """
    if not text:
        return 0
    return max(1, len(text) // 4)


def _estimate_json(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        return estimate_tokens(value)
    try:
        return estimate_tokens(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return 0


def estimate_content_tokens(content: MessageContent | Sequence[Any] | None) -> int:
    """Estimate tokens for plain text or a sequence of content blocks."""
    if not content:
        return 0
    if isinstance(content, str):
        return estimate_tokens(content)

    tokens = 0
    for block in content:
        if isinstance(block, TextContent):
            tokens += estimate_tokens(block.text)
        elif isinstance(block, ToolCallContent):
            tokens += estimate_tokens(block.name) + _estimate_json(block.arguments)
        elif isinstance(block, ToolResultContent):
            tokens += _estimate_json(block.result)
        elif isinstance(block, dict) and block.get("type") == "text":
            tokens += estimate_tokens(str(block.get("text", "")))
    return tokens


def estimate_message_tokens(message: Message) -> int:
    """Estimate token count for a single message, including its tool calls."""
    tokens = estimate_content_tokens(message.content)
    for tc in message.tool_calls:
        tokens += estimate_tokens(tc.name) + _estimate_json(tc.arguments)
    return tokens


def estimate_messages_tokens(messages: Sequence[Message]) -> int:
    """Estimate total tokens for a list of messages."""
    return sum(estimate_message_tokens(m) for m in messages)


# ---------------------------------------------------------------------------
# Truncation
# ---------------------------------------------------------------------------


def truncate_history(
    system_prompt: str,
    messages: Sequence[Message],
    token_budget: int,
    thinking_budget: int = 0,
) -> list[Message]:
    """
    Return the longest suffix of ``messages`` that fits the budget.

    The budget left for history is ``token_budget`` minus the system prompt
    and the thinking allowance. Messages are taken most-recent-first and the
    walk stops at the first message that would overflow, so the result is
    always a contiguous suffix in original order. Infeasible budgets yield
    an empty list rather than an error.
    """
    remaining = token_budget - estimate_tokens(system_prompt) - thinking_budget
    if remaining <= 0:
        logger.debug("No history budget left (remaining=%d)", remaining)
        return []

    used = 0
    start = len(messages)
    for i in range(len(messages) - 1, -1, -1):
        cost = estimate_message_tokens(messages[i])
        if used + cost > remaining:
            break
        used += cost
        start = i

    selected = list(messages[start:])
    logger.debug(
        "History budget %d, used %d, kept %d of %d messages",
        remaining,
        used,
        len(selected),
        len(messages),
    )
    return selected


# ---------------------------------------------------------------------------
# Sanitizers
# ---------------------------------------------------------------------------


def sanitize_incomplete_tool_calls(messages: Sequence[Message]) -> list[Message]:
    """
    Drop a trailing assistant turn whose tool calls were never answered.

    If the last assistant message requested tools and the tool messages that
    follow it do not answer exactly that set of ids, the assistant message
    and everything after it are removed.
    """
    last_assistant = -1
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].role == "assistant":
            last_assistant = i
            break

    if last_assistant == -1:
        return list(messages)

    required = {tc.id for tc in messages[last_assistant].tool_calls}
    if not required:
        return list(messages)

    provided = {
        m.tool_call_id
        for m in messages[last_assistant + 1 :]
        if m.role == "tool" and m.tool_call_id
    }
    if required != provided:
        logger.warning(
            "Dropping incomplete tool call sequence at end of history (required=%s, provided=%s)",
            sorted(required),
            sorted(provided),
        )
        return list(messages[:last_assistant])

    return list(messages)


def drop_orphan_tool_results(messages: Sequence[Message]) -> list[Message]:
    """Drop leading messages until the window opens with a user or system message."""
    start = 0
    while start < len(messages) and messages[start].role not in ("user", "system"):
        start += 1
    return list(messages[start:])


def build_context_window(
    system_prompt: str,
    messages: Sequence[Message],
    token_budget: int,
    thinking_budget: int = 0,
) -> list[Message]:
    """
    Select the messages sent to the model for one call.

    Truncates to the budget, then drops any leading tool traffic whose
    opening user message fell outside the window. If nothing survives, the
    window falls back to the suffix starting at the last user message.
    """
    window = drop_orphan_tool_results(
        truncate_history(system_prompt, messages, token_budget, thinking_budget)
    )
    if window or not messages:
        return window

    for i in range(len(messages) - 1, -1, -1):
        if messages[i].role == "user":
            logger.warning(
                "Latest turn exceeds the token budget of %d; sending it untruncated",
                token_budget,
            )
            return list(messages[i:])
    return []
