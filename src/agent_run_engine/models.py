"""
Core data models for agent runs.

Messages are immutable once created; a transcript is an ordered tuple of
messages that only ever grows by concatenation.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["system", "user", "assistant", "tool"]


@dataclass(frozen=True)
class TextContent:
    """Text content block within a message."""

    type: str = "text"
    text: str = ""


@dataclass(frozen=True)
class ToolCallContent:
    """Tool call block embedded in structured assistant content."""

    type: str = "tool_call"
    tool_call_id: str = ""
    name: str = ""
    arguments: Any = None


@dataclass(frozen=True)
class ToolResultContent:
    """Tool result block embedded in structured content."""

    type: str = "tool_result"
    tool_call_id: str = ""
    name: str = ""
    result: Any = None


ContentBlock = TextContent | ToolCallContent | ToolResultContent

# Union type for message content
MessageContent = str | tuple[ContentBlock, ...]


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by an assistant message."""

    id: str
    name: str
    arguments: dict[str, Any] | str = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        if not isinstance(data, dict):
            raise ValueError(f"Tool call must be an object, got {type(data).__name__}")
        arguments = data.get("arguments")
        if arguments is None:
            arguments = data.get("args", {})
        return cls(id=str(data.get("id", "")), name=str(data.get("name", "")), arguments=arguments)


@dataclass(frozen=True)
class Message:
    """A message in the run transcript.

    ``content`` is either plain text or a tuple of content blocks. Tool
    result messages carry the JSON-encoded result as text content plus the
    id of the tool call they answer.
    """

    role: Role
    content: MessageContent = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None  # For tool results
    name: str | None = None  # Tool name for tool results
    is_error: bool = False  # For tool results

    @property
    def text_content(self) -> str:
        """Get the text content of the message, extracting from blocks if needed."""
        if isinstance(self.content, str):
            return self.content
        return "".join(block.text for block in self.content if isinstance(block, TextContent))

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict (camelCase, wire format)."""
        data: dict[str, Any] = {"role": self.role}
        if isinstance(self.content, str):
            data["content"] = self.content
        else:
            data["content"] = [_block_to_dict(b) for b in self.content]
        if self.tool_calls:
            data["toolCalls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            data["toolCallId"] = self.tool_call_id
        if self.name is not None:
            data["name"] = self.name
        if self.is_error:
            data["isError"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Parse a message from its wire format (camelCase or snake_case keys)."""
        if not isinstance(data, dict):
            raise ValueError(f"Message must be an object, got {type(data).__name__}")
        role = data.get("role")
        if role not in ("system", "user", "assistant", "tool"):
            raise ValueError(f"Invalid message role: {role!r}")

        raw_content = data.get("content", "")
        content: MessageContent
        if raw_content is None:
            content = ""
        elif isinstance(raw_content, str):
            content = raw_content
        elif isinstance(raw_content, list):
            content = tuple(_block_from_dict(b) for b in raw_content)
        else:
            raise ValueError(f"Invalid message content type: {type(raw_content).__name__}")

        raw_calls = data.get("toolCalls", data.get("tool_calls")) or []
        if not isinstance(raw_calls, list):
            raise ValueError("toolCalls must be a list")
        return cls(
            role=role,
            content=content,
            tool_calls=tuple(ToolCall.from_dict(tc) for tc in raw_calls),
            tool_call_id=data.get("toolCallId", data.get("tool_call_id")),
            name=data.get("name"),
            is_error=bool(data.get("isError", data.get("is_error", False))),
        )


def _block_to_dict(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextContent):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolCallContent):
        return {
            "type": "tool_call",
            "toolCallId": block.tool_call_id,
            "name": block.name,
            "arguments": block.arguments,
        }
    return {
        "type": "tool_result",
        "toolCallId": block.tool_call_id,
        "name": block.name,
        "result": block.result,
    }


def _block_from_dict(data: dict[str, Any]) -> ContentBlock:
    if not isinstance(data, dict):
        raise ValueError(f"Content block must be an object, got {type(data).__name__}")
    block_type = data.get("type")
    if block_type == "text":
        return TextContent(text=str(data.get("text", "")))
    if block_type in ("tool_call", "tool-call"):
        return ToolCallContent(
            tool_call_id=str(data.get("toolCallId", data.get("tool_call_id", ""))),
            name=str(data.get("name", data.get("toolName", ""))),
            arguments=data.get("arguments", data.get("args")),
        )
    if block_type in ("tool_result", "tool-result"):
        return ToolResultContent(
            tool_call_id=str(data.get("toolCallId", data.get("tool_call_id", ""))),
            name=str(data.get("name", data.get("toolName", ""))),
            result=data.get("result"),
        )
    raise ValueError(f"Unsupported content block type: {block_type!r}")


@dataclass(frozen=True)
class ToolResult:
    """The outcome of one tool call, paired 1:1 with its ToolCall by id."""

    tool_call_id: str
    name: str
    result: Any
    is_error: bool = False

    def to_message(self) -> Message:
        return Message(
            role="tool",
            content=json.dumps(self.result, default=str),
            tool_call_id=self.tool_call_id,
            name=self.name,
            is_error=self.is_error,
        )


# ---------------------------------------------------------------------------
# Caller / request
# ---------------------------------------------------------------------------

CREDENTIAL_HEADERS: dict[str, str] = {
    "client_user_id": "x-client-user-id",
    "client_organization_id": "x-client-organization-id",
    "platform_user_id": "x-platform-user-id",
    "platform_api_key": "x-platform-api-key",
}


@dataclass(frozen=True)
class CallerCredentials:
    """Identity of the caller on whose behalf a run executes."""

    client_user_id: str | None = None
    client_organization_id: str | None = None
    platform_user_id: str | None = None
    platform_api_key: str | None = None

    def missing_fields(self) -> list[str]:
        """Names of required fields that are absent or empty."""
        return [name for name in CREDENTIAL_HEADERS if not getattr(self, name)]

    def headers(self) -> dict[str, str]:
        """HTTP headers forwarded to the platform services."""
        return {
            header: str(getattr(self, name))
            for name, header in CREDENTIAL_HEADERS.items()
            if getattr(self, name)
        }

    @classmethod
    def from_headers(cls, headers: Any) -> CallerCredentials:
        return cls(**{name: headers.get(header) for name, header in CREDENTIAL_HEADERS.items()})

    def __repr__(self) -> str:
        # Never leak the API key into logs
        return (
            f"CallerCredentials(client_user_id={self.client_user_id!r}, "
            f"client_organization_id={self.client_organization_id!r}, "
            f"platform_user_id={self.platform_user_id!r}, platform_api_key=***)"
        )


@dataclass(frozen=True)
class RunRequest:
    """An inbound request to run the agent for one conversation."""

    conversation_id: str
    messages: tuple[Message, ...]
    credentials: CallerCredentials

    @classmethod
    def from_dict(cls, data: dict[str, Any], credentials: CallerCredentials) -> RunRequest:
        conversation_id = data.get("conversationId", data.get("conversation_id"))
        if not conversation_id:
            raise ValueError("conversationId is required")
        raw_messages = data.get("messages")
        if not isinstance(raw_messages, list):
            raise ValueError("messages must be a list")
        return cls(
            conversation_id=str(conversation_id),
            messages=tuple(Message.from_dict(m) for m in raw_messages),
            credentials=credentials,
        )


@dataclass(frozen=True)
class AgentIdentity:
    """The agent bound to a conversation. Read-only within a run."""

    name: str
    memory: str = ""
    system_prompt_override: str | None = None
    id: str | None = None
    job_title: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentIdentity:
        name = data.get("name")
        if not name:
            first = data.get("firstName", "")
            last = data.get("lastName", "")
            name = f"{first} {last}".strip()
        return cls(
            name=name or "Agent",
            memory=data.get("memory") or "",
            system_prompt_override=data.get("systemPromptOverride", data.get("system_prompt_override")),
            id=data.get("id"),
            job_title=data.get("jobTitle", data.get("job_title")),
        )
