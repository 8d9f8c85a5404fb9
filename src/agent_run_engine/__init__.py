"""
Agent Run Engine - orchestration core for tool-using conversational agents.

A run takes a conversation transcript and the caller's credentials, loads
the agent and its tools, then alternates model calls and tool dispatch
until the model answers without requesting tools. Events stream out as
Server-Sent Events.

Example:
    from agent_run_engine import EngineConfig, StreamAdapter, create_state_machine

    machine = create_state_machine(EngineConfig.from_env())
    adapter = StreamAdapter(machine, request)
    async for chunk in adapter.iter_bytes():
        ...
"""

from agent_run_engine.adapters import (
    AnthropicModelClient,
    ModelClient,
    ModelResponse,
    OpenAIModelClient,
    create_model_client,
)
from agent_run_engine.agent import (
    AgentStateMachine,
    AgentStep,
    RunState,
    StateUpdate,
    create_state_machine,
)
from agent_run_engine.config import EngineConfig
from agent_run_engine.context import (
    build_context_window,
    estimate_message_tokens,
    estimate_messages_tokens,
    estimate_tokens,
    truncate_history,
)
from agent_run_engine.errors import (
    AgentLoadError,
    AgentRunError,
    InvalidToolArgumentsError,
    MissingCredentialsError,
    ModelError,
    ModelFatalError,
    ModelRetriesExhaustedError,
    ModelTransientError,
    RunAbortedError,
    ToolCatalogError,
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
    EventBus,
    RunEndEvent,
    RunStartEvent,
    StreamEvent,
    ToolResultEvent,
    TurnEndEvent,
    TurnStartEvent,
)
from agent_run_engine.identity import HttpAgentIdentityProvider, StaticAgentIdentityProvider
from agent_run_engine.invoker import ModelInvoker
from agent_run_engine.logging import get_logger, run_logger, setup_logging
from agent_run_engine.models import (
    AgentIdentity,
    CallerCredentials,
    Message,
    RunRequest,
    ToolCall,
    ToolResult,
)
from agent_run_engine.prompts import build_system_prompt
from agent_run_engine.stream import StreamAdapter, user_facing_error_message
from agent_run_engine.tools import (
    HttpToolCatalog,
    RemoteToolFactory,
    StaticToolCatalog,
    ToolHandle,
    ToolLoader,
    ToolOutcome,
    ToolRegistry,
    register_builtin_tools,
)

__version__ = "0.1.0"

__all__ = [
    # Model clients
    "AnthropicModelClient",
    "ModelClient",
    "ModelResponse",
    "OpenAIModelClient",
    "create_model_client",
    "ModelInvoker",
    # State machine
    "AgentStateMachine",
    "AgentStep",
    "RunState",
    "StateUpdate",
    "create_state_machine",
    # Config
    "EngineConfig",
    # Context
    "build_context_window",
    "estimate_message_tokens",
    "estimate_messages_tokens",
    "estimate_tokens",
    "truncate_history",
    # Errors
    "AgentLoadError",
    "AgentRunError",
    "InvalidToolArgumentsError",
    "MissingCredentialsError",
    "ModelError",
    "ModelFatalError",
    "ModelRetriesExhaustedError",
    "ModelTransientError",
    "RunAbortedError",
    "ToolCatalogError",
    "ToolError",
    "ToolExecutionError",
    "ToolNotFoundError",
    # Events
    "RUN_END",
    "RUN_START",
    "TOOL_RESULT",
    "TURN_END",
    "TURN_START",
    "EventBus",
    "RunEndEvent",
    "RunStartEvent",
    "StreamEvent",
    "ToolResultEvent",
    "TurnEndEvent",
    "TurnStartEvent",
    # Identity and prompts
    "HttpAgentIdentityProvider",
    "StaticAgentIdentityProvider",
    "build_system_prompt",
    # Models
    "AgentIdentity",
    "CallerCredentials",
    "Message",
    "RunRequest",
    "ToolCall",
    "ToolResult",
    # Streaming
    "StreamAdapter",
    "user_facing_error_message",
    # Tools
    "HttpToolCatalog",
    "RemoteToolFactory",
    "StaticToolCatalog",
    "ToolHandle",
    "ToolLoader",
    "ToolOutcome",
    "ToolRegistry",
    "register_builtin_tools",
    # Logging
    "get_logger",
    "run_logger",
    "setup_logging",
]
