"""
Tool binding for agent runs.

Tools are resolved per run from the caller's catalog entries plus a set
of static identifiers, then invoked by the state machine's ToolDispatch
step.
"""

from agent_run_engine.tools.builtin import register_builtin_tools
from agent_run_engine.tools.catalog import HttpToolCatalog, StaticToolCatalog, ToolCatalog
from agent_run_engine.tools.registry import (
    ToolContext,
    ToolFactory,
    ToolHandle,
    ToolLoader,
    ToolOutcome,
    ToolRegistry,
)
from agent_run_engine.tools.remote import RemoteToolFactory

__all__ = [
    "HttpToolCatalog",
    "RemoteToolFactory",
    "StaticToolCatalog",
    "ToolCatalog",
    "ToolContext",
    "ToolFactory",
    "ToolHandle",
    "ToolLoader",
    "ToolOutcome",
    "ToolRegistry",
    "register_builtin_tools",
]
