"""Tool handles, the factory registry, and the per-run tool loader."""
from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

import jsonschema

from agent_run_engine.logging import get_logger
from agent_run_engine.models import CallerCredentials

if TYPE_CHECKING:
    from agent_run_engine.tools.catalog import ToolCatalog

logger = get_logger("tools.registry")

OutcomeKind = Literal["ok", "invalid_arguments", "execution"]

# A tool body: receives validated arguments, returns a JSON-compatible value
ToolFunc = Callable[[dict[str, Any]], Any]


@dataclass(frozen=True)
class ToolOutcome:
    """Result value of a tool invocation. Invocations never raise."""

    success: bool
    data: Any = None
    error: str | None = None
    details: Any = None
    kind: OutcomeKind = "ok"

    @classmethod
    def ok(cls, data: Any) -> ToolOutcome:
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, kind: OutcomeKind, error: str, details: Any = None) -> ToolOutcome:
        return cls(success=False, error=error, details=details, kind=kind)


@dataclass
class ToolHandle:
    """A resolved, invocable tool bound for the lifetime of one run."""

    id: str
    description: str
    parameters: dict[str, Any]  # JSON schema for the arguments object
    func: ToolFunc = field(repr=False)

    @property
    def name(self) -> str:
        return self.id

    def definition(self) -> dict[str, Any]:
        """Provider-neutral tool definition sent to the model."""
        return {
            "name": self.id,
            "description": self.description,
            "parameters": self.parameters,
        }

    def validate(self, arguments: dict[str, Any]) -> list[str]:
        """Return schema violations for ``arguments`` (empty when valid)."""
        if not self.parameters:
            return []
        try:
            validator = jsonschema.Draft202012Validator(self.parameters)
            errors = sorted(validator.iter_errors(arguments), key=lambda e: list(e.absolute_path))
        except jsonschema.exceptions.SchemaError as exc:
            logger.warning("Tool %s has an invalid schema: %s", self.id, exc.message)
            return []
        messages = []
        for issue in errors:
            path = ".".join(str(p) for p in issue.absolute_path)
            messages.append(f"{path}: {issue.message}" if path else issue.message)
        return messages

    async def invoke(self, arguments: dict[str, Any]) -> ToolOutcome:
        """Validate and run the tool. Failures come back as a ToolOutcome."""
        violations = self.validate(arguments)
        if violations:
            return ToolOutcome.failure(
                "invalid_arguments",
                f"Validation error in tool '{self.id}': {'; '.join(violations)}",
                details={"tool": self.id, "errors": violations},
            )

        try:
            result = self.func(arguments)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.debug("Tool %s failed: %s", self.id, exc, exc_info=True)
            return ToolOutcome.failure(
                "execution",
                str(exc) or type(exc).__name__,
                details={"tool": self.id, "type": type(exc).__name__},
            )

        if isinstance(result, ToolOutcome):
            return result
        return ToolOutcome.ok(result)


@dataclass(frozen=True)
class ToolContext:
    """What a factory knows about the run it is building a handle for."""

    credentials: CallerCredentials
    conversation_id: str
    caller_tool_ids: tuple[str, ...] = ()


# Builds a handle for one identifier; None means "cannot resolve"
ToolFactory = Callable[[str, ToolContext], Awaitable[ToolHandle | None] | ToolHandle | None]


class ToolRegistry:
    """Maps tool identifiers to factories, with an optional fallback factory."""

    def __init__(self, fallback: ToolFactory | None = None) -> None:
        self._factories: dict[str, ToolFactory] = {}
        self.fallback = fallback

    def register(self, tool_id: str, factory: ToolFactory) -> None:
        if not tool_id:
            raise ValueError("Tool id must not be empty")
        if tool_id in self._factories:
            logger.debug("Overriding tool factory: %s", tool_id)
        self._factories[tool_id] = factory

    def register_function(
        self,
        tool_id: str,
        description: str,
        parameters: dict[str, Any],
        func: ToolFunc,
    ) -> None:
        """Register a local tool whose handle needs no per-run resolution."""

        def factory(_tool_id: str, _context: ToolContext) -> ToolHandle:
            return ToolHandle(id=tool_id, description=description, parameters=parameters, func=func)

        self.register(tool_id, factory)

    def unregister(self, tool_id: str) -> bool:
        return self._factories.pop(tool_id, None) is not None

    def has(self, tool_id: str) -> bool:
        return tool_id in self._factories

    def list_ids(self) -> list[str]:
        return list(self._factories)

    def factory_for(self, tool_id: str) -> ToolFactory | None:
        return self._factories.get(tool_id, self.fallback)


class ToolLoader:
    """
    Builds the tool set for one run.

    The caller's permitted identifiers come from the catalog; a catalog
    failure fails the whole load. Static identifiers are always included.
    Identifiers that no factory can resolve are dropped.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        catalog: ToolCatalog | None = None,
        static_tool_ids: Iterable[str] = (),
    ) -> None:
        self.registry = registry
        self.catalog = catalog
        self.static_tool_ids = list(static_tool_ids)

    async def load(self, credentials: CallerCredentials, conversation_id: str) -> list[ToolHandle]:
        caller_ids: list[str] = []
        if self.catalog is not None:
            caller_ids = await self.catalog.list_tool_ids(credentials, conversation_id)

        tool_ids = list(dict.fromkeys([*self.static_tool_ids, *caller_ids]))
        context = ToolContext(
            credentials=credentials,
            conversation_id=conversation_id,
            caller_tool_ids=tuple(caller_ids),
        )

        resolved = await asyncio.gather(
            *(self._resolve(tool_id, context) for tool_id in tool_ids)
        )
        handles = [h for h in resolved if h is not None]
        logger.info(
            "Loaded %d of %d tools for conversation %s",
            len(handles),
            len(tool_ids),
            conversation_id,
        )
        return handles

    async def _resolve(self, tool_id: str, context: ToolContext) -> ToolHandle | None:
        factory = self.registry.factory_for(tool_id)
        if factory is None:
            logger.warning("No factory for tool %s, skipping", tool_id)
            return None
        try:
            handle = factory(tool_id, context)
            if inspect.isawaitable(handle):
                handle = await handle
        except Exception as exc:
            logger.warning("Failed to resolve tool %s, skipping: %s", tool_id, exc)
            return None
        if handle is None:
            logger.warning("Tool %s could not be resolved, skipping", tool_id)
        return handle
