"""Tools hosted by the platform tool service."""

from __future__ import annotations

from typing import Any

import httpx

from agent_run_engine.logging import get_logger
from agent_run_engine.tools.registry import ToolContext, ToolHandle, ToolOutcome

logger = get_logger("tools.remote")


class RemoteToolFactory:
    """
    Resolves tool identifiers against the tool service.

    Used as the registry fallback: any identifier without a local factory
    is looked up remotely. Lookup failures yield no handle, so the loader
    drops the tool. Invocation failures come back as ToolOutcomes.

    Example:
        factory = RemoteToolFactory("http://tools:3050")
        registry = ToolRegistry(fallback=factory)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def close(self) -> None:
        await self._client.aclose()

    async def __call__(self, tool_id: str, context: ToolContext) -> ToolHandle | None:
        headers = context.credentials.headers()
        try:
            resp = await self._client.get(f"{self.base_url}/utilities/{tool_id}", headers=headers)
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Failed to fetch tool info for %s: %s", tool_id, exc)
            return None

        if not body.get("success") or not isinstance(body.get("data"), dict):
            logger.warning("Tool service has no tool %s: %s", tool_id, body.get("error"))
            return None

        info = body["data"]
        schema = info.get("schema") or {"type": "object", "properties": {}}

        async def execute(arguments: dict[str, Any]) -> ToolOutcome:
            return await self._execute(tool_id, arguments, context)

        return ToolHandle(
            id=tool_id,
            description=info.get("description") or "",
            parameters=schema,
            func=execute,
        )

    async def _execute(
        self, tool_id: str, arguments: dict[str, Any], context: ToolContext
    ) -> ToolOutcome:
        url = f"{self.base_url}/utilities/{tool_id}/execute"
        payload = {"conversationId": context.conversation_id, "params": arguments}
        try:
            resp = await self._client.post(url, json=payload, headers=context.credentials.headers())
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Remote tool %s failed: %s", tool_id, exc)
            return ToolOutcome.failure("execution", str(exc), details={"tool": tool_id})

        if isinstance(body, dict) and body.get("success") is False:
            return ToolOutcome.failure(
                "execution",
                str(body.get("error") or "Tool execution failed"),
                details=body.get("details"),
            )
        if isinstance(body, dict) and "data" in body:
            return ToolOutcome.ok(body["data"])
        return ToolOutcome.ok(body)
