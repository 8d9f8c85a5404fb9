"""Client for the platform tool catalog."""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from agent_run_engine.errors import ToolCatalogError
from agent_run_engine.logging import get_logger
from agent_run_engine.models import CallerCredentials

logger = get_logger("tools.catalog")


class ToolCatalog(Protocol):
    """Lists the tool identifiers a caller is permitted to use."""

    async def list_tool_ids(
        self, credentials: CallerCredentials, conversation_id: str
    ) -> list[str]: ...


class StaticToolCatalog:
    """A catalog backed by a fixed list of identifiers."""

    def __init__(self, tool_ids: list[str] | None = None) -> None:
        self.tool_ids = list(tool_ids or [])

    async def list_tool_ids(
        self, credentials: CallerCredentials, conversation_id: str
    ) -> list[str]:
        return list(self.tool_ids)


class HttpToolCatalog:
    """Tool catalog served over HTTP.

    Unlike the other service clients, failures here are not swallowed:
    a run cannot start without knowing which tools the caller may use.
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

    async def list_tool_ids(
        self, credentials: CallerCredentials, conversation_id: str
    ) -> list[str]:
        url = f"{self.base_url}/utilities/client-side"
        try:
            resp = await self._client.get(url, headers=credentials.headers())
            resp.raise_for_status()
            body: dict[str, Any] = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Tool catalog request failed: %s", exc)
            raise ToolCatalogError(f"Failed to list client-side tools: {exc}") from exc

        if not isinstance(body, dict):
            logger.error("Tool catalog returned a non-object body")
            raise ToolCatalogError("Failed to list client-side tools: malformed response body")

        if not body.get("success"):
            error = body.get("error") or "unknown error"
            logger.error("Tool catalog refused request: %s", error)
            raise ToolCatalogError(f"Failed to list client-side tools: {error}")

        data = body.get("data") or []
        if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
            logger.error("Tool catalog returned malformed data: %r", data)
            raise ToolCatalogError("Failed to list client-side tools: malformed tool list")

        ids = [str(item["id"]) for item in data if item.get("id")]
        logger.debug("Catalog returned %d tools for conversation %s", len(ids), conversation_id)
        return ids
