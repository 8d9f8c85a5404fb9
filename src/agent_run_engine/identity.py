"""Lookup of the agent bound to a conversation."""

from __future__ import annotations

from typing import Protocol

import httpx

from agent_run_engine.errors import AgentLoadError
from agent_run_engine.logging import get_logger
from agent_run_engine.models import AgentIdentity, CallerCredentials

logger = get_logger("identity")


class AgentIdentityProvider(Protocol):
    async def get_agent(
        self, conversation_id: str, credentials: CallerCredentials
    ) -> AgentIdentity: ...


class StaticAgentIdentityProvider:
    """Returns the same identity for every conversation."""

    def __init__(self, identity: AgentIdentity) -> None:
        self.identity = identity

    async def get_agent(
        self, conversation_id: str, credentials: CallerCredentials
    ) -> AgentIdentity:
        return self.identity


class HttpAgentIdentityProvider:
    """Fetches the agent for a conversation from the agent service.

    Any failure raises ``AgentLoadError``; a run cannot proceed without
    knowing which agent it speaks as.
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

    async def get_agent(
        self, conversation_id: str, credentials: CallerCredentials
    ) -> AgentIdentity:
        url = f"{self.base_url}/agents/by-conversation/{conversation_id}"
        try:
            resp = await self._client.get(url, headers=credentials.headers())
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Failed to load agent for conversation %s: %s", conversation_id, exc)
            raise AgentLoadError(f"Failed to load agent for conversation {conversation_id}") from exc

        if not isinstance(body, dict) or not body.get("success") or not body.get("data"):
            error = body.get("error") if isinstance(body, dict) else None
            raise AgentLoadError(
                f"No agent found for conversation {conversation_id}: {error or 'empty response'}"
            )

        return AgentIdentity.from_dict(body["data"])
