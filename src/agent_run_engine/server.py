"""HTTP surface using Starlette."""
from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from agent_run_engine.agent import AgentStateMachine
from agent_run_engine.logging import get_logger
from agent_run_engine.models import CallerCredentials, RunRequest
from agent_run_engine.stream import StreamAdapter

logger = get_logger("server")


def create_app(machine: AgentStateMachine) -> Starlette:
    """Create the Starlette application.

    Args:
        machine: State machine shared by every request
    """

    async def run(request: Request) -> Response:
        """Run the agent for one conversation and stream the events as SSE."""
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return JSONResponse({"error": "Request body must be JSON"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)

        credentials = CallerCredentials.from_headers(request.headers)
        try:
            run_request = RunRequest.from_dict(body, credentials)
        except ValueError as exc:
            return JSONResponse({"error": str(exc)}, status_code=400)

        logger.info("Starting run for conversation %s", run_request.conversation_id)
        adapter = StreamAdapter(machine, run_request)
        return StreamingResponse(
            adapter.iter_bytes(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok"})

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        yield
        logger.info("Shutting down, closing service clients")
        await machine.aclose()

    routes = [
        Route("/run", run, methods=["POST"]),
        Route("/health", health, methods=["GET"]),
    ]
    return Starlette(routes=routes, lifespan=lifespan)


def run_server(machine: AgentStateMachine, host: str = "127.0.0.1", port: int = 8080) -> None:
    """Run the HTTP server."""
    import uvicorn

    app = create_app(machine)
    uvicorn.run(app, host=host, port=port)
