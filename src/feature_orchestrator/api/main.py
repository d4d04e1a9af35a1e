"""FastAPI application for the orchestrator server.

Exposes session and queue verbs as REST endpoints plus server-sent event
streams backed by the in-memory event bus.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from rich.console import Console

from .. import __version__
from ..agents import AgentSet
from ..models import OrchestratorConfig
from ..runtime import Runtime, build_runtime
from .routes import queue, sessions
from .sse import ConnectionTracker, KeepAlive

console = Console()


def create_app(
    config: Optional[OrchestratorConfig] = None,
    agents: Optional[AgentSet] = None,
    runtime: Optional[Runtime] = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Server configuration (loaded from the state dir when omitted)
        agents: Agent invokers (the Claude/Codex CLIs when omitted)
        runtime: Pre-built runtime, mainly for tests

    Returns:
        Configured FastAPI application
    """
    runtime = runtime or build_runtime(config, agents)
    connections = ConnectionTracker()
    keepalive = KeepAlive(
        runtime.bus,
        connections,
        interval_seconds=runtime.config.keepalive_interval_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await runtime.queue.initialize()
        keepalive.start()
        try:
            yield
        finally:
            await keepalive.stop()
            await runtime.queue.shutdown()
            await runtime.registry.shutdown()

    app = FastAPI(
        title="Feature Orchestrator",
        description="Drives feature requests through implement/review cycles",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.runtime = runtime
    app.state.connections = connections
    app.state.keepalive = keepalive

    app.include_router(sessions.router, prefix="/api", tags=["sessions"])
    app.include_router(queue.router, prefix="/api", tags=["queue"])

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "active_sessions": len(runtime.registry.active_session_ids),
            "stream_connections": connections.total,
        }

    return app


def run_server(config: OrchestratorConfig, reload: bool = False) -> None:
    """Run the server with uvicorn.

    Args:
        config: Server configuration, including host and port
        reload: Enable auto-reload for development
    """
    import uvicorn

    app = create_app(config)
    console.print(f"[bold]Feature Orchestrator[/bold] listening on http://{config.host}:{config.port}")
    console.print(f"[dim]State directory: {config.state_dir}[/dim]")
    uvicorn.run(app, host=config.host, port=config.port, reload=reload)
