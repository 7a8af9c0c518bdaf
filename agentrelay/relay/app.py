from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from sse_starlette.sse import AppStatus

from agentrelay import __version__
from agentrelay.relay.deps import RelayServerDep
from agentrelay.relay.models.api import HealthResponse
from agentrelay.relay.routers.agent import router as agent_router
from agentrelay.relay.routers.browser import router as browser_router
from agentrelay.relay.routers.control import router as control_router
from agentrelay.relay.server import RelayServer
from agentrelay.relay.settings import get_settings

if TYPE_CHECKING:
    from agentrelay.relay.settings import RelaySettings


def create_app(server: RelayServer | None = None, settings: RelaySettings | None = None) -> FastAPI:
    """Build the relay app around a ``RelayServer``.

    The server is attached as ``app.state.relay_server`` at construction so
    the routes work even when the lifespan is not run (ASGI test clients).
    """
    settings = settings or get_settings()
    relay_server = server if server is not None else RelayServer()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        # -- Startup -----------------------------------------------------------
        logger.info(
            "Relay server starting (host={}, port={}, provider={})",
            settings.host,
            settings.port,
            relay_server.provider,
        )

        # -- SSE ---------------------------------------------------------------
        # Let streams finish on shutdown; we drain invocations ourselves
        # before signalling them to close.
        AppStatus.disable_automatic_graceful_drain()

        yield

        # -- Shutdown ----------------------------------------------------------
        logger.info("Relay server shutting down (active_invocations={})", relay_server.active_count)

        # 1. Refuse new runs, wait for in-flight ones, then force-abort.
        await relay_server.shutdown(settings.graceful_shutdown_timeout)

        # 2. Signal SSE streams to close.  Must happen AFTER the drain so
        #    that streams can deliver their terminal event first.
        AppStatus.should_exit = True
        logger.info("SSE: signalled streams to close")

    app = FastAPI(title="agent-relay", version=__version__, lifespan=lifespan)
    app.state.relay_server = relay_server

    # Browser clients call the relay from arbitrary page origins.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health(server: RelayServerDep) -> HealthResponse:
        return HealthResponse(provider=server.provider, handlers=server.handler_ids)

    app.include_router(agent_router)
    app.include_router(control_router)
    app.include_router(browser_router)
    return app
