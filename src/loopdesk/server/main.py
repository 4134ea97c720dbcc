"""FastAPI application exposing the host over HTTP and WebSocket.

Routes (see loopdesk/server/routes.py):
- POST /api/ipc/{channel}: invoke a request/response channel
- WS   /api/events?channels=a,b: pushed events
- GET  /api/health: registry counts
"""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from loopdesk import __version__
from loopdesk.host.app import HostApp
from loopdesk.server.routes import router

_DEV_ORIGINS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


def create_app(*, host: HostApp | None = None, dev_mode: bool = False) -> FastAPI:
    """Create FastAPI application.

    Args:
        host: Host to expose. A default-configured HostApp is built if omitted.
        dev_mode: If True, enable CORS for the Vite dev server on :5173.

    Returns:
        Configured FastAPI application.
    """
    host = host or HostApp()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await host.start()
        try:
            yield
        finally:
            await host.teardown()

    app = FastAPI(
        title="LoopDesk Bridge",
        description="Command dispatch and event streaming for the LoopDesk host",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.host = host
    app.include_router(router)

    if dev_mode or os.getenv("LOOPDESK_ENABLE_CORS", "").lower() in ("1", "true", "yes"):
        app.add_middleware(
            CORSMiddleware,
            allow_origins=_DEV_ORIGINS,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    return app
