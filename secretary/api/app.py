"""
FastAPI application factory.

``create_app()`` assembles the remote store server: error handlers, the
API key middleware, REST routers, object storage, the websocket change
feed and the health endpoint. The module-level ``app`` instance allows
``uvicorn secretary.api.app:app --reload``.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from secretary import __version__
from secretary.api import websocket
from secretary.api.middleware.auth import ApiKeyAuthMiddleware
from secretary.api.middleware.error_handler import register_error_handlers
from secretary.api.routes import profile, recordings, rpc, storage
from secretary.core.config import Settings, get_settings
from secretary.core.logging import configure_logging
from secretary.core.models import HealthResponse
from secretary.services.processing.state_machine import BackoffPolicy
from secretary.services.remote.backend import RemoteBackend
from secretary.services.storage.database import (
    close_db,
    ensure_sqlite_dir,
    get_engine,
    get_session_factory,
    init_db,
)
from secretary.services.storage.objects import LocalObjectStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup: create tables and the backend unless one was injected.
    Shutdown: end every change feed subscription, then dispose the DB engine.
    """
    settings: Settings = app.state.settings
    owns_db = app.state.backend is None
    if owns_db:
        ensure_sqlite_dir(settings.database_url)
        engine = get_engine(settings.database_url)
        await init_db(engine)
        app.state.backend = RemoteBackend(
            get_session_factory(engine),
            policy=BackoffPolicy(settings.retry_base_seconds, settings.retry_cap_seconds),
        )
        logger.info("Remote store ready at %s", settings.database_url)
    yield
    app.state.backend.feed.close_all()
    if owns_db:
        await close_db()
        app.state.backend = None


def create_app(
    settings: Settings | None = None,
    backend: RemoteBackend | None = None,
    objects: LocalObjectStore | None = None,
) -> FastAPI:
    """Build and return a fully configured FastAPI application.

    Args:
        settings: Settings override (defaults to ``get_settings()``).
        backend: Pre-built backend (tests pass one bound to a temp database).
            Built from ``settings.database_url`` at startup when omitted.
        objects: Object store override for ``/storage``.

    Returns:
        FastAPI: The configured application, ready for ``uvicorn``.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Secretary",
        description="Remote store, audio storage and change feed for Secretary recordings.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.backend = backend
    app.state.objects = objects or LocalObjectStore(
        settings.storage_dir, settings.storage_public_url
    )

    # -- CORS --
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -- API key --
    app.add_middleware(ApiKeyAuthMiddleware, api_key=settings.remote_api_key)

    # -- Error handlers --
    register_error_handlers(app)

    # -- Health check (root-level, used as the connectivity probe) --
    @app.get("/health", response_model=HealthResponse, tags=["system"])
    async def health() -> HealthResponse:
        return HealthResponse(version=__version__, timestamp=datetime.now(UTC))

    # -- REST routes --
    app.include_router(recordings.router, prefix="/api/v1")
    app.include_router(rpc.router, prefix="/api/v1")
    app.include_router(profile.router, prefix="/api/v1")
    app.include_router(storage.router)

    # -- WebSocket --
    app.include_router(websocket.router)

    return app


app = create_app()


def main() -> None:
    """Console entry point: ``secretary-server``."""
    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(
        "secretary.api.app:app",
        host=settings.app_host,
        port=settings.app_port,
    )


if __name__ == "__main__":
    main()
