"""OAuth relay server.

Receives the provider redirect for a headless CLI login, parks the resulting
token under the CLI's state value, and hands it out once when the CLI polls.
Entry point: `auth-relay` (see __main__.py) or any ASGI server serving `app`.
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, JSONResponse
from loguru import logger
from slowapi.errors import RateLimitExceeded

from auth_relay import api
from auth_relay.config import Settings, get_settings
from auth_relay.exchange import ProviderExchange
from auth_relay.logging import configure_logging
from auth_relay.rate_limit import limiter, rate_limit_exceeded_handler
from auth_relay.store import EntryStore, FirestoreEntryStore, MemoryEntryStore, run_expiry_sweeper
from auth_relay.tokens import TokenController


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global handler for unhandled exceptions."""
    logger.exception(
        "Unhandled exception",
        extra={"path": request.url.path, "error": str(exc)},
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


def build_store(settings: Settings) -> EntryStore:
    """Create the entry store selected by STORE_BACKEND."""
    if settings.store_backend == "firestore":
        return FirestoreEntryStore(
            project=settings.google_cloud_project,
            database=settings.firestore_database,
            timeout=settings.store_timeout_seconds,
        )
    return MemoryEntryStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()

    logger.info(
        f"Starting OAuth relay on port {settings.port}",
        extra={"store_backend": settings.store_backend},
    )

    # Components already placed on app.state (e.g. by tests) are kept
    if getattr(app.state, "controller", None) is None:
        store = build_store(settings)
        app.state.controller = TokenController(store, ttl_seconds=settings.token_ttl_seconds)
    if getattr(app.state, "exchange", None) is None:
        app.state.exchange = ProviderExchange(
            token_url=settings.token_url,
            timeout=settings.exchange_timeout_seconds,
        )

    store = app.state.controller.entry_store
    sweeper = asyncio.create_task(
        run_expiry_sweeper(store, settings.cleanup_interval_seconds)
    )

    try:
        yield
    finally:
        sweeper.cancel()
        try:
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
        finally:
            if isinstance(store, FirestoreEntryStore):
                await store.close()
            logger.info("Shutting down OAuth relay")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    # Configure structured JSON logging for Cloud Logging
    configure_logging(
        is_production=settings.is_production,
        log_level=settings.log_level,
    )

    app = FastAPI(
        title="OAuth Relay",
        description="Hands OAuth tokens from a browser login to a headless CLI",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        openapi_url="/openapi.json" if not settings.is_production else None,
    )

    # Exception handlers
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    app.state.limiter = limiter

    app.include_router(api.router)

    # Static pages directory
    static_dir = Path(__file__).parent / "static"

    @app.get("/privacy")
    async def privacy():
        return FileResponse(static_dir / "privacy.html", media_type="text/html")

    @app.get("/terms")
    async def terms():
        return FileResponse(static_dir / "terms.html", media_type="text/html")

    @app.get("/robots.txt")
    async def robots():
        return FileResponse(static_dir / "robots.txt", media_type="text/plain")

    return app


app = create_app()
