"""FastAPI application factory.

Creates the app with logging middleware, CORS, lifespan wiring for the
deal board services, and the v1 API router (REST, /ws broadcast channel,
health checks).
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.dealflow.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.dealflow.api.v1.router import router as v1_router
from src.dealflow.config import BroadcastBackend, get_settings
from src.dealflow.core.database import close_db, get_session, init_db
from src.dealflow.core.redis import close_redis, get_redis_pool


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and board services on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Each module is wrapped in its own try/except so one failure (e.g.
    # Redis unreachable) leaves the rest of the app serving.

    # Repository
    try:
        from src.dealflow.deals.repository import DealRepository

        app.state.deal_repository = DealRepository(session_factory=get_session)
        log.info("startup.deal_repository_initialized")
    except Exception:
        log.warning("startup.deal_repository_init_failed", exc_info=True)
        app.state.deal_repository = None

    # Broadcast registry
    try:
        from src.dealflow.sync.registry import ConnectionRegistry, RedisBroadcastRegistry

        if settings.BROADCAST_BACKEND == BroadcastBackend.redis:
            registry = RedisBroadcastRegistry(
                get_redis_pool(),
                channel=settings.BROADCAST_CHANNEL,
                send_timeout=settings.BROADCAST_SEND_TIMEOUT_SECONDS,
            )
        else:
            registry = ConnectionRegistry(send_timeout=settings.BROADCAST_SEND_TIMEOUT_SECONDS)
        await registry.start()
        app.state.broadcast_registry = registry
        log.info("startup.broadcast_registry_initialized", backend=settings.BROADCAST_BACKEND.value)
    except Exception:
        log.warning("startup.broadcast_registry_init_failed", exc_info=True)
        app.state.broadcast_registry = None

    # Notifier + service
    try:
        from src.dealflow.deals.service import DealService
        from src.dealflow.sync.notifier import ChangeNotifier

        repo = app.state.deal_repository
        if repo is None:
            raise RuntimeError("deal repository unavailable")
        notifier = ChangeNotifier(repo, app.state.broadcast_registry)
        app.state.change_notifier = notifier
        app.state.deal_service = DealService(repo, notifier)
        log.info("startup.deal_service_initialized")
    except Exception:
        log.warning("startup.deal_service_init_failed", exc_info=True)
        app.state.change_notifier = None
        app.state.deal_service = None

    yield

    registry = getattr(app.state, "broadcast_registry", None)
    if registry is not None:
        try:
            await registry.stop()
        except Exception:
            log.warning("shutdown.broadcast_registry_stop_failed", exc_info=True)

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Dealflow API",
        version="0.1.0",
        description="Sales pipeline board with realtime synchronization",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    app.include_router(v1_router)

    return app


# Module-level app for uvicorn
app = create_app()
