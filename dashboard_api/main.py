from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from redis.asyncio import Redis
from sqlalchemy.engine import Engine

from common.config import Settings, get_settings
from common.db import init_schema

from .auth.session import IdentityProvider
from .endpoints import (
    admin_router,
    audit_router,
    devices_router,
    health_router,
    metadata_router,
    readings_router,
    schedules_router,
)
from .errors import register_error_handlers
from .logging_config import configure_logging
from .monitoring.error_reporter import ErrorReporter
from .services import build_services

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    redis_client: Optional[Redis] = None,
    engine: Optional[Engine] = None,
    *,
    identity_provider: Optional[IdentityProvider] = None,
    error_reporter: Optional[ErrorReporter] = None,
) -> FastAPI:
    """Construye la aplicación.

    Args:
        settings: Configuración (default: ``get_settings()``)
        redis_client: Cliente Redis ya creado (tests: fakeredis)
        engine: Engine SQLAlchemy ya creado (tests: SQLite en memoria)
        identity_provider: Proveedor de sesión (modo ``session``)
        error_reporter: Reporter de errores 5xx

    Returns:
        FastAPI con routers, handlers de error y ciclo de vida
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    services = build_services(
        settings,
        redis_client=redis_client,
        engine=engine,
        identity_provider=identity_provider,
        error_reporter=error_reporter,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(init_schema, services.engine)
        if services.redis.configured:
            await services.redis.connect()
        else:
            logger.warning("[Redis] REDIS_URL not set: cache disabled, rate limiting fail-open")
        if not services.auth.registry.is_auth_required and services.auth.mode == "api_key":
            logger.warning("[Auth] No API keys configured: authentication disabled")
        logger.info("[App] Startup complete auth_mode=%s", services.auth.mode)
        try:
            yield
        finally:
            await services.close()

    app = FastAPI(title="IoT Dashboard API", version="0.4.0", lifespan=lifespan)
    app.state.services = services

    register_error_handlers(app)

    app.include_router(health_router)
    app.include_router(devices_router)
    app.include_router(readings_router)
    app.include_router(schedules_router)
    app.include_router(metadata_router)
    app.include_router(audit_router)
    app.include_router(admin_router)

    return app


def run() -> None:
    uvicorn.run(
        "dashboard_api.main:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
