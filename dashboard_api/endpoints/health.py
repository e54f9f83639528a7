"""Health, readiness y métricas.

Exentos de auth y de rate limiting.
"""

import logging
import time

from fastapi import APIRouter, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ..monitoring.metrics import render_latest
from ..services import get_services

router = APIRouter(tags=["health"])
logger = logging.getLogger(__name__)


def _ping_db(engine) -> float:
    start = time.perf_counter()
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return (time.perf_counter() - start) * 1000


@router.get("/health")
@router.get("/api/v2/health")
def health():
    """Liveness probe: ok mientras el proceso responda."""
    return {"status": "ok"}


@router.get("/ready")
async def ready(request: Request):
    """Readiness probe.

    La base de datos es obligatoria (503 si falla). Redis es opcional:
    sin él cache y rate limiting degradan, así que solo se informa.
    """
    services = get_services(request)
    checks = {}

    try:
        latency_ms = await run_in_threadpool(_ping_db, services.engine)
        checks["database"] = {"status": "ok", "latency_ms": round(latency_ms, 2)}
    except SQLAlchemyError:
        # No exponer detalles del error al cliente
        logger.exception("[DB] Readiness check failed")
        checks["database"] = {"status": "error"}

    if not services.redis.configured:
        checks["redis"] = {"status": "disabled"}
    elif await services.redis.available() is not None:
        checks["redis"] = {"status": "ok"}
    else:
        checks["redis"] = {"status": "degraded"}

    ok = checks["database"]["status"] == "ok"
    return JSONResponse(
        status_code=200 if ok else 503,
        content={"status": "ready" if ok else "not_ready", "checks": checks},
    )


@router.get("/metrics")
@router.get("/api/v2/metrics")
def metrics():
    payload, content_type = render_latest()
    return Response(content=payload, media_type=content_type)
