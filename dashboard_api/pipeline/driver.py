from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Sequence

from starlette.requests import Request
from starlette.responses import Response

from ..errors import error_response, normalize_error
from ..monitoring.error_reporter import ErrorReporter, NullErrorReporter
from ..monitoring.metrics import record_request
from .context import RequestContext
from .stages import Stage

logger = logging.getLogger(__name__)

Handler = Callable[[RequestContext], Awaitable[Response]]


def _route_label(request: Request) -> str:
    # Plantilla de la ruta ("/api/v2/devices/{device_id}") para no disparar
    # la cardinalidad de las métricas con ids concretos
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class Pipeline:
    """Ejecuta las etapas en orden fijo y después el handler.

    La primera etapa que devuelve una respuesta corta el request. Lo que
    lance el handler se normaliza a un ApiError; los 5xx se loguean con
    traza y se reportan. Toda respuesta lleva ``X-Request-ID`` y, si hubo
    rate limiting, los headers ``X-RateLimit-*``.
    """

    def __init__(self, stages: Sequence[Stage], *, error_reporter: Optional[ErrorReporter] = None):
        self.stages = tuple(stages)
        self.error_reporter = error_reporter or NullErrorReporter()

    async def run(self, request: Request, handler: Handler) -> Response:
        ctx = RequestContext.from_request(request)
        response = await self._execute(ctx, handler)

        if ctx.rate_limit is not None:
            for name, value in ctx.rate_limit.headers().items():
                response.headers.setdefault(name, value)
        response.headers["X-Request-ID"] = ctx.trace_id

        duration = ctx.elapsed_seconds
        record_request(ctx.method, _route_label(request), response.status_code, duration)
        logger.info(
            "[Pipeline] %s %s -> %d",
            ctx.method,
            ctx.path,
            response.status_code,
            extra={
                "trace_id": ctx.trace_id,
                "status": response.status_code,
                "duration_ms": round(duration * 1000, 2),
                "identity": ctx.identity,
            },
        )
        return response

    async def _execute(self, ctx: RequestContext, handler: Handler) -> Response:
        try:
            for stage in self.stages:
                outcome = await stage.process(ctx)
                if isinstance(outcome, Response):
                    return outcome
                ctx = outcome
            return await handler(ctx)
        except Exception as exc:
            err = normalize_error(exc)
            if err.is_server_error:
                logger.error(
                    "[Pipeline] Unhandled error code=%s",
                    err.code.value,
                    exc_info=exc,
                    extra={"trace_id": ctx.trace_id, "method": ctx.method, "path": ctx.path},
                )
                await self.error_reporter.report(
                    exc,
                    {"trace_id": ctx.trace_id, "method": ctx.method, "path": ctx.path, "identity": ctx.identity},
                )
            return error_response(err)
