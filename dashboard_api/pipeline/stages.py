"""Etapas del pipeline de request.

Cada etapa implementa ``process(ctx) -> RequestContext | Response``: o
deja pasar el contexto (posiblemente enriquecido) o corta el request
con una respuesta de error. Las subclases solo implementan ``run`` y
lanzan ``ApiError``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Union

from starlette.responses import Response

from ..auth.authorization import OrgTier
from ..auth.resolver import AuthResolver
from ..errors import ApiError, error_response
from ..middleware.body_size import max_body_size
from ..middleware.request_validation import PRESETS, RequestValidationOptions, validate_request
from ..rate_limiter import (
    INGEST_PATH,
    RateLimitRules,
    SlidingWindowRateLimiter,
    extract_device_id,
    log_denied,
)
from ..validation.validator import validate_body_or_throw, validate_query_or_throw
from .context import RequestContext

logger = logging.getLogger(__name__)

AUTH_REQUIRED = "required"
AUTH_OPTIONAL = "optional"


class Stage:
    name = "stage"

    async def process(self, ctx: RequestContext) -> Union[RequestContext, Response]:
        try:
            await self.run(ctx)
        except ApiError as err:
            logger.debug("[Pipeline] %s short-circuit code=%s trace_id=%s", self.name, err.code.value, ctx.trace_id)
            return error_response(err)
        return ctx

    async def run(self, ctx: RequestContext) -> None:
        raise NotImplementedError


class RequestValidationStage(Stage):
    """Headers, Content-Length y lista blanca de query params."""

    name = "request_validation"

    def __init__(self, options: Optional[RequestValidationOptions] = None):
        self.options = options or PRESETS["json_api"]

    async def run(self, ctx: RequestContext) -> None:
        request = ctx.request
        validate_request(
            ctx.method,
            ctx.path,
            request.headers,
            request.query_params.keys(),
            self.options,
        )
        ctx.body_limit = max_body_size(ctx.path, self.options.body_size)


class AuthStage(Stage):
    """Autenticación (obligatoria u opcional) y autorización RBAC.

    Args:
        resolver: AuthResolver compartido
        mode: ``required`` u ``optional``
        permission: Permiso explícito; None = se deriva de método + path
        minimum_tier: Nivel mínimo de organización (modo sesión)
    """

    name = "auth"

    def __init__(
        self,
        resolver: AuthResolver,
        mode: str = AUTH_REQUIRED,
        permission: Optional[str] = None,
        minimum_tier: Optional[OrgTier] = None,
    ):
        if mode not in (AUTH_REQUIRED, AUTH_OPTIONAL):
            raise ValueError(f"Unknown auth stage mode: {mode}")
        self.resolver = resolver
        self.mode = mode
        self.permission = permission
        self.minimum_tier = minimum_tier

    async def run(self, ctx: RequestContext) -> None:
        if self.mode == AUTH_OPTIONAL:
            ctx.auth = await self.resolver.authenticate_optional(ctx.request)
            ctx.org_id = ctx.auth.org_id
            return

        ctx.auth = await self.resolver.authenticate(ctx.request)
        ctx.org_id = ctx.auth.org_id
        permission = self.permission or self.resolver.permission_for(ctx.method, ctx.path)
        self.resolver.authorize(ctx.auth, permission, minimum_tier=self.minimum_tier)


class RateLimitStage(Stage):
    """Límites de ventana deslizante según la tabla de reglas.

    En la ruta de ingesta se lee el body para obtener el device id; el
    body queda en caché en el contexto para las etapas siguientes.
    """

    name = "rate_limit"

    def __init__(self, limiter: SlidingWindowRateLimiter, rules: RateLimitRules):
        self.limiter = limiter
        self.rules = rules

    async def run(self, ctx: RequestContext) -> None:
        device_id = None
        if ctx.path == INGEST_PATH and self.rules.enabled:
            device_id = extract_device_id(await ctx.read_body())

        checks = self.rules.checks_for(ctx.method, ctx.path, ctx.client_ip, device_id)
        if not checks:
            return

        result = await self.limiter.check_many(checks)
        ctx.rate_limit = result
        if not result.allowed:
            log_denied(ctx.method, ctx.path, ctx.client_ip, result)
            raise ApiError.rate_limit_exceeded(
                result.retry_after or result.reset_in,
                metadata={"limit": result.limit, "current": result.current, "reset_in": result.reset_in},
            )


class BodySchemaStage(Stage):
    """Parsea el JSON, lo sanitiza y lo valida contra ``model``."""

    name = "body_schema"

    def __init__(self, model: Any):
        self.model = model

    async def run(self, ctx: RequestContext) -> None:
        ctx.body = validate_body_or_throw(await ctx.read_body(), self.model)


class QuerySchemaStage(Stage):
    name = "query_schema"

    def __init__(self, model: Any):
        self.model = model

    async def run(self, ctx: RequestContext) -> None:
        ctx.query = validate_query_or_throw(ctx.request.query_params.multi_items(), self.model)


# Helpers de composición para montar rutas

def with_request_validation(options: Union[str, RequestValidationOptions, None] = None) -> RequestValidationStage:
    if isinstance(options, str):
        options = PRESETS[options]
    return RequestValidationStage(options)


def with_auth(resolver: AuthResolver, *, minimum_tier: Optional[OrgTier] = None) -> AuthStage:
    return AuthStage(resolver, AUTH_REQUIRED, minimum_tier=minimum_tier)


def with_optional_auth(resolver: AuthResolver) -> AuthStage:
    return AuthStage(resolver, AUTH_OPTIONAL)


def with_permission(
    resolver: AuthResolver,
    permission: str,
    *,
    minimum_tier: Optional[OrgTier] = None,
) -> AuthStage:
    return AuthStage(resolver, AUTH_REQUIRED, permission=permission, minimum_tier=minimum_tier)


def with_rate_limit(limiter: SlidingWindowRateLimiter, rules: RateLimitRules) -> RateLimitStage:
    return RateLimitStage(limiter, rules)
