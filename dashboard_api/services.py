"""Componentes compartidos de la aplicación.

Se construyen una vez al arrancar (``build_services``) a partir de
``Settings`` y se guardan en ``app.state.services``. Ningún componente
lee el entorno por su cuenta.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from redis.asyncio import Redis
from sqlalchemy.engine import Engine
from starlette.requests import Request

from common.config import Settings
from common.db import get_engine

from .auth.authorization import OrgTier
from .auth.resolver import MODE_SESSION, AuthResolver
from .auth.session import HttpIdentityProvider, IdentityProvider
from .cache import Cache, CacheInvalidator, CacheTTL
from .core.redis import RedisConnection
from .middleware.request_validation import PRESETS, RequestValidationOptions
from .monitoring.error_reporter import ErrorReporter, build_error_reporter
from .pipeline import (
    BodySchemaStage,
    Pipeline,
    QuerySchemaStage,
    with_auth,
    with_permission,
    with_rate_limit,
    with_request_validation,
)
from .rate_limiter import RateLimitRules, SlidingWindowRateLimiter
from .repositories import Repositories

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    redis: RedisConnection
    limiter: SlidingWindowRateLimiter
    rate_limit_rules: RateLimitRules
    cache: Cache
    cache_ttl: CacheTTL
    invalidator: CacheInvalidator
    auth: AuthResolver
    engine: Engine
    repos: Repositories
    error_reporter: ErrorReporter
    identity_provider: Optional[IdentityProvider] = None

    def pipeline(self, *stages) -> Pipeline:
        return Pipeline(stages, error_reporter=self.error_reporter)

    def _auth_stage(self, permission: Optional[str], minimum_tier: Optional[OrgTier]):
        if permission:
            return with_permission(self.auth, permission, minimum_tier=minimum_tier)
        return with_auth(self.auth, minimum_tier=minimum_tier)

    def read_pipeline(
        self,
        query_model: Any = None,
        *,
        permission: Optional[str] = None,
        minimum_tier: Optional[OrgTier] = None,
    ) -> Pipeline:
        """Validación -> auth -> rate limit -> query schema."""
        options = PRESETS["read_only"]
        if query_model is not None:
            options = options.with_query_params(*query_model.model_fields)
        stages = [
            with_request_validation(options),
            self._auth_stage(permission, minimum_tier),
            with_rate_limit(self.limiter, self.rate_limit_rules),
        ]
        if query_model is not None:
            stages.append(QuerySchemaStage(query_model))
        return self.pipeline(*stages)

    def mutation_pipeline(
        self,
        body_model: Any = None,
        *,
        options: Optional[RequestValidationOptions] = None,
        permission: Optional[str] = None,
        minimum_tier: Optional[OrgTier] = None,
    ) -> Pipeline:
        """Validación -> auth -> rate limit -> body schema (con sanitizado)."""
        stages = [
            with_request_validation(options or PRESETS["json_api"]),
            self._auth_stage(permission, minimum_tier),
            with_rate_limit(self.limiter, self.rate_limit_rules),
        ]
        if body_model is not None:
            stages.append(BodySchemaStage(body_model))
        return self.pipeline(*stages)

    async def close(self) -> None:
        await self.cache.drain()
        await self.redis.close()
        await self.error_reporter.close()
        if isinstance(self.identity_provider, HttpIdentityProvider):
            await self.identity_provider.close()
        self.engine.dispose()
        logger.info("[App] Services closed")


def build_services(
    settings: Settings,
    *,
    redis_client: Optional[Redis] = None,
    engine: Optional[Engine] = None,
    identity_provider: Optional[IdentityProvider] = None,
    error_reporter: Optional[ErrorReporter] = None,
) -> Services:
    redis = RedisConnection(settings.redis_url, timeout=settings.redis_timeout_seconds, client=redis_client)
    engine = engine or get_engine(settings)

    if identity_provider is None and settings.auth_mode == MODE_SESSION:
        if not settings.identity_provider_url:
            raise ValueError("AUTH_MODE=session requires IDENTITY_PROVIDER_URL")
        identity_provider = HttpIdentityProvider(settings.identity_provider_url)

    cache_ttl = CacheTTL.from_settings(settings)
    cache = Cache(redis, enabled=settings.cache_enabled)

    return Services(
        settings=settings,
        redis=redis,
        limiter=SlidingWindowRateLimiter(redis),
        rate_limit_rules=RateLimitRules.from_settings(settings),
        cache=cache,
        cache_ttl=cache_ttl,
        invalidator=CacheInvalidator(cache),
        auth=AuthResolver.from_settings(settings, identity_provider=identity_provider),
        engine=engine,
        repos=Repositories.from_engine(engine),
        error_reporter=error_reporter or build_error_reporter(settings.error_report_url),
        identity_provider=identity_provider,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
