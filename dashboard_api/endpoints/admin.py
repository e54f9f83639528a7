"""Operaciones administrativas: desbloqueo de rate limits y limpieza de cache."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request

from ..api.response import json_success
from ..auth.authorization import OrgTier
from ..errors import ApiError
from ..pipeline import RequestContext
from ..rate_limiter import RateLimitRule
from ..services import Services, get_services

router = APIRouter(prefix="/api/v2/admin", tags=["admin"])
logger = logging.getLogger(__name__)

ADMIN_PERMISSION = "admin:settings"


def _rule(services: Services, name: str) -> RateLimitRule:
    rule = services.rate_limit_rules.by_name().get(name)
    if rule is None:
        raise ApiError.not_found("Rate limit rule", name)
    return rule


@router.get("/rate-limits/{rule_name}/{identifier}")
async def rate_limit_status(rule_name: str, identifier: str, request: Request):
    services = get_services(request)

    async def handler(ctx: RequestContext):
        rule = _rule(services, rule_name)
        result = await services.limiter.status(identifier, rule)
        return json_success(
            {
                "rule": rule.name,
                "identifier": identifier,
                "allowed": result.allowed,
                "current": result.current,
                "limit": result.limit,
                "remaining": result.remaining,
                "reset_in": result.reset_in,
                "window_seconds": rule.window_seconds,
            }
        )

    return await services.read_pipeline(permission=ADMIN_PERMISSION, minimum_tier=OrgTier.ADMIN).run(request, handler)


@router.delete("/rate-limits/{rule_name}/{identifier}")
async def reset_rate_limit(rule_name: str, identifier: str, request: Request):
    services = get_services(request)

    async def handler(ctx: RequestContext):
        rule = _rule(services, rule_name)
        deleted = await services.limiter.reset(identifier, rule.name)
        logger.info("RATE_LIMIT_RESET_REQUESTED rule=%s by=%s", rule.name, ctx.identity)
        return json_success({"rule": rule.name, "identifier": identifier, "reset": deleted})

    pipeline = services.mutation_pipeline(permission=ADMIN_PERMISSION, minimum_tier=OrgTier.ADMIN)
    return await pipeline.run(request, handler)


@router.delete("/cache")
async def clear_cache(request: Request):
    services = get_services(request)

    async def handler(ctx: RequestContext):
        await services.invalidator.clear_all_caches()
        logger.info("CACHE_CLEARED by=%s", ctx.identity)
        return json_success({"cleared": True}, "All caches cleared")

    pipeline = services.mutation_pipeline(permission=ADMIN_PERMISSION, minimum_tier=OrgTier.ADMIN)
    return await pipeline.run(request, handler)
