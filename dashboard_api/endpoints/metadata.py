from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool

from ..api.response import json_success
from ..cache import keys
from ..pipeline import RequestContext
from ..services import get_services

router = APIRouter(prefix="/api/v2/metadata", tags=["metadata"])


@router.get("")
async def devices_metadata(request: Request):
    """Conteos de dispositivos por estado, tipo y fabricante (cacheado)."""
    services = get_services(request)

    async def handler(ctx: RequestContext):
        async def fetch():
            return await run_in_threadpool(services.repos.devices.metadata, ctx.org_id)

        data = await services.cache.get_or_set(keys.metadata_key(ctx.org_id), fetch, services.cache_ttl.metadata)
        return json_success(data)

    return await services.read_pipeline().run(request, handler)
