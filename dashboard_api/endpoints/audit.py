"""Trail de auditoría de la organización (solo lectura)."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder

from ..api.response import json_paginated
from ..pipeline import RequestContext
from ..schemas import AuditQuery
from ..services import get_services

router = APIRouter(prefix="/api/v2/audit", tags=["audit"])


@router.get("")
async def list_audit_events(request: Request):
    services = get_services(request)

    async def handler(ctx: RequestContext):
        query: AuditQuery = ctx.query
        items, total = await run_in_threadpool(services.repos.audit.list, ctx.org_id, query)
        summary = await run_in_threadpool(services.repos.audit.summary, ctx.org_id, query)
        return json_paginated(jsonable_encoder(items), total, query.page, query.limit, summary=summary)

    return await services.read_pipeline(AuditQuery).run(request, handler)
