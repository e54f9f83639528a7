"""Endpoints de lecturas: ingesta masiva y consultas."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder

from ..api.response import json_paginated, json_success
from ..auth.audit import get_audit_user
from ..cache import keys
from ..middleware.request_validation import PRESETS
from ..pipeline import RequestContext
from ..schemas import LatestReadingsQuery, ReadingsIngest, ReadingsQuery
from ..services import get_services

router = APIRouter(prefix="/api/v2/readings", tags=["readings"])
logger = logging.getLogger(__name__)

# Detalle de errores devuelto al cliente
MAX_REPORTED_ERRORS = 10


@router.post("/ingest")
async def ingest_readings(request: Request):
    """Ingesta masiva (hasta 10000 lecturas).

    Las lecturas de dispositivos inexistentes o borrados se rechazan una a
    una sin abortar el lote. Actualiza ``last_seen`` de los dispositivos
    con lecturas aceptadas.
    """
    services = get_services(request)

    async def handler(ctx: RequestContext):
        payload: ReadingsIngest = ctx.body
        requested = {r.device_id for r in payload.readings}
        existing = await run_in_threadpool(services.repos.devices.existing_ids, ctx.org_id, requested)

        accepted = []
        errors = []
        for index, reading in enumerate(payload.readings):
            if reading.device_id not in existing:
                errors.append(
                    {"index": index, "device_id": reading.device_id, "error": f"Device '{reading.device_id}' not found"}
                )
                continue
            accepted.append(
                {
                    "device_id": reading.device_id,
                    "type": reading.type,
                    "unit": reading.resolved_unit,
                    "value": reading.value,
                    "timestamp": reading.timestamp,
                    "source": reading.source,
                }
            )

        inserted = 0
        if accepted:
            now = datetime.now(timezone.utc)
            inserted = await run_in_threadpool(
                services.repos.readings.insert_many,
                ctx.org_id,
                accepted,
                get_audit_user(ctx.auth),
                now,
            )
            await run_in_threadpool(
                services.repos.devices.touch_last_seen,
                ctx.org_id,
                {r["device_id"] for r in accepted},
                now,
            )
            await services.invalidator.invalidate_device_readings(ctx.org_id, {r["device_id"] for r in accepted})
            await services.invalidator.invalidate_health(ctx.org_id)

        if errors:
            logger.warning("READINGS_REJECTED org=%s rejected=%d inserted=%d", ctx.org_id, len(errors), inserted)

        return json_success(
            {
                "inserted": inserted,
                "rejected": len(errors),
                "errors": errors[:MAX_REPORTED_ERRORS],
                "total_errors": len(errors),
            },
            f"Ingested {inserted} readings",
            status=201,
        )

    return await services.mutation_pipeline(ReadingsIngest, options=PRESETS["bulk_ingestion"]).run(request, handler)


@router.get("")
async def query_readings(request: Request):
    services = get_services(request)

    async def handler(ctx: RequestContext):
        query: ReadingsQuery = ctx.query
        items, total = await run_in_threadpool(services.repos.readings.query, ctx.org_id, query)
        return json_paginated(items, total, query.page, query.limit)

    return await services.read_pipeline(ReadingsQuery).run(request, handler)


@router.get("/latest")
async def latest_readings(request: Request):
    services = get_services(request)

    async def handler(ctx: RequestContext):
        query: LatestReadingsQuery = ctx.query
        devices = query.selected_devices
        types = list(query.type or [])

        async def fetch():
            rows = await run_in_threadpool(services.repos.readings.latest, ctx.org_id, devices, types)
            return jsonable_encoder(rows)

        readings = await services.cache.get_or_set(
            keys.latest_readings_key(ctx.org_id, devices, types),
            fetch,
            services.cache_ttl.readings_latest,
        )
        return json_success(readings)

    return await services.read_pipeline(LatestReadingsQuery).run(request, handler)
