"""Endpoints de dispositivos (CRUD con borrado lógico)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder

from ..api.response import json_paginated, json_success
from ..auth.audit import create_audit_metadata
from ..cache import keys
from ..errors import ApiError
from ..pipeline import RequestContext
from ..repositories.devices import flatten_update
from ..schemas import DeviceCreate, DeviceHistoryQuery, DeviceListQuery, DeviceUpdate
from ..services import Services, get_services

router = APIRouter(prefix="/api/v2/devices", tags=["devices"])
logger = logging.getLogger(__name__)


async def _load_active_device(services: Services, org_id: str, device_id: str) -> dict:
    device = await run_in_threadpool(services.repos.devices.get, org_id, device_id)
    if device is None:
        raise ApiError.not_found("Device", device_id)
    if device["audit"]["deleted_at"] is not None:
        raise ApiError.gone("Device", device_id)
    return device


@router.get("")
async def list_devices(request: Request):
    services = get_services(request)

    async def handler(ctx: RequestContext):
        query: DeviceListQuery = ctx.query

        async def fetch():
            items, total = await run_in_threadpool(services.repos.devices.list, ctx.org_id, query)
            return {"items": jsonable_encoder(items), "total": total}

        page = await services.cache.get_or_set(
            keys.devices_list_key(ctx.org_id, query.model_dump(mode="json")),
            fetch,
            services.cache_ttl.devices_list,
        )
        return json_paginated(page["items"], page["total"], query.page, query.limit)

    return await services.read_pipeline(DeviceListQuery).run(request, handler)


@router.post("")
async def create_device(request: Request):
    services = get_services(request)

    async def handler(ctx: RequestContext):
        data: DeviceCreate = ctx.body
        repo = services.repos.devices

        if await run_in_threadpool(repo.id_exists, data.id):
            raise ApiError.duplicate("id", data.id)
        if await run_in_threadpool(repo.serial_exists, ctx.org_id, data.serial_number):
            raise ApiError.duplicate("serial_number", data.serial_number)

        audit = create_audit_metadata(ctx.auth, "create")
        device = await run_in_threadpool(repo.create, ctx.org_id, data, audit)
        await services.invalidator.invalidate_on_device_create(ctx.org_id)
        return json_success(device, "Device created successfully", status=201)

    return await services.mutation_pipeline(DeviceCreate).run(request, handler)


@router.get("/health")
async def devices_health(request: Request):
    """Resumen de conectividad y batería (cacheado, depende de last_seen)."""
    services = get_services(request)

    async def handler(ctx: RequestContext):
        async def fetch():
            now = datetime.now(timezone.utc)
            return jsonable_encoder(await run_in_threadpool(services.repos.devices.health_summary, ctx.org_id, now))

        summary = await services.cache.get_or_set(
            keys.health_key(ctx.org_id),
            fetch,
            services.cache_ttl.health,
        )
        return json_success(summary)

    return await services.read_pipeline().run(request, handler)


@router.get("/{device_id}")
async def get_device(device_id: str, request: Request):
    services = get_services(request)

    async def handler(ctx: RequestContext):
        async def fetch():
            device = await run_in_threadpool(services.repos.devices.get, ctx.org_id, device_id)
            return jsonable_encoder(device) if device is not None else None

        device = await services.cache.get_or_set(
            keys.device_key(ctx.org_id, device_id),
            fetch,
            services.cache_ttl.device,
        )
        if device is None:
            raise ApiError.not_found("Device", device_id)
        if device["audit"]["deleted_at"] is not None:
            raise ApiError.gone("Device", device_id)
        return json_success(device)

    return await services.read_pipeline().run(request, handler)


@router.get("/{device_id}/history")
async def device_history(device_id: str, request: Request):
    """Eventos de auditoría del dispositivo, incluido un dispositivo ya borrado."""
    services = get_services(request)

    async def handler(ctx: RequestContext):
        query: DeviceHistoryQuery = ctx.query
        if await run_in_threadpool(services.repos.devices.get, ctx.org_id, device_id) is None:
            raise ApiError.not_found("Device", device_id)

        items, total = await run_in_threadpool(services.repos.audit.device_history, ctx.org_id, device_id, query)
        return json_paginated(jsonable_encoder(items), total, query.page, query.limit)

    return await services.read_pipeline(DeviceHistoryQuery).run(request, handler)


@router.patch("/{device_id}")
async def update_device(device_id: str, request: Request):
    services = get_services(request)

    async def handler(ctx: RequestContext):
        data: DeviceUpdate = ctx.body
        repo = services.repos.devices
        existing = await _load_active_device(services, ctx.org_id, device_id)

        changes = flatten_update(data.model_dump(mode="json", exclude_unset=True))
        serial = changes.get("serial_number")
        if serial and serial != existing["serial_number"]:
            if await run_in_threadpool(repo.serial_exists, ctx.org_id, serial, device_id):
                raise ApiError.duplicate("serial_number", serial)

        audit = create_audit_metadata(
            ctx.auth,
            "update",
            previous_updated_at=existing["audit"]["updated_at"],
        )
        if not await run_in_threadpool(repo.update, ctx.org_id, device_id, changes, audit):
            raise ApiError.not_found("Device", device_id)

        await services.invalidator.invalidate_device(ctx.org_id, device_id)
        device = await run_in_threadpool(repo.get, ctx.org_id, device_id)
        logger.info("DEVICE_UPDATED id=%s fields=%s by=%s", device_id, sorted(changes), audit["updated_by"])
        return json_success(device, "Device updated successfully")

    return await services.mutation_pipeline(DeviceUpdate).run(request, handler)


@router.delete("/{device_id}")
async def delete_device(device_id: str, request: Request):
    services = get_services(request)

    async def handler(ctx: RequestContext):
        existing = await _load_active_device(services, ctx.org_id, device_id)
        audit = create_audit_metadata(
            ctx.auth,
            "delete",
            previous_updated_at=existing["audit"]["updated_at"],
        )
        if not await run_in_threadpool(services.repos.devices.soft_delete, ctx.org_id, device_id, audit):
            raise ApiError.not_found("Device", device_id)

        await services.invalidator.invalidate_device(ctx.org_id, device_id)
        logger.info("DEVICE_DELETED id=%s by=%s", device_id, audit["deleted_by"])
        return json_success(
            {"id": device_id, "deleted": True, "deleted_at": audit["deleted_at"], "deleted_by": audit["deleted_by"]},
            "Device deleted successfully",
        )

    return await services.mutation_pipeline().run(request, handler)
