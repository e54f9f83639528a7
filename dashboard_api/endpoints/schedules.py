"""Endpoints de mantenimientos programados.

Flujo de estados: ``scheduled`` -> ``completed`` | ``cancelled``. Un
schedule completado o cancelado ya no admite cambios (422).
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool

from ..api.response import json_paginated, json_success
from ..auth.audit import create_audit_metadata
from ..errors import ApiError, ErrorCode
from ..pipeline import RequestContext
from ..schemas import ScheduleCreate, ScheduleListQuery, ScheduleStatus, ScheduleUpdate
from ..services import Services, get_services

router = APIRouter(prefix="/api/v2/schedules", tags=["schedules"])
logger = logging.getLogger(__name__)

_TRANSITION_ACTIONS = {
    ScheduleStatus.COMPLETED.value: "complete",
    ScheduleStatus.CANCELLED.value: "cancel",
}


def check_transition(current: str, target: Optional[str]) -> None:
    """Valida un cambio sobre un schedule en estado ``current``.

    Args:
        current: Estado actual
        target: ``completed`` / ``cancelled`` para una transición, None
            para un cambio de fecha o notas

    Raises:
        ApiError: 422 UNPROCESSABLE_ENTITY si el cambio no está permitido
    """
    if target is None:
        if current != ScheduleStatus.SCHEDULED.value:
            raise ApiError.unprocessable(f"Cannot modify a {current} schedule", metadata={"status": current})
        return

    if current == target:
        raise ApiError.unprocessable(f"Schedule is already {current}", metadata={"status": current})
    if current == ScheduleStatus.CANCELLED.value:
        raise ApiError.unprocessable("Cannot complete a cancelled schedule", metadata={"status": current})
    if current == ScheduleStatus.COMPLETED.value:
        raise ApiError.unprocessable("Cannot cancel a completed schedule", metadata={"status": current})


async def _load_schedule(services: Services, org_id: str, schedule_id: str) -> dict:
    schedule = await run_in_threadpool(services.repos.schedules.get, org_id, schedule_id)
    if schedule is None:
        raise ApiError.not_found("Schedule", schedule_id)
    return schedule


async def _apply(services: Services, ctx: RequestContext, schedule_id: str, target: Optional[str], changes: dict):
    existing = await _load_schedule(services, ctx.org_id, schedule_id)
    check_transition(existing["status"], target)

    action = _TRANSITION_ACTIONS[target] if target else "update"
    audit = create_audit_metadata(ctx.auth, action, previous_updated_at=existing["audit"]["updated_at"])
    if target:
        changes = {**changes, "status": target}

    updated = await run_in_threadpool(services.repos.schedules.update, ctx.org_id, schedule_id, changes, audit)
    if not updated:
        # Otra transición ganó entre la lectura y el UPDATE condicionado
        current = await _load_schedule(services, ctx.org_id, schedule_id)
        check_transition(current["status"], target)
        raise ApiError.conflict("Schedule was modified concurrently")

    logger.info("SCHEDULE_%s id=%s by=%s", action.upper(), schedule_id, audit["updated_by"])
    return await _load_schedule(services, ctx.org_id, schedule_id)


@router.get("")
async def list_schedules(request: Request):
    services = get_services(request)

    async def handler(ctx: RequestContext):
        query: ScheduleListQuery = ctx.query
        items, total = await run_in_threadpool(services.repos.schedules.list, ctx.org_id, query)
        return json_paginated(items, total, query.page, query.limit)

    return await services.read_pipeline(ScheduleListQuery).run(request, handler)


@router.post("")
async def create_schedules(request: Request):
    """Crea un schedule por dispositivo; todos los dispositivos deben existir."""
    services = get_services(request)

    async def handler(ctx: RequestContext):
        data: ScheduleCreate = ctx.body
        existing = await run_in_threadpool(services.repos.devices.existing_ids, ctx.org_id, data.device_ids)
        missing = sorted(set(data.device_ids) - existing)
        if missing:
            raise ApiError(
                ErrorCode.NOT_FOUND,
                f"Devices not found: {', '.join(missing)}",
                metadata={"resource": "Device", "missing": missing},
            )

        audit = create_audit_metadata(ctx.auth, "create")
        schedules = await run_in_threadpool(services.repos.schedules.create_many, ctx.org_id, data, audit)
        return json_success(
            {"schedules": schedules, "count": len(schedules)},
            f"Created {len(schedules)} schedule(s)",
            status=201,
        )

    return await services.mutation_pipeline(ScheduleCreate).run(request, handler)


@router.get("/{schedule_id}")
async def get_schedule(schedule_id: str, request: Request):
    services = get_services(request)

    async def handler(ctx: RequestContext):
        return json_success(await _load_schedule(services, ctx.org_id, schedule_id))

    return await services.read_pipeline().run(request, handler)


@router.patch("/{schedule_id}")
async def update_schedule(schedule_id: str, request: Request):
    services = get_services(request)

    async def handler(ctx: RequestContext):
        data: ScheduleUpdate = ctx.body
        changes = data.model_dump(exclude_unset=True, exclude={"status"})
        target = data.status.value if data.status is not None else None
        schedule = await _apply(services, ctx, schedule_id, target, changes)
        messages = {
            "completed": "Schedule completed",
            "cancelled": "Schedule cancelled",
        }
        return json_success(schedule, messages.get(target, "Schedule updated successfully"))

    return await services.mutation_pipeline(ScheduleUpdate).run(request, handler)


@router.delete("/{schedule_id}")
async def cancel_schedule(schedule_id: str, request: Request):
    """Cancela el schedule (no se borra físicamente); requiere ``schedules:delete``."""
    services = get_services(request)

    async def handler(ctx: RequestContext):
        schedule = await _apply(services, ctx, schedule_id, ScheduleStatus.CANCELLED.value, {})
        return json_success(
            {"id": schedule_id, "cancelled": True, "cancelled_at": schedule["audit"]["cancelled_at"]},
            "Schedule cancelled",
        )

    return await services.mutation_pipeline().run(request, handler)
