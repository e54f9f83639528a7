"""Envelope de respuestas exitosas: ``{"success": true, "data": ...}``."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def json_success(data: Any, message: Optional[str] = None, status: int = 200) -> JSONResponse:
    body = {"success": True, "data": jsonable_encoder(data)}
    if message:
        body["message"] = message
    body["timestamp"] = _timestamp()
    return JSONResponse(status_code=status, content=body)


def pagination_meta(total: int, page: int, limit: int) -> dict:
    total_pages = math.ceil(total / limit) if limit > 0 else 0
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_previous": page > 1,
    }


def json_paginated(
    items: Sequence[Any], total: int, page: int, limit: int, *, summary: Optional[Mapping[str, Any]] = None
) -> JSONResponse:
    body = {
        "success": True,
        "data": jsonable_encoder(list(items)),
        "pagination": pagination_meta(total, page, limit),
    }
    if summary is not None:
        body["summary"] = jsonable_encoder(summary)
    body["timestamp"] = _timestamp()
    return JSONResponse(content=body)
