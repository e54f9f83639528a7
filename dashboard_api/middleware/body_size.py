"""Límite de tamaño de body.

El header Content-Length se comprueba antes de leer nada; un body sin
Content-Length se acota durante la lectura con ``read_limited_body``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Tuple

from starlette.requests import Request

from ..errors import ApiError

MB = 1024 * 1024

BULK_ENDPOINTS: Tuple[str, ...] = ("/api/v2/readings/ingest",)


@dataclass(frozen=True)
class BodySizeConfig:
    default: int = 1 * MB
    bulk: int = 10 * MB


def max_body_size(path: str, config: BodySizeConfig) -> int:
    if any(path.startswith(endpoint) for endpoint in BULK_ENDPOINTS):
        return config.bulk
    return config.default


def format_bytes(size: int) -> str:
    if size >= MB:
        return f"{size / MB:.1f}MB"
    if size >= 1024:
        return f"{size / 1024:.1f}KB"
    return f"{size}B"


def _too_large(size: int, limit: int) -> ApiError:
    return ApiError.payload_too_large(
        f"Request body too large. Maximum size is {format_bytes(limit)}",
        metadata={
            "received": format_bytes(size),
            "maximum": format_bytes(limit),
            "received_bytes": size,
            "maximum_bytes": limit,
        },
    )


def validate_body_size(headers: Mapping[str, str], path: str, config: BodySizeConfig) -> None:
    content_length = headers.get("content-length")
    if not content_length:
        return

    try:
        size = int(content_length.strip())
    except ValueError:
        raise ApiError.bad_request("Invalid Content-Length header", metadata={"received": content_length})
    if size < 0:
        raise ApiError.bad_request("Invalid Content-Length header", metadata={"received": content_length})

    limit = max_body_size(path, config)
    if size > limit:
        raise _too_large(size, limit)


async def read_limited_body(request: Request, limit: int) -> bytes:
    """Lee el body en streaming cortando al superar ``limit`` bytes."""
    chunks = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > limit:
            raise _too_large(received, limit)
        chunks.append(chunk)
    return b"".join(chunks)
