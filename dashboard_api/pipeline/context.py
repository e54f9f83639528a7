from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from starlette.requests import Request

from ..auth.context import AuthContext
from ..middleware.body_size import MB, read_limited_body
from ..rate_limiter import RateLimitResult, get_client_ip

_TRACE_ID = re.compile(r"^[A-Za-z0-9._-]{8,128}$")
_TRACE_HEADERS = ("x-request-id", "x-correlation-id")


def resolve_trace_id(request: Request) -> str:
    for header in _TRACE_HEADERS:
        value = request.headers.get(header)
        if value and _TRACE_ID.match(value):
            return value
    return uuid.uuid4().hex


@dataclass
class RequestContext:
    """Estado de un request a lo largo del pipeline.

    Se crea al entrar, lo leen/escriben las etapas y el handler, y se
    descarta al responder. Nunca se persiste.
    """
    request: Request
    trace_id: str
    method: str
    path: str
    started_at: float
    client_ip: str
    auth: Optional[AuthContext] = None
    org_id: Optional[str] = None
    body: Any = None
    query: Any = None
    rate_limit: Optional[RateLimitResult] = None
    body_limit: int = 1 * MB
    extras: Dict[str, Any] = field(default_factory=dict)
    _raw_body: Optional[bytes] = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestContext":
        return cls(
            request=request,
            trace_id=resolve_trace_id(request),
            method=request.method.upper(),
            path=request.url.path,
            started_at=time.perf_counter(),
            client_ip=get_client_ip(request),
        )

    @property
    def identity(self) -> Optional[str]:
        return self.auth.name if self.auth is not None else None

    @property
    def elapsed_seconds(self) -> float:
        return time.perf_counter() - self.started_at

    def path_param(self, name: str) -> str:
        return str(self.request.path_params[name])

    async def read_body(self) -> bytes:
        """Body crudo, leído una sola vez y acotado a ``body_limit``."""
        if self._raw_body is None:
            self._raw_body = await read_limited_body(self.request, self.body_limit)
        return self._raw_body
