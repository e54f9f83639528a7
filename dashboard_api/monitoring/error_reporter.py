"""Reporte de errores 5xx a un servicio externo.

``NullErrorReporter`` es el default; ``HttpErrorReporter`` se elige al
arrancar si ``ERROR_REPORT_URL`` está configurado.
"""

from __future__ import annotations

import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class ErrorReporter(Protocol):
    async def report(self, exc: BaseException, context: Dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class NullErrorReporter:
    async def report(self, exc: BaseException, context: Dict[str, Any]) -> None:
        return None

    async def close(self) -> None:
        return None


class HttpErrorReporter:
    """Envía un evento JSON por error; los fallos del envío solo se loguean."""

    def __init__(self, url: str, *, timeout: float = 2.0, client: Optional[httpx.AsyncClient] = None):
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def report(self, exc: BaseException, context: Dict[str, Any]) -> None:
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "exception": type(exc).__name__,
            "message": str(exc),
            "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            "context": context,
        }
        try:
            response = await self._client.post(self._url, json=event)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("[ErrorReporter] Failed to report error: %s", e)

    async def close(self) -> None:
        await self._client.aclose()


def build_error_reporter(url: Optional[str]) -> ErrorReporter:
    if url:
        logger.info("[ErrorReporter] HTTP reporter enabled")
        return HttpErrorReporter(url)
    return NullErrorReporter()
