"""Cache-aside sobre Redis.

Todas las operaciones degradan a no-op (nunca lanzan) si Redis no está
disponible o el cache está deshabilitado: el cache es solo una
optimización, la corrección no depende de él.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Set

from fastapi.encoders import jsonable_encoder
from redis.exceptions import RedisError

from common.config import Settings

from ..core.redis import RedisConnection
from ..monitoring.metrics import CACHE_EVENTS


logger = logging.getLogger(__name__)

SCAN_COUNT = 100
_MISSING_TTL = -2

_CACHE_ERRORS = (RedisError, OSError, ValueError, TypeError)


@dataclass(frozen=True)
class CacheTTL:
    """TTL en segundos por tipo de recurso."""
    metadata: int = 600
    health: int = 30
    device: int = 300
    devices_list: int = 30
    readings_latest: int = 10
    analytics: int = 60

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheTTL":
        return cls(
            metadata=settings.cache_metadata_ttl,
            health=settings.cache_health_ttl,
            device=settings.cache_device_ttl,
            devices_list=settings.cache_devices_list_ttl,
            readings_latest=settings.cache_readings_latest_ttl,
            analytics=settings.cache_analytics_ttl,
        )


class Cache:
    """Cache JSON con TTL.

    Args:
        connection: Conexión compartida a Redis
        enabled: False = todas las operaciones son no-op
        default_ttl: TTL si la llamada no indica otro
    """

    def __init__(self, connection: RedisConnection, *, enabled: bool = True, default_ttl: int = 300):
        self._conn = connection
        self._enabled = enabled
        self._default_ttl = default_ttl
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def _client(self):
        if not self._enabled:
            return None
        return await self._conn.available()

    def _failed(self, op: str, target: Any, error: BaseException) -> None:
        if isinstance(error, (RedisError, OSError)):
            self._conn.mark_failed(error)
        CACHE_EVENTS.labels(event="error").inc()
        logger.warning("[Cache] %s failed target=%s err=%s", op, target, error)

    async def get(self, key: str) -> Optional[Any]:
        client = await self._client()
        if client is None:
            return None
        try:
            cached = await client.get(key)
            if cached is None:
                CACHE_EVENTS.labels(event="miss").inc()
                logger.debug("[Cache] miss key=%s", key)
                return None
            CACHE_EVENTS.labels(event="hit").inc()
            logger.debug("[Cache] hit key=%s", key)
            return json.loads(cached)
        except _CACHE_ERRORS as e:
            self._failed("get", key, e)
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        client = await self._client()
        if client is None:
            return False
        try:
            serialized = json.dumps(jsonable_encoder(value))
            await client.setex(key, ttl or self._default_ttl, serialized)
            logger.debug("[Cache] set key=%s", key)
            return True
        except _CACHE_ERRORS as e:
            self._failed("set", key, e)
            return False

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        client = await self._client()
        if client is None:
            return 0
        try:
            deleted = await client.delete(*keys)
        except _CACHE_ERRORS as e:
            self._failed("delete", keys, e)
            return 0
        if deleted:
            CACHE_EVENTS.labels(event="invalidate").inc()
        return int(deleted)

    async def delete_pattern(self, pattern: str) -> int:
        """Borra las claves que casan con ``pattern`` usando SCAN (no KEYS)."""
        client = await self._client()
        if client is None:
            return 0

        total = 0
        batch = []
        try:
            async for key in client.scan_iter(match=pattern, count=SCAN_COUNT):
                batch.append(key)
                if len(batch) >= SCAN_COUNT:
                    total += await client.delete(*batch)
                    batch = []
            if batch:
                total += await client.delete(*batch)
        except _CACHE_ERRORS as e:
            self._failed("delete_pattern", pattern, e)
            return total

        if total:
            CACHE_EVENTS.labels(event="invalidate").inc()
            logger.debug("[Cache] pattern delete pattern=%s deleted=%d", pattern, total)
        return total

    async def get_or_set(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
    ) -> Any:
        """Lee de cache; en miss llama a ``fetch`` y guarda en segundo plano.

        La escritura no se espera: el llamante recibe el valor fresco sin
        pagar el round trip y un fallo de escritura nunca rompe la lectura.
        Varios miss concurrentes de la misma clave ejecutan ``fetch`` varias
        veces (no hay coalescing).
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        fresh = await fetch()
        if fresh is not None and self._enabled:
            task = asyncio.create_task(self.set(key, fresh, ttl))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return fresh

    async def exists(self, key: str) -> bool:
        client = await self._client()
        if client is None:
            return False
        try:
            return await client.exists(key) == 1
        except _CACHE_ERRORS as e:
            self._failed("exists", key, e)
            return False

    async def ttl(self, key: str) -> int:
        client = await self._client()
        if client is None:
            return _MISSING_TTL
        try:
            return int(await client.ttl(key))
        except _CACHE_ERRORS as e:
            self._failed("ttl", key, e)
            return _MISSING_TTL

    async def mset(self, entries: Mapping[str, Any], ttl: Optional[int] = None) -> int:
        """Precarga varias claves en un solo pipeline."""
        if not entries:
            return 0
        client = await self._client()
        if client is None:
            return 0
        try:
            async with client.pipeline(transaction=False) as pipe:
                for key, value in entries.items():
                    pipe.setex(key, ttl or self._default_ttl, json.dumps(jsonable_encoder(value)))
                await pipe.execute()
        except _CACHE_ERRORS as e:
            self._failed("mset", len(entries), e)
            return 0
        return len(entries)

    async def drain(self) -> None:
        """Espera a las escrituras pendientes de ``get_or_set``."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
