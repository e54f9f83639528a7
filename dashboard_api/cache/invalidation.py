"""Invalidación de cache por tipo de mutación.

Se ejecuta después del commit en base de datos. Los fallos se loguean y
nunca se propagan: en el peor caso se sirve un dato acotado por el TTL.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Collection

from . import keys
from .cache import Cache

logger = logging.getLogger(__name__)


class CacheInvalidator:
    def __init__(self, cache: Cache):
        self._cache = cache

    async def _run(self, label: str, org_id: str, *operations: Awaitable[int]) -> None:
        results = await asyncio.gather(*operations, return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            logger.warning("[Cache] %s invalidation failed org=%s err=%s", label, org_id, failures[0])
        else:
            logger.debug("[Cache] %s invalidated org=%s", label, org_id)

    async def invalidate_device(self, org_id: str, device_id: str) -> None:
        # Listas, metadata y health son agregados sobre dispositivos
        await self._run(
            "device",
            org_id,
            self._cache.delete(keys.device_key(org_id, device_id)),
            self._cache.delete_pattern(keys.devices_list_pattern(org_id)),
            self._cache.delete_pattern(keys.metadata_pattern(org_id)),
            self._cache.delete_pattern(keys.health_pattern(org_id)),
        )

    async def invalidate_all_devices(self, org_id: str) -> None:
        await self._run(
            "all_devices",
            org_id,
            self._cache.delete_pattern(keys.device_pattern(org_id)),
            self._cache.delete_pattern(keys.devices_list_pattern(org_id)),
            self._cache.delete_pattern(keys.metadata_pattern(org_id)),
            self._cache.delete_pattern(keys.health_pattern(org_id)),
        )

    async def invalidate_on_device_create(self, org_id: str) -> None:
        await self._run(
            "device_create",
            org_id,
            self._cache.delete_pattern(keys.devices_list_pattern(org_id)),
            self._cache.delete_pattern(keys.metadata_pattern(org_id)),
            self._cache.delete_pattern(keys.health_pattern(org_id)),
        )

    async def invalidate_readings(self, org_id: str) -> None:
        # Health depende de last_seen, que cambia con cada ingesta
        await self._run(
            "readings",
            org_id,
            self._cache.delete_pattern(keys.readings_pattern(org_id)),
            self._cache.delete_pattern(keys.health_pattern(org_id)),
        )

    async def invalidate_device_readings(self, org_id: str, device_ids: Collection[str]) -> None:
        """Borra las lecturas cacheadas que cubren alguno de ``device_ids``.

        Las claves filtradas solo por otros dispositivos se conservan.
        Health se invalida aparte.
        """
        if not device_ids:
            return
        patterns = {p for device_id in device_ids for p in keys.device_readings_patterns(org_id, device_id)}
        await self._run(
            "device_readings",
            org_id,
            *(self._cache.delete_pattern(pattern) for pattern in sorted(patterns)),
        )

    async def invalidate_health(self, org_id: str) -> None:
        await self._run("health", org_id, self._cache.delete_pattern(keys.health_pattern(org_id)))

    async def invalidate_metadata(self, org_id: str) -> None:
        await self._run("metadata", org_id, self._cache.delete_pattern(keys.metadata_pattern(org_id)))

    async def clear_all_caches(self) -> None:
        await self._run(
            "all",
            "*",
            *(self._cache.delete_pattern(pattern) for pattern in keys.ALL_TENANT_PATTERNS),
        )
        logger.info("[Cache] All caches cleared")
