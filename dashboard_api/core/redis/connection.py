"""Conexión a Redis (redis.asyncio)."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_INTERVAL = 30.0


class RedisConnection:
    """Gestiona la conexión compartida a Redis.

    Cache y rate limiter usan ``available()``: si Redis cayó, la conexión
    se reintenta como mucho una vez cada ``retry_interval`` segundos y
    mientras tanto los consumidores degradan (fail-open / no-op).
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        timeout: float = 5.0,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        client: Optional[Redis] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._url = url
        self._timeout = timeout
        self._retry_interval = retry_interval
        self._client: Optional[Redis] = client
        self._clock = clock
        self._connected = False
        self._last_attempt: Optional[float] = None
        self._connect_lock = asyncio.Lock()

    @property
    def client(self) -> Optional[Redis]:
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(self._url)

    async def connect(self) -> bool:
        """Conecta (o verifica el cliente inyectado) con un PING."""
        if not self.configured:
            return False

        self._last_attempt = self._clock()
        try:
            if self._client is None:
                self._client = Redis.from_url(
                    self._url,
                    decode_responses=True,
                    socket_timeout=self._timeout,
                    socket_connect_timeout=self._timeout,
                )
            await self._client.ping()
            self._connected = True
            if self._url:
                logger.info("[Redis] Connected: %s", self._url.split("@")[-1])
            return True
        except (RedisError, OSError) as e:
            self._connected = False
            logger.warning("[Redis] Connection failed: %s", e)
            return False

    async def available(self) -> Optional[Redis]:
        """Cliente listo para usar, o None si Redis no está disponible.

        Los llamadores concurrentes durante una (re)conexión esperan al
        mismo intento y comparten su resultado.
        """
        if self._connected:
            return self._client
        if not self.configured:
            return None
        async with self._connect_lock:
            if self._connected:
                return self._client
            if self._last_attempt is not None and self._clock() - self._last_attempt < self._retry_interval:
                return None
            if await self.connect():
                return self._client
            return None

    def mark_failed(self, error: BaseException) -> None:
        if self._connected:
            logger.warning("[Redis] Marked unavailable: %s", error)
        self._connected = False
        self._last_attempt = self._clock()

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except (RedisError, OSError) as e:
                logger.debug("[Redis] Close failed: %s", e)
        self._connected = False
