"""Rate Limiter de ventana deslizante (Redis sorted sets).

Estrategia:
- Por IP: lecturas (read:ip) y mutaciones (mutation:ip)
- Ingesta: por IP (ingest:ip) y por dispositivo (ingest:device)

Cada clave ``ratelimit:{regla}:{identificador}`` es un ZSET cuyos scores
son timestamps en ms. Limpieza, conteo, alta y expiración se ejecutan en
un único MULTI/EXEC, así dos requests concurrentes para la misma clave
nunca ven el mismo conteo.

Si Redis no está disponible el limiter hace fail-open: el rate limiting
nunca debe tumbar la API.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from redis.exceptions import RedisError
from starlette.requests import Request

from common.config import Settings

from .core.redis import RedisConnection
from .logging_config import truncate_ip
from .monitoring.metrics import RATE_LIMIT_HITS


logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit"
EXPIRY_BUFFER_SECONDS = 10

INGEST_PATH = "/api/v2/readings/ingest"
MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
EXEMPT_PREFIXES = ("/health", "/ready", "/metrics", "/api/v2/health", "/api/v2/metrics")

_IP_HEADERS = (
    "x-forwarded-for",
    "x-real-ip",
    "cf-connecting-ip",
    "x-client-ip",
    "x-cluster-client-ip",
)


@dataclass(frozen=True)
class RateLimitRule:
    """Límite: ``max_requests`` por ``window_seconds`` para la regla ``name``."""
    name: str
    max_requests: int
    window_seconds: int


@dataclass
class RateLimitResult:
    allowed: bool
    current: int
    limit: int
    remaining: int
    reset_in: int
    retry_after: Optional[int] = None

    @property
    def usage_ratio(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.current / self.limit

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_in),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def unlimited_result() -> RateLimitResult:
    return RateLimitResult(
        allowed=True,
        current=0,
        limit=2**63 - 1,
        remaining=2**63 - 1,
        reset_in=0,
    )


def _fail_open(rule: RateLimitRule) -> RateLimitResult:
    return RateLimitResult(
        allowed=True,
        current=0,
        limit=rule.max_requests,
        remaining=rule.max_requests,
        reset_in=0,
    )


class SlidingWindowRateLimiter:
    """Rate limiter distribuido sobre Redis.

    Args:
        connection: Conexión compartida a Redis
        clock: Reloj en segundos (inyectable en tests)
    """

    def __init__(self, connection: RedisConnection, *, clock: Callable[[], float] = time.time):
        self._conn = connection
        self._clock = clock

    @staticmethod
    def key_for(rule_name: str, identifier: str) -> str:
        return f"{KEY_PREFIX}:{rule_name}:{identifier}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _reset_in(oldest: List[Tuple[Any, float]], now_ms: int, window_ms: int) -> int:
        # Segundos hasta que la entrada más antigua salga de la ventana
        if not oldest:
            return math.ceil(window_ms / 1000)
        oldest_score = int(oldest[0][1])
        return max(1, math.ceil((oldest_score + window_ms - now_ms) / 1000))

    async def check(self, identifier: str, rule: RateLimitRule) -> RateLimitResult:
        """Cuenta el request actual y decide si se admite.

        Returns:
            RateLimitResult; ``allowed`` es ``conteo_previo < max``
        """
        client = await self._conn.available()
        if client is None:
            RATE_LIMIT_HITS.labels(kind="degraded").inc()
            logger.debug("[RateLimit] Store unavailable, allowing rule=%s", rule.name)
            return _fail_open(rule)

        key = self.key_for(rule.name, identifier)
        now_ms = self._now_ms()
        window_ms = rule.window_seconds * 1000
        member = f"{now_ms}:{secrets.token_hex(3)}"

        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, 0, now_ms - window_ms)
                pipe.zcard(key)
                pipe.zrange(key, 0, 0, withscores=True)
                pipe.zadd(key, {member: now_ms})
                pipe.expire(key, rule.window_seconds + EXPIRY_BUFFER_SECONDS)
                results = await pipe.execute()
        except (RedisError, OSError) as e:
            self._conn.mark_failed(e)
            RATE_LIMIT_HITS.labels(kind="degraded").inc()
            logger.warning("[RateLimit] Check failed, allowing rule=%s err=%s", rule.name, e)
            return _fail_open(rule)

        count = int(results[1])
        reset_in = self._reset_in(results[2], now_ms, window_ms)
        allowed = count < rule.max_requests

        if not allowed:
            RATE_LIMIT_HITS.labels(kind="denied").inc()
            return RateLimitResult(
                allowed=False,
                current=count + 1,
                limit=rule.max_requests,
                remaining=0,
                reset_in=reset_in,
                retry_after=reset_in,
            )

        return RateLimitResult(
            allowed=True,
            current=count + 1,
            limit=rule.max_requests,
            remaining=max(0, rule.max_requests - count - 1),
            reset_in=reset_in,
        )

    async def check_many(self, checks: Sequence[Tuple[str, RateLimitRule]]) -> RateLimitResult:
        """Evalúa varios límites en paralelo.

        Devuelve la primera denegación (en el orden dado); si todos admiten,
        el resultado con mayor uso relativo (empate: el primero).
        """
        if not checks:
            return unlimited_result()

        results = await asyncio.gather(*(self.check(identifier, rule) for identifier, rule in checks))

        for result in results:
            if not result.allowed:
                return result

        best = results[0]
        for result in results[1:]:
            if result.usage_ratio > best.usage_ratio:
                best = result
        return best

    async def status(self, identifier: str, rule: RateLimitRule) -> RateLimitResult:
        """Uso actual sin consumir una entrada."""
        client = await self._conn.available()
        if client is None:
            return _fail_open(rule)

        key = self.key_for(rule.name, identifier)
        now_ms = self._now_ms()
        window_ms = rule.window_seconds * 1000

        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, 0, now_ms - window_ms)
                pipe.zcard(key)
                pipe.zrange(key, 0, 0, withscores=True)
                results = await pipe.execute()
        except (RedisError, OSError) as e:
            self._conn.mark_failed(e)
            logger.warning("[RateLimit] Status failed rule=%s err=%s", rule.name, e)
            return _fail_open(rule)

        count = int(results[1])
        reset_in = self._reset_in(results[2], now_ms, window_ms)
        allowed = count < rule.max_requests
        return RateLimitResult(
            allowed=allowed,
            current=count,
            limit=rule.max_requests,
            remaining=max(0, rule.max_requests - count),
            reset_in=reset_in,
            retry_after=None if allowed else reset_in,
        )

    async def reset(self, identifier: str, rule_name: str) -> bool:
        """Elimina la ventana de un identificador (desbloqueo manual).

        Returns:
            True si la clave existía
        """
        client = await self._conn.available()
        if client is None:
            return False
        try:
            deleted = await client.delete(self.key_for(rule_name, identifier))
        except (RedisError, OSError) as e:
            self._conn.mark_failed(e)
            logger.warning("[RateLimit] Reset failed rule=%s err=%s", rule_name, e)
            return False
        logger.info("RATE_LIMIT_RESET rule=%s identifier=%s deleted=%s", rule_name, identifier, bool(deleted))
        return bool(deleted)


@dataclass(frozen=True)
class RateLimitRules:
    """Tabla de reglas por endpoint."""
    enabled: bool = True
    ingest_per_device: RateLimitRule = RateLimitRule("ingest:device", 1000, 60)
    ingest_per_ip: RateLimitRule = RateLimitRule("ingest:ip", 10000, 60)
    mutation_per_ip: RateLimitRule = RateLimitRule("mutation:ip", 100, 60)
    read_per_ip: RateLimitRule = RateLimitRule("read:ip", 1000, 60)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimitRules":
        window = settings.rate_limit_window_seconds
        return cls(
            enabled=settings.rate_limit_enabled,
            ingest_per_device=RateLimitRule("ingest:device", settings.rate_limit_ingest_per_device, window),
            ingest_per_ip=RateLimitRule("ingest:ip", settings.rate_limit_ingest_per_ip, window),
            mutation_per_ip=RateLimitRule("mutation:ip", settings.rate_limit_mutations_per_ip, window),
            read_per_ip=RateLimitRule("read:ip", settings.rate_limit_reads_per_ip, window),
        )

    def by_name(self) -> Dict[str, RateLimitRule]:
        rules = (self.ingest_per_device, self.ingest_per_ip, self.mutation_per_ip, self.read_per_ip)
        return {rule.name: rule for rule in rules}

    @staticmethod
    def is_exempt(path: str) -> bool:
        return any(path.startswith(prefix) for prefix in EXEMPT_PREFIXES)

    def checks_for(
        self,
        method: str,
        path: str,
        client_ip: str,
        device_id: Optional[str] = None,
    ) -> List[Tuple[str, RateLimitRule]]:
        """Límites a aplicar a un request; lista vacía si está exento."""
        if not self.enabled or self.is_exempt(path):
            return []

        if path == INGEST_PATH:
            checks = [(client_ip, self.ingest_per_ip)]
            if device_id:
                checks.append((device_id, self.ingest_per_device))
            return checks

        if method.upper() in MUTATION_METHODS:
            return [(client_ip, self.mutation_per_ip)]
        return [(client_ip, self.read_per_ip)]


def get_client_ip(request: Request) -> str:
    """Obtiene la IP del cliente, considerando proxies."""
    for header in _IP_HEADERS:
        value = request.headers.get(header)
        if value:
            # X-Forwarded-For: "client, proxy1, proxy2" -> la primera es el cliente
            candidate = value.split(",")[0].strip()
            if candidate:
                return candidate

    if request.client and request.client.host:
        return request.client.host

    return "unknown"


def extract_device_id(body: Any) -> Optional[str]:
    """Device id del payload de ingesta (bulk o lectura suelta)."""
    if isinstance(body, (bytes, bytearray)):
        try:
            body = json.loads(body)
        except (UnicodeDecodeError, ValueError):
            return None

    if not isinstance(body, dict):
        return None

    readings = body.get("readings")
    if isinstance(readings, list) and readings:
        first = readings[0]
        if isinstance(first, dict):
            metadata = first.get("metadata")
            if isinstance(metadata, dict) and metadata.get("device_id"):
                return str(metadata["device_id"])
            if first.get("device_id"):
                return str(first["device_id"])
        return None

    metadata = body.get("metadata")
    if isinstance(metadata, dict) and metadata.get("device_id"):
        return str(metadata["device_id"])
    if body.get("device_id"):
        return str(body["device_id"])
    return None


def log_denied(method: str, path: str, client_ip: str, result: RateLimitResult) -> None:
    logger.warning(
        "RATE_LIMIT_EXCEEDED method=%s path=%s ip=%s current=%d limit=%d retry_after=%s",
        method,
        path,
        truncate_ip(client_ip),
        result.current,
        result.limit,
        result.retry_after,
    )
