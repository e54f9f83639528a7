"""Redis layer - conexión compartida para cache y rate limiting."""

from .connection import RedisConnection

__all__ = ["RedisConnection"]
