"""Cache-aside sobre Redis, con claves por tenant e invalidación por patrón."""

from .cache import Cache, CacheTTL
from .invalidation import CacheInvalidator

__all__ = ["Cache", "CacheTTL", "CacheInvalidator"]
