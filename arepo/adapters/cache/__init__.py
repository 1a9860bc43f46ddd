"""Tag-aware cache stores.

``MemoryCache`` ships with the core install. ``RedisCache`` lives in
``arepo.adapters.cache.redis`` and needs the ``redis`` extra.
"""

from ._base import (
    CacheBase,
    CacheEntry,
    CacheError,
    CacheInvalidationError,
    CacheSettings,
    CacheStoreProtocol,
    CacheUnavailableError,
    MsgPackSerializer,
    PayloadCodec,
)
from .memory import MemoryCache

__all__ = [
    "CacheBase",
    "CacheEntry",
    "CacheError",
    "CacheInvalidationError",
    "CacheSettings",
    "CacheStoreProtocol",
    "CacheUnavailableError",
    "MemoryCache",
    "MsgPackSerializer",
    "PayloadCodec",
]
