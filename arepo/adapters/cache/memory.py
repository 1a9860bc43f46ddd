import asyncio
import heapq
import time
from uuid import uuid4

import typing as t
from aiocache.backends.memory import SimpleMemoryCache

from ._base import CacheBase, CacheEntry, CacheSettings


class MemoryCache(CacheBase):
    """In-process tag-aware cache store.

    Payloads live in an aiocache ``SimpleMemoryCache``; the tag index is a
    pair of dictionaries guarded by one asyncio lock, so readers never see
    a partially invalidated tag set. Expired keys are pruned from the tag
    index lazily, in expiry order.
    """

    def __init__(self, settings: CacheSettings | None = None, **kwargs: t.Any) -> None:
        super().__init__(settings)
        self._init_kwargs = kwargs
        self._client: SimpleMemoryCache | None = None
        self._lock = asyncio.Lock()
        self._tags: dict[str, set[str]] = {}
        self._key_tags: dict[str, frozenset[str]] = {}
        self._expiry: dict[str, float] = {}
        self._expiry_heap: list[tuple[float, str]] = []

    def get_client(self) -> SimpleMemoryCache:
        if self._client is None:
            # aiocache memory backends may share storage; a private namespace
            # keeps two stores in one process apart.
            cache = SimpleMemoryCache(
                namespace=f"{self.namespace}{uuid4().hex[:8]}:",
                **self._init_kwargs,
            )
            cache.timeout = 0.0
            self._client = cache
            self.register_resource(cache)
        return self._client

    def tag_index(self) -> dict[str, frozenset[str]]:
        """Snapshot of tag -> keys, for inspection."""
        return {tag: frozenset(keys) for tag, keys in self._tags.items()}

    def _index(self, entry: CacheEntry) -> None:
        self._key_tags[entry.key] = entry.tags
        for tag in entry.tags:
            self._tags.setdefault(tag, set()).add(entry.key)
        if entry.expires_at is not None:
            self._expiry[entry.key] = entry.expires_at
            heapq.heappush(self._expiry_heap, (entry.expires_at, entry.key))
        else:
            self._expiry.pop(entry.key, None)

    def _unindex(self, key: str) -> None:
        for tag in self._key_tags.pop(key, frozenset()):
            keys = self._tags.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tags[tag]
        self._expiry.pop(key, None)

    async def _prune_expired(self) -> None:
        now = time.time()
        client = self.get_client()
        while self._expiry_heap and self._expiry_heap[0][0] <= now:
            expires_at, key = heapq.heappop(self._expiry_heap)
            # stale heap rows belong to entries that were rewritten since
            if self._expiry.get(key) != expires_at:
                continue
            await client.delete(self._entry_key(key))
            self._unindex(key)

    async def _get(self, key: str) -> CacheEntry | None:
        async with self._lock:
            entry: CacheEntry | None = await self.get_client().get(self._entry_key(key))
            if entry is None:
                if key in self._key_tags:
                    self._unindex(key)
                return None
            if entry.is_expired():
                await self.get_client().delete(self._entry_key(key))
                self._unindex(key)
                return None
            return entry

    async def _put(self, entry: CacheEntry) -> None:
        async with self._lock:
            await self._prune_expired()
            if entry.key in self._key_tags:
                self._unindex(entry.key)
            ttl = entry.remaining_ttl()
            if ttl is not None and ttl <= 0:
                return
            await self.get_client().set(self._entry_key(entry.key), entry, ttl=ttl)
            self._index(entry)

    async def _invalidate_tags(self, tags: frozenset[str]) -> int:
        async with self._lock:
            keys: set[str] = set()
            for tag in tags:
                keys |= self._tags.pop(tag, set())
            client = self.get_client()
            for key in keys:
                await client.delete(self._entry_key(key))
                self._unindex(key)
            return len(keys)

    async def _delete(self, key: str) -> bool:
        async with self._lock:
            deleted = bool(await self.get_client().delete(self._entry_key(key)))
            self._unindex(key)
            return deleted

    async def _touch(self, key: str, ttl: float) -> bool:
        async with self._lock:
            client = self.get_client()
            entry: CacheEntry | None = await client.get(self._entry_key(key))
            if entry is None or entry.is_expired():
                return False
            refreshed = entry.refreshed(ttl)
            await client.set(self._entry_key(key), refreshed, ttl=ttl)
            self._index(refreshed)
            return True

    async def _clear(self) -> None:
        async with self._lock:
            if self._client is not None:
                await self._client.clear(namespace=self._client.namespace)
            self._tags.clear()
            self._key_tags.clear()
            self._expiry.clear()
            self._expiry_heap.clear()
