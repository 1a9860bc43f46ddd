"""Cache coordinator.

Runs repository reads through a tag-aware cache store:

- lookups and population with TTLs
- single-flight execution, so concurrent misses on one key compute once
- promotion of a waiter when the computing caller is cancelled
- fail-open reads when the cache backend is unavailable
- tag invalidation with retries
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable

import typing as t
from dataclasses import asdict, dataclass

from arepo.adapters.cache import (
    CacheEntry,
    CacheInvalidationError,
    CacheSettings,
    CacheStoreProtocol,
    CacheUnavailableError,
    PayloadCodec,
)
from arepo.logger import get_logger

from ._base import RepositorySettings

logger = get_logger(__name__)


class FlightAbandoned(Exception):
    """The computing caller of a key went away before finishing."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Computation for {key} was abandoned")


@dataclass
class CacheMetrics:
    """Cache performance metrics."""

    hits: int = 0
    misses: int = 0
    executions: int = 0
    coalesced: int = 0
    writes: int = 0
    invalidations: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, t.Any]:
        return asdict(self) | {"hit_rate": self.hit_rate}


def _consume(flight: "asyncio.Future[t.Any]") -> None:
    # flights nobody waited on must not log "exception was never retrieved"
    if not flight.cancelled():
        flight.exception()


class CacheCoordinator:
    """Single-flight cache-aside coordinator over a ``CacheStoreProtocol``.

    The store is injected by the composition root; the coordinator keeps
    only per-process bookkeeping (in-flight computations and recent
    invalidations).
    """

    def __init__(
        self,
        store: CacheStoreProtocol,
        codec: PayloadCodec | None = None,
        *,
        default_ttl: float = 1800,
        refresh_ttl_on_hit: bool = False,
        invalidation_attempts: int = 3,
        invalidation_delay: float = 0.05,
    ) -> None:
        self.store = store
        self.codec = codec or PayloadCodec()
        self.default_ttl = default_ttl
        self.refresh_ttl_on_hit = refresh_ttl_on_hit
        self.invalidation_attempts = max(invalidation_attempts, 1)
        self.invalidation_delay = invalidation_delay
        self.metrics = CacheMetrics()
        self._inflight: dict[str, asyncio.Future[t.Any]] = {}
        self._sequence = 0
        self._invalidated_at: dict[str, int] = {}
        self._cleared_at = 0

    @classmethod
    def from_settings(
        cls,
        store: CacheStoreProtocol,
        settings: RepositorySettings | None = None,
        cache_settings: CacheSettings | None = None,
    ) -> "CacheCoordinator":
        settings = settings or RepositorySettings()
        if cache_settings is None:
            cache_settings = getattr(store, "settings", None)
            if not isinstance(cache_settings, CacheSettings):
                cache_settings = CacheSettings()
        return cls(
            store,
            PayloadCodec.from_settings(cache_settings),
            default_ttl=settings.cache_ttl,
            refresh_ttl_on_hit=cache_settings.refresh_ttl_on_hit,
            invalidation_attempts=settings.invalidation_attempts,
            invalidation_delay=settings.invalidation_delay,
        )

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def get_or_compute(
        self,
        key: str,
        tags: Iterable[str],
        compute: Callable[[], Awaitable[t.Any]],
        ttl: float | None = None,
        result_tags: Callable[[t.Any], Iterable[str]] | None = None,
    ) -> t.Any:
        """Return the cached value of ``key`` or compute and cache it.

        Concurrent callers missing on the same key share one execution of
        ``compute``. A failure of ``compute`` reaches every waiter and is
        not cached. If the computing caller is cancelled a waiter takes
        over.

        Args:
            key: Cache key
            tags: Invalidation tags of the entry
            compute: Coroutine factory producing the value
            ttl: Entry TTL in seconds, the coordinator default if omitted
            result_tags: Extra tags derived from the computed value
        """
        tags = frozenset(tags)
        first = True
        while True:
            hit, value = await self._lookup(key)
            if hit:
                if first:
                    self.metrics.hits += 1
                logger.debug(f"Cache hit: {key}")
                return value
            if first:
                self.metrics.misses += 1
                logger.debug(f"Cache miss: {key}")
                first = False
            flight = self._inflight.get(key)
            if flight is None:
                return await self._lead(key, tags, compute, ttl, result_tags)
            self.metrics.coalesced += 1
            try:
                return await asyncio.shield(flight)
            except FlightAbandoned:
                logger.debug(f"Computation for {key} abandoned, retrying")

    async def _lead(
        self,
        key: str,
        tags: frozenset[str],
        compute: Callable[[], Awaitable[t.Any]],
        ttl: float | None,
        result_tags: Callable[[t.Any], Iterable[str]] | None,
    ) -> t.Any:
        flight: asyncio.Future[t.Any] = asyncio.get_running_loop().create_future()
        flight.add_done_callback(_consume)
        self._inflight[key] = flight
        started_at = self._sequence
        try:
            # the previous leader stores before it leaves _inflight
            hit, value = await self._lookup(key)
            if not hit:
                self.metrics.executions += 1
                value = await compute()
                await self._populate(key, tags, value, ttl, result_tags, started_at)
        except asyncio.CancelledError:
            if not flight.done():
                flight.set_exception(FlightAbandoned(key))
            raise
        except Exception as e:
            if not flight.done():
                flight.set_exception(e)
            raise
        else:
            flight.set_result(value)
            return value
        finally:
            if self._inflight.get(key) is flight:
                del self._inflight[key]
            if not self._inflight:
                self._invalidated_at.clear()

    async def _lookup(self, key: str) -> tuple[bool, t.Any]:
        try:
            entry = await self.store.get(key)
        except CacheUnavailableError as e:
            self.metrics.errors += 1
            logger.warning(f"Cache unavailable, reading {key} from the store: {e}")
            return False, None
        if entry is None:
            return False, None
        try:
            value = self.codec.decode(entry.payload)
        except Exception as e:
            self.metrics.errors += 1
            logger.warning(f"Dropping undecodable cache entry {key}: {e}")
            await self.forget(key)
            return False, None
        if self.refresh_ttl_on_hit:
            try:
                await self.store.touch(key, self.default_ttl)
            except CacheUnavailableError as e:
                self.metrics.errors += 1
                logger.warning(f"Cache unavailable, TTL of {key} not refreshed: {e}")
        return True, value

    def _stale_since(self, started_at: int, tags: Iterable[str]) -> bool:
        if self._cleared_at > started_at:
            return True
        return any(self._invalidated_at.get(tag, 0) > started_at for tag in tags)

    async def _populate(
        self,
        key: str,
        tags: frozenset[str],
        value: t.Any,
        ttl: float | None,
        result_tags: Callable[[t.Any], Iterable[str]] | None,
        started_at: int,
    ) -> None:
        if result_tags is not None:
            tags = tags | frozenset(result_tags(value))
        if self._stale_since(started_at, tags):
            logger.debug(f"Not caching {key}: its tags were invalidated while computing")
            return
        try:
            payload = self.codec.encode(value)
        except Exception as e:
            self.metrics.errors += 1
            logger.warning(f"Not caching {key}, value is not serializable: {e}")
            return
        entry = CacheEntry.create(key, tags, payload, ttl or self.default_ttl)
        try:
            await self.store.put(entry)
        except CacheUnavailableError as e:
            self.metrics.errors += 1
            logger.warning(f"Cache unavailable, {key} not cached: {e}")
            return
        self.metrics.writes += 1

    def _mark_invalidated(self, tags: Iterable[str]) -> None:
        self._sequence += 1
        if self._inflight:
            for tag in tags:
                self._invalidated_at[tag] = self._sequence

    async def invalidate(self, tags: Iterable[str], *, strict: bool = False) -> bool:
        """Remove every entry tagged with any of ``tags``.

        Backend failures are retried with exponential backoff. When every
        attempt fails the failure is logged at ERROR and ``False`` is
        returned, or ``CacheInvalidationError`` raised if ``strict``.
        """
        tags = frozenset(tags)
        if not tags:
            return True
        self._mark_invalidated(tags)
        last_error: CacheUnavailableError | None = None
        for attempt in range(self.invalidation_attempts):
            try:
                removed = await self.store.invalidate_tags(tags)
            except CacheUnavailableError as e:
                last_error = e
                self.metrics.errors += 1
                if attempt < self.invalidation_attempts - 1:
                    delay = self.invalidation_delay * (2**attempt)
                    logger.warning(
                        f"Invalidation of {sorted(tags)} failed "
                        f"(attempt {attempt + 1}/{self.invalidation_attempts}), "
                        f"retrying in {delay:.2f}s: {e}",
                    )
                    await asyncio.sleep(delay)
                continue
            self.metrics.invalidations += removed
            logger.debug(f"Invalidated {removed} entries for {sorted(tags)}")
            return True
        error = CacheInvalidationError(tags, self.invalidation_attempts)
        logger.error(f"{error}: {last_error}")
        if strict:
            raise error from last_error
        return False

    async def forget(self, key: str) -> bool:
        try:
            return await self.store.delete(key)
        except CacheUnavailableError as e:
            self.metrics.errors += 1
            logger.warning(f"Cache unavailable, {key} not forgotten: {e}")
            return False

    async def clear(self) -> None:
        self._sequence += 1
        self._cleared_at = self._sequence
        await self.store.clear()
