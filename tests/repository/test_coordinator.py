"""Tests for the cache coordinator."""

import typing as t
from unittest.mock import AsyncMock

import asyncio
import pytest

from arepo.adapters.cache import (
    CacheEntry,
    CacheInvalidationError,
    CacheSettings,
    CacheUnavailableError,
    MemoryCache,
    MsgPackSerializer,
    PayloadCodec,
)
from arepo.repository import CacheCoordinator, CacheMetrics, RepositorySettings


async def wait_for(condition: t.Callable[[], bool]) -> None:
    for _ in range(1000):
        if condition():
            return
        await asyncio.sleep(0)
    msg = "condition never became true"
    raise AssertionError(msg)


def broken_store() -> AsyncMock:
    store = AsyncMock()
    store.get.side_effect = CacheUnavailableError("get", "connection refused")
    store.put.side_effect = CacheUnavailableError("put", "connection refused")
    store.invalidate_tags.side_effect = CacheUnavailableError("invalidate", "connection refused")
    return store


class TestGetOrCompute:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_miss_then_hit(self, coordinator: CacheCoordinator) -> None:
        compute = AsyncMock(return_value=[{"id": 1}])

        first = await coordinator.get_or_compute("k", {"user"}, compute)
        second = await coordinator.get_or_compute("k", {"user"}, compute)

        assert first == second == [{"id": 1}]
        compute.assert_awaited_once()
        assert coordinator.metrics.hits == 1
        assert coordinator.metrics.misses == 1
        assert coordinator.metrics.writes == 1
        assert coordinator.metrics.hit_rate == 0.5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_misses_execute_once(self, coordinator: CacheCoordinator) -> None:
        calls = 0

        async def compute() -> dict[str, int]:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return {"total": 42}

        results = await asyncio.gather(
            *(coordinator.get_or_compute("k", {"user"}, compute) for _ in range(50)),
        )

        assert calls == 1
        assert coordinator.metrics.executions == 1
        assert len(results) == 50
        assert all(result == {"total": 42} for result in results)
        assert coordinator.inflight == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter_and_is_not_cached(
        self,
        coordinator: CacheCoordinator,
    ) -> None:
        async def failing() -> None:
            await asyncio.sleep(0.01)
            msg = "database down"
            raise ValueError(msg)

        results = await asyncio.gather(
            *(coordinator.get_or_compute("k", {"user"}, failing) for _ in range(5)),
            return_exceptions=True,
        )
        assert all(isinstance(result, ValueError) for result in results)
        assert coordinator.metrics.executions == 1

        recovered = await coordinator.get_or_compute("k", {"user"}, AsyncMock(return_value=1))
        assert recovered == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancelled_leader_hands_over_to_waiter(
        self,
        coordinator: CacheCoordinator,
    ) -> None:
        calls = 0

        async def compute() -> str:
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.Event().wait()
            return "value"

        leader = asyncio.create_task(coordinator.get_or_compute("k", {"t"}, compute))
        await wait_for(lambda: calls == 1)
        waiter = asyncio.create_task(coordinator.get_or_compute("k", {"t"}, compute))
        await wait_for(lambda: coordinator.metrics.coalesced == 1)

        leader.cancel()

        assert await waiter == "value"
        with pytest.raises(asyncio.CancelledError):
            await leader
        assert calls == 2
        assert coordinator.inflight == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalidation_during_compute_skips_population(
        self,
        coordinator: CacheCoordinator,
        memory_cache: MemoryCache,
    ) -> None:
        gate = asyncio.Event()

        async def compute() -> str:
            await gate.wait()
            return "stale"

        task = asyncio.create_task(coordinator.get_or_compute("k", {"user"}, compute))
        await wait_for(lambda: coordinator.inflight == 1)
        await coordinator.invalidate({"user"})
        gate.set()

        assert await task == "stale"
        assert await memory_cache.get("k") is None
        assert coordinator.metrics.writes == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_result_tags_are_added(
        self,
        coordinator: CacheCoordinator,
        memory_cache: MemoryCache,
    ) -> None:
        await coordinator.get_or_compute(
            "k",
            {"user"},
            AsyncMock(return_value=[{"id": 7}]),
            result_tags=lambda rows: {f"user:id:{row['id']}" for row in rows},
        )
        entry = await memory_cache.get("k")
        assert entry is not None
        assert entry.tags == {"user", "user:id:7"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unserializable_value_is_returned_uncached(
        self,
        coordinator: CacheCoordinator,
        memory_cache: MemoryCache,
    ) -> None:
        value = await coordinator.get_or_compute(
            "k",
            {"user"},
            AsyncMock(return_value=lambda: None),
        )
        assert callable(value)
        assert await memory_cache.get("k") is None
        assert coordinator.metrics.errors == 1


class TestFailOpen:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unavailable_cache_falls_through_to_compute(self) -> None:
        coordinator = CacheCoordinator(broken_store())
        compute = AsyncMock(return_value="fresh")

        assert await coordinator.get_or_compute("k", {"user"}, compute) == "fresh"
        assert await coordinator.get_or_compute("k", {"user"}, compute) == "fresh"
        assert compute.await_count == 2
        assert coordinator.metrics.errors > 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_undecodable_entry_is_dropped(self) -> None:
        store = AsyncMock()
        store.get.return_value = CacheEntry.create("k", {"t"}, b"\x09junk", 60)
        coordinator = CacheCoordinator(store)

        assert await coordinator.get_or_compute("k", {"t"}, AsyncMock(return_value=3)) == 3
        store.delete.assert_awaited_with("k")
        store.put.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_hit_refreshes_ttl(self) -> None:
        codec = PayloadCodec()
        store = AsyncMock()
        store.get.return_value = CacheEntry.create("k", {"t"}, codec.encode("v"), 10)
        coordinator = CacheCoordinator(store, codec, default_ttl=60, refresh_ttl_on_hit=True)

        assert await coordinator.get_or_compute("k", {"t"}, AsyncMock()) == "v"
        store.touch.assert_awaited_once_with("k", 60)


class TestInvalidate:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalidating_one_tag_keeps_entries_without_it(
        self,
        coordinator: CacheCoordinator,
        memory_cache: MemoryCache,
    ) -> None:
        await coordinator.get_or_compute("first", {"A", "B"}, AsyncMock(return_value=1))
        await coordinator.get_or_compute("second", {"A", "C"}, AsyncMock(return_value=2))

        assert await coordinator.invalidate({"B"}) is True

        assert await memory_cache.get("first") is None
        assert await memory_cache.get("second") is not None
        assert coordinator.metrics.invalidations == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_with_backoff(self) -> None:
        store = AsyncMock()
        store.invalidate_tags.side_effect = [
            CacheUnavailableError("invalidate"),
            CacheUnavailableError("invalidate"),
            4,
        ]
        coordinator = CacheCoordinator(store, invalidation_delay=0.0)

        assert await coordinator.invalidate({"user"}) is True
        assert store.invalidate_tags.await_count == 3
        assert coordinator.metrics.errors == 2
        assert coordinator.metrics.invalidations == 4

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exhausted_retries(self) -> None:
        coordinator = CacheCoordinator(
            broken_store(),
            invalidation_attempts=2,
            invalidation_delay=0.0,
        )

        assert await coordinator.invalidate({"user"}) is False
        with pytest.raises(CacheInvalidationError) as exc_info:
            await coordinator.invalidate({"user"}, strict=True)
        assert exc_info.value.attempts == 2
        assert exc_info.value.tags == {"user"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_tag_set_is_a_no_op(self) -> None:
        store = AsyncMock()
        assert await CacheCoordinator(store).invalidate(set()) is True
        store.invalidate_tags.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_forget_and_clear(
        self,
        coordinator: CacheCoordinator,
        memory_cache: MemoryCache,
    ) -> None:
        await coordinator.get_or_compute("a", {"t"}, AsyncMock(return_value=1))
        await coordinator.get_or_compute("b", {"t"}, AsyncMock(return_value=2))

        assert await coordinator.forget("a") is True
        assert await memory_cache.get("a") is None

        await coordinator.clear()
        assert await memory_cache.get("b") is None


class TestConfiguration:
    @pytest.mark.unit
    def test_from_settings(self, memory_cache: MemoryCache) -> None:
        coordinator = CacheCoordinator.from_settings(
            memory_cache,
            RepositorySettings(cache_ttl=60, invalidation_attempts=5),
            CacheSettings(serializer="msgpack", refresh_ttl_on_hit=True),
        )

        assert coordinator.default_ttl == 60
        assert coordinator.invalidation_attempts == 5
        assert coordinator.refresh_ttl_on_hit is True
        assert isinstance(coordinator.codec.serializer, MsgPackSerializer)

    @pytest.mark.unit
    def test_metrics_to_dict(self) -> None:
        metrics = CacheMetrics(hits=3, misses=1)
        assert metrics.to_dict()["hit_rate"] == 0.75
        assert CacheMetrics().hit_rate == 0.0
