from __future__ import annotations

import pytest

from franchisecore.core.config import get_settings
from franchisecore.domain.types import AggregationResults
from franchisecore.services.aggregation_cache import (
    AggregationCacheKey,
    LocalAggregationCache,
    get_aggregation_cache,
)
from franchisecore.tests.utils.franchise import TENANT_ID


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


def _key(*location_ids: str, tenant_id: str = TENANT_ID, metrics=("revenue",)) -> AggregationCacheKey:
    return AggregationCacheKey.build(
        tenant_id=tenant_id, location_ids=list(location_ids), metrics=list(metrics), window="w"
    )


def _results(label: str) -> AggregationResults:
    return AggregationResults(metrics={}, insights=(label,))


def test_cache_keys_ignore_request_order() -> None:
    assert _key("L1", "L2") == _key("L2", "L1", "L1")
    assert _key("L1", metrics=("revenue", "covers")) == _key("L1", metrics=("covers", "revenue"))
    assert _key("L1") != _key("L1", tenant_id="t-other")
    assert _key("L1", "L2").digest() == _key("L2", "L1").digest()


@pytest.mark.asyncio
async def test_entries_expire_after_ttl() -> None:
    clock = FakeMonotonic()
    cache = LocalAggregationCache(ttl_s=900, max_entries=8, clock=clock)
    await cache.set(_key("L1"), _results("fresh"))

    clock.value += 899
    assert await cache.get(_key("L1")) == _results("fresh")
    clock.value += 1
    assert await cache.get(_key("L1")) is None
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_least_recently_used_entries_are_evicted() -> None:
    cache = LocalAggregationCache(ttl_s=900, max_entries=2, clock=FakeMonotonic())
    await cache.set(_key("L1"), _results("one"))
    await cache.set(_key("L2"), _results("two"))
    await cache.get(_key("L1"))
    await cache.set(_key("L3"), _results("three"))

    assert await cache.get(_key("L2")) is None
    assert await cache.get(_key("L1")) == _results("one")
    assert await cache.get(_key("L3")) == _results("three")


@pytest.mark.asyncio
async def test_invalidation_drops_every_entry_touching_the_location() -> None:
    cache = LocalAggregationCache(ttl_s=900, max_entries=8, clock=FakeMonotonic())
    await cache.set(_key("L1", "L2"), _results("pair"))
    await cache.set(_key("L2"), _results("single"))
    await cache.set(_key("L3"), _results("other"))
    await cache.set(_key("L2", tenant_id="t-other"), _results("foreign"))

    dropped = await cache.invalidate_location(TENANT_ID, "L2")

    assert dropped == 2
    assert await cache.get(_key("L3")) == _results("other")
    assert await cache.get(_key("L2", tenant_id="t-other")) == _results("foreign")
    await cache.clear()
    assert len(cache) == 0


def test_configured_backend_is_built_once(monkeypatch) -> None:
    monkeypatch.setenv("AGGREGATION_CACHE_BACKEND", "local")
    monkeypatch.setenv("AGGREGATION_CACHE_MAX_ENTRIES", "3")
    get_settings.cache_clear()

    cache = get_aggregation_cache()

    assert isinstance(cache, LocalAggregationCache)
    assert get_aggregation_cache() is cache
