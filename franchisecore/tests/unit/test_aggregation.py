from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from franchisecore.core.errors import (
    AccessDeniedError,
    AggregationRequestError,
    ConfigLimitExceeded,
    FeatureNotEnabledError,
    UpstreamFetchError,
)
from franchisecore.domain.types import TimeWindow
from franchisecore.persistence.memory import InMemoryStore
from franchisecore.services.aggregation import (
    AggregationEngine,
    aggregate_metric,
    generate_insights,
    rate_performance,
)
from franchisecore.services.aggregation_cache import LocalAggregationCache
from franchisecore.services.authz import PermissionResolver
from franchisecore.services.partitions import PartitionManager
from franchisecore.services.telemetry import counters_snapshot, fetch_latency_by_source
from franchisecore.services.tenants import configure_tenant
from franchisecore.tests.utils.franchise import (
    NOW,
    OWNER_ID,
    TENANT_ID,
    FlakyStore,
    LaggingStore,
    SlowStore,
    add_metric,
    fixed_clock,
    seed_hierarchy,
)


WINDOW = TimeWindow(NOW - timedelta(days=7), NOW)


def _engine(store: InMemoryStore, cache: LocalAggregationCache | None = None, **kwargs) -> AggregationEngine:
    if cache is None:
        cache = LocalAggregationCache(ttl_s=900, max_entries=16)
    return AggregationEngine(
        store, TENANT_ID, store_factory=store.scope, cache=cache, clock=fixed_clock(), **kwargs
    )


async def _seed_revenue(store: InMemoryStore) -> None:
    await seed_hierarchy(store)
    await add_metric(store, location_id="L1", value=300.0)
    await add_metric(store, location_id="L2", value=700.0)


async def _aggregate(engine: AggregationEngine, location_ids=("L1", "L2"), **overrides):
    params = {
        "name": "Weekly revenue",
        "description": None,
        "location_ids": list(location_ids),
        "metrics": ["revenue"],
        "time_window": WINDOW,
        "requesting_user": OWNER_ID,
    }
    params.update(overrides)
    return await engine.create_aggregation(**params)


@pytest.mark.asyncio
async def test_two_location_revenue_rollup(store: InMemoryStore) -> None:
    await _seed_revenue(store)

    job = await _aggregate(_engine(store))

    revenue = job.results.metrics["revenue"]
    assert revenue.total == pytest.approx(1000.0)
    assert revenue.average == pytest.approx(500.0)
    assert [item.location_id for item in revenue.by_location] == ["L2", "L1"]
    assert [item.percentage for item in revenue.by_location] == [
        pytest.approx(70.0),
        pytest.approx(30.0),
    ]
    assert [item.location_name for item in revenue.by_location] == ["Airport", "Downtown"]
    assert job.insights == (
        "revenue: Airport leads with 70.0% of total",
        "revenue: Airport is 40.0% above the location average",
        "revenue: Downtown is 40.0% below the location average",
    )
    payload = job.to_dict()
    assert payload["aggregated_data"]["revenue"]["total"] == pytest.approx(1000.0)
    assert payload["time_period"]["end"] == NOW.isoformat()


@pytest.mark.asyncio
async def test_locations_without_records_count_as_zero(store: InMemoryStore) -> None:
    await _seed_revenue(store)
    # Outside the window and for another metric; neither counts.
    await add_metric(store, location_id="L3", value=50.0, recorded_at=NOW - timedelta(days=30))
    await add_metric(store, location_id="L3", value=50.0, metric="covers")

    job = await _aggregate(_engine(store), ["L1", "L2", "L3"])

    revenue = job.results.metrics["revenue"]
    assert [item.location_id for item in revenue.by_location] == ["L2", "L1", "L3"]
    assert revenue.by_location[-1].value == 0.0
    assert revenue.by_location[-1].percentage == 0.0
    assert revenue.average == pytest.approx(1000.0 / 3)
    assert sum(item.percentage for item in revenue.by_location) == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_benchmarks_rate_the_average(store: InMemoryStore) -> None:
    await _seed_revenue(store)

    job = await _aggregate(_engine(store), benchmarks={"revenue": 400.0})

    assert job.insights[-1] == "revenue: performance rated excellent against benchmark (1.25x)"


@pytest.mark.asyncio
async def test_jobs_are_persisted_and_listed_per_creator(store: InMemoryStore) -> None:
    await _seed_revenue(store)
    engine = _engine(store)

    job = await _aggregate(engine, description="Monday review")

    mine = await engine.list_aggregations(OWNER_ID)
    assert [item.id for item in mine] == [job.id]
    assert mine[0].description == "Monday review"
    assert mine[0].results == job.results
    assert await engine.list_aggregations("someone-else") == []


@pytest.mark.asyncio
async def test_equivalent_requests_reuse_cached_results(store: InMemoryStore) -> None:
    await _seed_revenue(store)
    engine = _engine(store)

    first = await _aggregate(engine, ["L1", "L2"])
    second = await _aggregate(engine, ["L2", "L1", "L2"])

    assert store.named_query_calls["metric_records"] == 1
    assert first.id != second.id
    assert second.results.metrics == first.results.metrics
    assert second.location_ids == ("L2", "L1")
    assert counters_snapshot()["aggregation_cache_hit"] == 1


@pytest.mark.asyncio
async def test_recording_a_metric_invalidates_cached_results(store: InMemoryStore) -> None:
    await _seed_revenue(store)
    engine = _engine(store)
    await _aggregate(engine)

    stored = await engine.record_metric(
        location_id="L1", metric="revenue", value=100.0, recorded_by=OWNER_ID
    )
    job = await _aggregate(engine)

    assert stored["recorded_at"] == NOW
    assert store.named_query_calls["metric_records"] == 2
    assert job.results.metrics["revenue"].total == pytest.approx(1100.0)


@pytest.mark.asyncio
async def test_recording_metrics_requires_write(store: InMemoryStore) -> None:
    await _seed_revenue(store)
    await PermissionResolver(store, TENANT_ID, clock=fixed_clock()).grant_permission(
        subject_id="viewer",
        resource_type="location",
        resource_id="L1",
        level="read",
        conditions=None,
        granted_by=OWNER_ID,
    )

    with pytest.raises(AccessDeniedError):
        await _engine(store).record_metric(
            location_id="L1", metric="revenue", value=1.0, recorded_by="viewer"
        )


@pytest.mark.asyncio
async def test_identical_concurrent_requests_share_one_computation() -> None:
    store = SlowStore(delay_s=0.05)
    await _seed_revenue(store)
    cache = LocalAggregationCache(ttl_s=900, max_entries=16)

    first, second = await asyncio.gather(
        _aggregate(_engine(store, cache)),
        _aggregate(_engine(store, cache)),
    )

    assert store.named_query_calls["metric_records"] == 1
    assert counters_snapshot()["aggregation_inflight_joined"] == 1
    assert first.results == second.results
    assert first.id != second.id


@pytest.mark.asyncio
async def test_writes_during_a_fetch_are_not_hidden_by_the_cache() -> None:
    store = LaggingStore(delay_s=0.2)
    await _seed_revenue(store)
    cache = LocalAggregationCache(ttl_s=900, max_entries=16)
    engine = _engine(store, cache, fetch_timeout_s=5)

    before_write = asyncio.create_task(_aggregate(engine))
    await asyncio.sleep(0.05)
    await engine.record_metric(location_id="L1", metric="revenue", value=1000.0, recorded_by=OWNER_ID)
    # A request arriving after the write must not join the computation that read before it.
    after_write = asyncio.create_task(_aggregate(engine))

    stale, fresh = await asyncio.gather(before_write, after_write)
    repeated = await _aggregate(engine)

    assert stale.results.metrics["revenue"].total == pytest.approx(1000.0)
    assert fresh.results.metrics["revenue"].total == pytest.approx(2000.0)
    assert repeated.results.metrics["revenue"].total == pytest.approx(2000.0)
    assert store.named_query_calls["metric_records"] == 2
    counters = counters_snapshot()
    assert counters["aggregation_cache_skipped_stale"] == 1
    assert counters.get("aggregation_inflight_joined", 0) == 0


@pytest.mark.asyncio
async def test_abandoned_requests_still_fill_the_cache() -> None:
    store = SlowStore(delay_s=0.1)
    await _seed_revenue(store)
    cache = LocalAggregationCache(ttl_s=900, max_entries=16)
    engine = _engine(store, cache)

    caller = asyncio.create_task(_aggregate(engine))
    await asyncio.sleep(0.02)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller
    assert len(cache) == 0

    await asyncio.sleep(0.3)

    assert len(cache) == 1
    assert await store.read("aggregation_jobs") == []
    job = await _aggregate(engine)
    assert job.results.metrics["revenue"].total == pytest.approx(1000.0)
    assert store.named_query_calls["metric_records"] == 1
    assert counters_snapshot()["aggregation_cache_hit"] == 1


@pytest.mark.asyncio
async def test_unreachable_locations_fail_before_any_fetch(store: InMemoryStore) -> None:
    await _seed_revenue(store)
    await PermissionResolver(store, TENANT_ID, clock=fixed_clock()).grant_permission(
        subject_id="viewer",
        resource_type="location",
        resource_id="L1",
        level="read",
        conditions=None,
        granted_by=OWNER_ID,
    )

    with pytest.raises(AccessDeniedError) as exc_info:
        await _aggregate(_engine(store), ["L1", "L2", "L3"], requesting_user="viewer")

    assert exc_info.value.resource_ids == ["L2", "L3"]
    assert store.named_query_calls["metric_records"] == 0
    assert await store.read("aggregation_jobs") == []


@pytest.mark.asyncio
async def test_slow_fetches_time_out_without_persisting() -> None:
    store = SlowStore(delay_s=0.5)
    await _seed_revenue(store)

    with pytest.raises(UpstreamFetchError) as exc_info:
        await _aggregate(_engine(store, fetch_timeout_s=0.01))

    assert exc_info.value.operation == "metric:revenue"
    assert await store.read("aggregation_jobs") == []
    assert fetch_latency_by_source(60)["metric:revenue"]["failures"] == 1


@pytest.mark.asyncio
async def test_failed_fetches_surface_as_upstream_errors() -> None:
    store = FlakyStore({"metric_records"})
    await _seed_revenue(store)
    cache = LocalAggregationCache(ttl_s=900, max_entries=16)

    with pytest.raises(UpstreamFetchError):
        await _aggregate(_engine(store, cache), metrics=["revenue", "covers"])

    assert len(cache) == 0
    assert await store.read("aggregation_jobs") == []


@pytest.mark.asyncio
async def test_tenant_gate_runs_before_aggregation(store: InMemoryStore) -> None:
    await _seed_revenue(store)
    await configure_tenant(store, TENANT_ID, {"configuration": {"features_enabled": []}})

    with pytest.raises(FeatureNotEnabledError):
        await _aggregate(_engine(store))

    await configure_tenant(
        store,
        TENANT_ID,
        {"configuration": {"features_enabled": ["cross_location_aggregation"], "max_locations": 1}},
    )
    with pytest.raises(ConfigLimitExceeded):
        await _aggregate(_engine(store))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"name": "  "},
        {"location_ids": []},
        {"metrics": []},
        {"time_window": TimeWindow(NOW, NOW - timedelta(days=1))},
        {"benchmarks": {"covers": 10.0}},
        {"benchmarks": {"revenue": 0.0}},
    ],
)
async def test_malformed_requests_are_rejected(store: InMemoryStore, overrides) -> None:
    await _seed_revenue(store)

    with pytest.raises(AggregationRequestError):
        await _aggregate(_engine(store), **overrides)


@pytest.mark.asyncio
async def test_partitioned_metric_tables_report_scanned_partitions(store: InMemoryStore) -> None:
    await _seed_revenue(store)
    west = await PartitionManager(store, TENANT_ID).create_partition(
        table_name="metric_records",
        partition_type="location",
        partition_key="location_id",
        values=["L1", "L2"],
        strategy="list",
    )

    job = await _aggregate(_engine(store), ["L1", "L2"])

    assert job.results.scanned_partitions == (west.id,)


def test_aggregate_metric_defaults_names_and_handles_zero_totals() -> None:
    aggregation = aggregate_metric({}, ["L2", "L1"])

    assert aggregation.total == 0.0
    assert aggregation.average == 0.0
    assert [item.location_id for item in aggregation.by_location] == ["L1", "L2"]
    assert aggregation.by_location[0].location_name == "Location L1"
    assert all(item.percentage == 0.0 for item in aggregation.by_location)
    assert generate_insights({"revenue": aggregation}, ["revenue"]) == []
    assert aggregate_metric({}, []).average == 0.0


def test_generate_insights_respects_threshold() -> None:
    aggregation = aggregate_metric({"L1": 110.0, "L2": 90.0}, ["L1", "L2"], {"L1": "A", "L2": "B"})

    assert generate_insights({"revenue": aggregation}, ["revenue"]) == [
        "revenue: A leads with 55.0% of total"
    ]
    tight = generate_insights({"revenue": aggregation}, ["revenue"], deviation_threshold=0.05)
    assert "revenue: B is 10.0% below the location average" in tight


@pytest.mark.parametrize(
    ("ratio", "rating"),
    [(1.5, "excellent"), (1.2, "excellent"), (1.0, "good"), (0.8, "average"), (0.79, "poor")],
)
def test_rate_performance_bands(ratio: float, rating: str) -> None:
    assert rate_performance(ratio) == rating
