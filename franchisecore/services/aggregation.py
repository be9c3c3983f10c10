from __future__ import annotations

import asyncio
from datetime import datetime
import logging
import time
from typing import Any, Awaitable, Callable, Iterable
from uuid import uuid4

from franchisecore.core.config import get_settings
from franchisecore.core.errors import AggregationRequestError, DatabaseError, UpstreamFetchError
from franchisecore.domain.types import (
    NODE_LOCATION,
    AggregationResults,
    CrossLocationAggregation,
    LocationBreakdown,
    MetricAggregation,
    TimeWindow,
    ensure_utc,
    utc_now,
)
from franchisecore.persistence.store import RecordStore, StoreFactory
from franchisecore.services.aggregation_cache import (
    AggregationCache,
    AggregationCacheKey,
    get_aggregation_cache,
)
from franchisecore.services.authz.levels import PermissionLevel
from franchisecore.services.authz.resolver import PermissionResolver
from franchisecore.services.partitions import PartitionManager
from franchisecore.services.telemetry import increment_counter, record_fetch
from franchisecore.services.tenants import FEATURE_CROSS_LOCATION_AGGREGATION, TenantGate


logger = logging.getLogger(__name__)

JOBS_TABLE = "aggregation_jobs"
METRIC_RECORDS_TABLE = "metric_records"

RATING_EXCELLENT = "excellent"
RATING_GOOD = "good"
RATING_AVERAGE = "average"
RATING_POOR = "poor"

# Identical requests in flight share one computation.
_inflight: dict[AggregationCacheKey, asyncio.Task[AggregationResults]] = {}
# Bumped on every metric write; results computed across a bump are never cached.
_location_generations: dict[tuple[str, str], int] = {}


def reset_inflight_aggregations() -> None:
    # Forget in-flight computations between tests.
    _inflight.clear()
    _location_generations.clear()


def location_generations(tenant_id: str, location_ids: Iterable[str]) -> tuple[int, ...]:
    return tuple(_location_generations.get((tenant_id, location_id), 0) for location_id in location_ids)


def mark_location_written(tenant_id: str, location_id: str) -> int:
    """Advance the write generation and detach in-flight work that read the location."""
    generation_key = (tenant_id, location_id)
    _location_generations[generation_key] = _location_generations.get(generation_key, 0) + 1
    stale = [
        key
        for key in _inflight
        if key.tenant_id == tenant_id and location_id in key.location_ids
    ]
    for key in stale:
        # Running tasks finish for their callers; new requests start a fresh computation.
        del _inflight[key]
    return len(stale)


def aggregate_metric(
    values: dict[str, float],
    location_ids: Iterable[str],
    names: dict[str, str] | None = None,
) -> MetricAggregation:
    """Roll one metric up across the requested locations.

    Every requested location appears in the breakdown, with 0 when it has no
    records. The average is per requested location. Percentages are 0 when
    the total is 0. Breakdown rows are ordered by value, highest first.
    """
    requested = list(dict.fromkeys(location_ids))
    names = names or {}
    total = sum(float(values.get(location_id, 0.0)) for location_id in requested)
    average = total / len(requested) if requested else 0.0
    breakdown = [
        LocationBreakdown(
            location_id=location_id,
            location_name=names.get(location_id) or f"Location {location_id}",
            value=float(values.get(location_id, 0.0)),
            percentage=(float(values.get(location_id, 0.0)) / total * 100) if total else 0.0,
        )
        for location_id in requested
    ]
    breakdown.sort(key=lambda item: (-item.value, item.location_id))
    return MetricAggregation(total=total, average=average, by_location=tuple(breakdown))


def rate_performance(ratio: float) -> str:
    if ratio >= 1.2:
        return RATING_EXCELLENT
    if ratio >= 1.0:
        return RATING_GOOD
    if ratio >= 0.8:
        return RATING_AVERAGE
    return RATING_POOR


def generate_insights(
    aggregations: dict[str, MetricAggregation],
    metrics: Iterable[str],
    *,
    benchmarks: dict[str, float] | None = None,
    deviation_threshold: float = 0.20,
) -> list[str]:
    insights: list[str] = []
    for metric in metrics:
        aggregation = aggregations.get(metric)
        if aggregation is None or not aggregation.by_location:
            continue
        if aggregation.total > 0:
            top = aggregation.by_location[0]
            insights.append(f"{metric}: {top.location_name} leads with {top.percentage:.1f}% of total")
        mean = aggregation.average
        if mean > 0:
            for item in aggregation.by_location:
                deviation = (item.value - mean) / mean
                if abs(deviation) > deviation_threshold:
                    direction = "above" if deviation > 0 else "below"
                    insights.append(
                        f"{metric}: {item.location_name} is {abs(deviation) * 100:.1f}% "
                        f"{direction} the location average"
                    )
        benchmark = (benchmarks or {}).get(metric)
        if benchmark:
            ratio = mean / benchmark
            insights.append(
                f"{metric}: performance rated {rate_performance(ratio)} against benchmark "
                f"({ratio:.2f}x)"
            )
    return insights


def _retrieve_exception(task: asyncio.Task[Any]) -> None:
    # Abandoned computations must not leave unretrieved exceptions behind.
    if not task.cancelled():
        task.exception()


class AggregationEngine:
    """Cross-location rollups for one tenant.

    ``store`` serves the request (gate, permission checks, job records);
    ``store_factory`` opens a separate scope for every concurrent fetch so
    background work never shares the request's session.
    """

    def __init__(
        self,
        store: RecordStore,
        tenant_id: str,
        *,
        store_factory: StoreFactory,
        cache: AggregationCache | None = None,
        clock: Callable[[], datetime] | None = None,
        fetch_timeout_s: float | None = None,
        deviation_threshold: float | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self.tenant_id = tenant_id
        self._store_factory = store_factory
        self._cache = cache if cache is not None else get_aggregation_cache()
        self._clock = clock or utc_now
        self._fetch_timeout_s = (
            fetch_timeout_s
            if fetch_timeout_s is not None
            else settings.aggregation_fetch_timeout_ms / 1000
        )
        self._deviation_threshold = (
            deviation_threshold
            if deviation_threshold is not None
            else settings.aggregation_deviation_threshold
        )
        self._resolver = PermissionResolver(store, tenant_id, clock=self._clock)
        self._gate = TenantGate(store, tenant_id)
        self._partitions = PartitionManager(store, tenant_id, clock=self._clock)

    async def create_aggregation(
        self,
        *,
        name: str,
        description: str | None,
        location_ids: list[str],
        metrics: list[str],
        time_window: TimeWindow,
        requesting_user: str,
        benchmarks: dict[str, float] | None = None,
    ) -> CrossLocationAggregation:
        locations = list(dict.fromkeys(location_ids))
        metric_names = list(dict.fromkeys(metrics))
        _validate_request(name, locations, metric_names, time_window, benchmarks)

        await self._gate.require_feature(FEATURE_CROSS_LOCATION_AGGREGATION)
        await self._gate.require_location_capacity(len(locations))
        # Fail fast before any fetch when a single location is out of reach.
        await self._resolver.require_access(
            requesting_user, NODE_LOCATION, locations, PermissionLevel.READ
        )

        settings = get_settings()
        scanned = await self._partitions.route_many(
            settings.metric_table_name, settings.metric_partition_key, locations
        )
        key = AggregationCacheKey.build(
            tenant_id=self.tenant_id,
            location_ids=locations,
            metrics=metric_names,
            window=time_window.cache_token(),
            benchmarks=benchmarks,
        )
        results = await self._cache.get(key)
        if results is None:
            results = await self._shared_compute(
                key, locations, metric_names, time_window, benchmarks, scanned
            )

        job = CrossLocationAggregation(
            id=uuid4().hex,
            tenant_id=self.tenant_id,
            name=name,
            description=description,
            location_ids=tuple(locations),
            metrics=tuple(metric_names),
            time_window=time_window,
            results=results,
            created_by=requesting_user,
            created_at=self._clock(),
        )
        stored = await self._store.insert(JOBS_TABLE, job.to_record())
        logger.info(
            "aggregation_created tenant_id=%s aggregation_id=%s locations=%s metrics=%s",
            self.tenant_id,
            job.id,
            len(locations),
            len(metric_names),
        )
        return CrossLocationAggregation.from_record(stored)

    async def _shared_compute(
        self,
        key: AggregationCacheKey,
        location_ids: list[str],
        metrics: list[str],
        time_window: TimeWindow,
        benchmarks: dict[str, float] | None,
        scanned: set[str],
    ) -> AggregationResults:
        task = _inflight.get(key)
        if task is None or task.done():
            task = asyncio.create_task(
                self._compute_and_cache(key, location_ids, metrics, time_window, benchmarks, scanned)
            )
            _inflight[key] = task

            def _release(finished: asyncio.Task[AggregationResults], key: AggregationCacheKey = key) -> None:
                if _inflight.get(key) is finished:
                    del _inflight[key]
                _retrieve_exception(finished)

            task.add_done_callback(_release)
        else:
            increment_counter("aggregation_inflight_joined")
        # Callers may walk away; the computation still finishes and fills the cache.
        return await asyncio.shield(task)

    async def _compute_and_cache(
        self,
        key: AggregationCacheKey,
        location_ids: list[str],
        metrics: list[str],
        time_window: TimeWindow,
        benchmarks: dict[str, float] | None,
        scanned: set[str],
    ) -> AggregationResults:
        generations = location_generations(self.tenant_id, key.location_ids)
        aggregations = await self.compute(location_ids, metrics, time_window)
        results = AggregationResults(
            metrics=aggregations,
            insights=tuple(
                generate_insights(
                    aggregations,
                    metrics,
                    benchmarks=benchmarks,
                    deviation_threshold=self._deviation_threshold,
                )
            ),
            scanned_partitions=tuple(sorted(scanned)),
        )
        if location_generations(self.tenant_id, key.location_ids) != generations:
            increment_counter("aggregation_cache_skipped_stale")
            logger.info(
                "aggregation_cache_skipped tenant_id=%s locations=%s reason=concurrent_write",
                self.tenant_id,
                len(key.location_ids),
            )
            return results
        await self._cache.set(key, results)
        return results

    async def compute(
        self, location_ids: list[str], metrics: list[str], time_window: TimeWindow
    ) -> dict[str, MetricAggregation]:
        """Fetch every metric concurrently and roll each one up.

        All fetches run to completion before results are merged; any failed or
        timed-out fetch fails the whole computation.
        """
        names_task = self._location_names(location_ids)
        fetches = [self._fetch_metric(metric, location_ids, time_window) for metric in metrics]
        outcomes = await asyncio.gather(names_task, *fetches, return_exceptions=True)
        failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        if failures:
            for failure in failures:
                if not isinstance(failure, UpstreamFetchError):
                    raise failure
            raise failures[0]
        names, *values = outcomes
        return {
            metric: aggregate_metric(metric_values, location_ids, names)
            for metric, metric_values in zip(metrics, values)
        }

    async def _with_deadline(
        self, source: str, fetch: Callable[[RecordStore], Awaitable[list[dict[str, Any]]]]
    ) -> list[dict[str, Any]]:
        async def _run() -> list[dict[str, Any]]:
            async with self._store_factory() as store:
                return await fetch(store)

        started = time.monotonic()
        try:
            rows = await asyncio.wait_for(_run(), timeout=self._fetch_timeout_s)
        except asyncio.TimeoutError as exc:
            record_fetch(source=source, latency_ms=(time.monotonic() - started) * 1000, success=False)
            logger.warning(
                "aggregation_fetch_timeout tenant_id=%s source=%s timeout_s=%s",
                self.tenant_id,
                source,
                self._fetch_timeout_s,
            )
            raise UpstreamFetchError(source, f"Fetch timed out: {source}") from exc
        except DatabaseError as exc:
            record_fetch(source=source, latency_ms=(time.monotonic() - started) * 1000, success=False)
            logger.warning("aggregation_fetch_failed tenant_id=%s source=%s", self.tenant_id, source)
            raise UpstreamFetchError(source) from exc
        record_fetch(source=source, latency_ms=(time.monotonic() - started) * 1000, success=True)
        return rows

    async def _fetch_metric(
        self, metric: str, location_ids: list[str], time_window: TimeWindow
    ) -> dict[str, float]:
        params = {
            "tenant_id": self.tenant_id,
            "metric": metric,
            "location_ids": list(location_ids),
            "start": time_window.start,
            "end": time_window.end,
        }
        rows = await self._with_deadline(
            f"metric:{metric}", lambda store: store.run_named_query("metric_records", params)
        )
        return {row["location_id"]: float(row["value"]) for row in rows}

    async def _location_names(self, location_ids: list[str]) -> dict[str, str]:
        rows = await self._with_deadline(
            "hierarchy_nodes",
            lambda store: store.read(
                "hierarchy_nodes",
                {"tenant_id": self.tenant_id, "id": list(location_ids)},
                projection=["id", "name"],
            ),
        )
        return {row["id"]: row["name"] for row in rows}

    async def record_metric(
        self,
        *,
        location_id: str,
        metric: str,
        value: float,
        recorded_by: str,
        recorded_at: datetime | None = None,
    ) -> dict[str, Any]:
        if not metric:
            raise AggregationRequestError("metric is required")
        await self._resolver.require_access(
            recorded_by, NODE_LOCATION, [location_id], PermissionLevel.WRITE
        )
        stored = await self._store.insert(
            METRIC_RECORDS_TABLE,
            {
                "id": uuid4().hex,
                "tenant_id": self.tenant_id,
                "location_id": location_id,
                "metric": metric,
                "value": float(value),
                "recorded_at": ensure_utc(recorded_at) if recorded_at else self._clock(),
            },
        )
        detached = mark_location_written(self.tenant_id, location_id)
        dropped = await self._cache.invalidate_location(self.tenant_id, location_id)
        logger.info(
            "metric_recorded tenant_id=%s location_id=%s metric=%s invalidated=%s detached=%s",
            self.tenant_id,
            location_id,
            metric,
            dropped,
            detached,
        )
        return stored

    async def list_aggregations(self, created_by: str | None = None) -> list[CrossLocationAggregation]:
        filters: dict[str, Any] = {"tenant_id": self.tenant_id}
        if created_by is not None:
            filters["created_by"] = created_by
        rows = await self._store.read(JOBS_TABLE, filters)
        jobs = [CrossLocationAggregation.from_record(row) for row in rows]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs


def _validate_request(
    name: str,
    location_ids: list[str],
    metrics: list[str],
    time_window: TimeWindow,
    benchmarks: dict[str, float] | None,
) -> None:
    if not name or not name.strip():
        raise AggregationRequestError("name is required")
    if not location_ids:
        raise AggregationRequestError("location_ids must not be empty")
    if not metrics:
        raise AggregationRequestError("metrics must not be empty")
    if time_window.start > time_window.end:
        raise AggregationRequestError("time window start must not be after end")
    for metric, benchmark in (benchmarks or {}).items():
        if metric not in metrics:
            raise AggregationRequestError(f"benchmark given for unrequested metric: {metric}")
        if benchmark <= 0:
            raise AggregationRequestError(f"benchmark for {metric} must be positive")
