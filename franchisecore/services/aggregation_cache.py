from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
import hashlib
import json
import logging
import time
from typing import Callable, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from franchisecore.core.config import get_settings
from franchisecore.domain.types import AggregationResults
from franchisecore.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregationCacheKey:
    tenant_id: str
    location_ids: tuple[str, ...]
    metrics: tuple[str, ...]
    window: str
    benchmarks: tuple[tuple[str, float], ...] = ()

    @classmethod
    def build(
        cls,
        *,
        tenant_id: str,
        location_ids: list[str] | tuple[str, ...],
        metrics: list[str] | tuple[str, ...],
        window: str,
        benchmarks: dict[str, float] | None = None,
    ) -> "AggregationCacheKey":
        # Order-insensitive so equivalent requests share one entry.
        return cls(
            tenant_id=tenant_id,
            location_ids=tuple(sorted(set(location_ids))),
            metrics=tuple(sorted(set(metrics))),
            window=window,
            benchmarks=tuple(sorted((benchmarks or {}).items())),
        )

    def digest(self) -> str:
        payload = json.dumps(
            [self.tenant_id, self.location_ids, self.metrics, self.window, self.benchmarks],
            separators=(",", ":"),
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class AggregationCache(Protocol):
    async def get(self, key: AggregationCacheKey) -> AggregationResults | None: ...

    async def set(self, key: AggregationCacheKey, results: AggregationResults) -> None: ...

    async def invalidate_location(self, tenant_id: str, location_id: str) -> int: ...

    async def clear(self) -> None: ...


class LocalAggregationCache:
    """Bounded in-process TTL cache with least-recently-used eviction."""

    def __init__(
        self,
        *,
        ttl_s: int,
        max_entries: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_s = ttl_s
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[AggregationCacheKey, tuple[float, AggregationResults]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: AggregationCacheKey) -> AggregationResults | None:
        entry = self._entries.get(key)
        if entry is None:
            increment_counter("aggregation_cache_miss")
            return None
        expires_at, results = entry
        if expires_at <= self._clock():
            del self._entries[key]
            increment_counter("aggregation_cache_miss")
            return None
        self._entries.move_to_end(key)
        increment_counter("aggregation_cache_hit")
        return results

    async def set(self, key: AggregationCacheKey, results: AggregationResults) -> None:
        self._entries[key] = (self._clock() + self._ttl_s, results)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    async def invalidate_location(self, tenant_id: str, location_id: str) -> int:
        # Drop every entry touching the location; no partial patching.
        stale = [
            key
            for key in self._entries
            if key.tenant_id == tenant_id and location_id in key.location_ids
        ]
        for key in stale:
            del self._entries[key]
        return len(stale)

    async def clear(self) -> None:
        self._entries.clear()


class RedisAggregationCache:
    """Shared cache so every API instance reuses and invalidates the same entries."""

    def __init__(self, redis: Redis, *, ttl_s: int, prefix: str) -> None:
        self._redis = redis
        self._ttl_s = ttl_s
        self._prefix = prefix

    def _entry_key(self, key: AggregationCacheKey) -> str:
        return f"{self._prefix}:{key.tenant_id}:entry:{key.digest()}"

    def _location_key(self, tenant_id: str, location_id: str) -> str:
        return f"{self._prefix}:{tenant_id}:loc:{location_id}"

    async def get(self, key: AggregationCacheKey) -> AggregationResults | None:
        try:
            raw = await self._redis.get(self._entry_key(key))
        except (RedisError, OSError) as exc:
            logger.warning("aggregation_cache_unavailable op=get", exc_info=exc)
            return None
        if raw is None:
            increment_counter("aggregation_cache_miss")
            return None
        increment_counter("aggregation_cache_hit")
        return AggregationResults.from_dict(json.loads(raw))

    async def set(self, key: AggregationCacheKey, results: AggregationResults) -> None:
        entry_key = self._entry_key(key)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(entry_key, json.dumps(results.to_dict()), ex=self._ttl_s)
                for location_id in key.location_ids:
                    index_key = self._location_key(key.tenant_id, location_id)
                    pipe.sadd(index_key, entry_key)
                    pipe.expire(index_key, self._ttl_s)
                await pipe.execute()
        except (RedisError, OSError) as exc:
            logger.warning("aggregation_cache_unavailable op=set", exc_info=exc)

    async def invalidate_location(self, tenant_id: str, location_id: str) -> int:
        index_key = self._location_key(tenant_id, location_id)
        try:
            entry_keys = list(await self._redis.smembers(index_key))
            if entry_keys:
                await self._redis.delete(*entry_keys)
            await self._redis.delete(index_key)
        except (RedisError, OSError) as exc:
            # Entries still age out by TTL when invalidation cannot reach Redis.
            logger.warning("aggregation_cache_unavailable op=invalidate", exc_info=exc)
            return 0
        return len(entry_keys)

    async def clear(self) -> None:
        try:
            keys = [key async for key in self._redis.scan_iter(match=f"{self._prefix}:*")]
            if keys:
                await self._redis.delete(*keys)
        except (RedisError, OSError) as exc:
            logger.warning("aggregation_cache_unavailable op=clear", exc_info=exc)


_aggregation_cache: AggregationCache | None = None


def get_aggregation_cache() -> AggregationCache:
    # Build the configured backend once per process.
    global _aggregation_cache
    if _aggregation_cache is None:
        settings = get_settings()
        if settings.aggregation_cache_backend == "redis":
            _aggregation_cache = RedisAggregationCache(
                Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True),
                ttl_s=settings.aggregation_cache_ttl_s,
                prefix=settings.aggregation_cache_redis_prefix,
            )
        else:
            _aggregation_cache = LocalAggregationCache(
                ttl_s=settings.aggregation_cache_ttl_s,
                max_entries=settings.aggregation_cache_max_entries,
            )
    return _aggregation_cache


def reset_aggregation_cache() -> None:
    # Reset cached backends for deterministic tests.
    global _aggregation_cache
    _aggregation_cache = None
