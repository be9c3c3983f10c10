from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import re
from typing import Any, Callable, Iterable
from uuid import uuid4

from franchisecore.core.errors import (
    DatabaseError,
    OverlappingPartitionError,
    PartitionStrategyConflictError,
    PartitionValueError,
)
from franchisecore.domain.partitioning import (
    PARTITION_TYPES,
    STRATEGY_HASH,
    STRATEGY_RANGE,
    normalize_values,
    overlapping_values,
    parse_range,
    value_matches,
)
from franchisecore.domain.types import Partition, RetentionPolicy, ensure_utc, utc_now
from franchisecore.persistence.store import RecordStore


logger = logging.getLogger(__name__)

PARTITIONS_TABLE = "data_partitions"

STATUS_ACTIVE = "active"
STATUS_ARCHIVED = "archived"
STATUS_DROPPED = "dropped"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


@dataclass(frozen=True)
class SweepAction:
    partition_id: str
    partition_name: str
    table_name: str
    action: str
    horizon: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "partition_id": self.partition_id,
            "partition_name": self.partition_name,
            "table_name": self.table_name,
            "action": self.action,
            "horizon": self.horizon.isoformat(),
        }


def table_lock_key(table_name: str) -> str:
    # Physical tables are shared across tenants, so the lock is per table.
    return f"partitions:{table_name}"


def _require_identifier(value: str, label: str) -> str:
    if not _IDENTIFIER.match(value or ""):
        raise PartitionValueError(f"{label} must be a plain SQL identifier: {value!r}")
    return value


def _coerce_policy(policy: RetentionPolicy | dict[str, Any] | None) -> RetentionPolicy | None:
    if policy is None or isinstance(policy, RetentionPolicy):
        resolved = policy
    else:
        resolved = RetentionPolicy.from_dict(policy)
    if resolved is None:
        return None
    if resolved.enabled and resolved.retention_days < 1:
        raise PartitionValueError("retention_days must be at least 1 when retention is enabled")
    if resolved.archive_location:
        _require_identifier(resolved.archive_location, "archive_location")
    return resolved


def retention_horizon(partition: Partition) -> datetime:
    """Moment after which a partition's rows start aging out.

    Time-typed range partitions age from their upper bound; everything else
    ages from its registration time.
    """
    if partition.partition_type == "time" and partition.strategy == STRATEGY_RANGE:
        bound = parse_range(partition.values[0])
        if bound.upper is not None:
            if bound.numeric:
                return datetime.fromtimestamp(float(bound.upper), tz=timezone.utc)
            try:
                return ensure_utc(str(bound.upper))
            except ValueError:
                logger.warning(
                    "partition_horizon_unparsed partition_id=%s upper=%s",
                    partition.id,
                    bound.upper,
                )
    return partition.created_at


class PartitionManager:
    """Register, route, and age out partitions of tenant data tables."""

    def __init__(
        self,
        store: RecordStore,
        tenant_id: str,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self.tenant_id = tenant_id
        self._clock = clock or utc_now

    async def _partitions(self, **filters: Any) -> list[Partition]:
        rows = await self._store.read(PARTITIONS_TABLE, {"tenant_id": self.tenant_id, **filters})
        partitions = [Partition.from_record(row) for row in rows]
        # Registration order keeps routing deterministic across calls.
        partitions.sort(key=lambda item: (item.created_at, item.id))
        return partitions

    async def _active(self, table_name: str, partition_key: str | None = None) -> list[Partition]:
        filters: dict[str, Any] = {"table_name": table_name, "status": STATUS_ACTIVE}
        if partition_key is not None:
            filters["partition_key"] = partition_key
        return await self._partitions(**filters)

    async def _registered_on_table(self, table_name: str, partition_key: str) -> list[Partition]:
        # Every tenant's partitions attach to the same physical parent table.
        rows = await self._store.read(
            PARTITIONS_TABLE,
            {"table_name": table_name, "partition_key": partition_key, "status": STATUS_ACTIVE},
        )
        return [Partition.from_record(row) for row in rows]

    def _visible_id(self, partition: Partition) -> str | None:
        return partition.id if partition.tenant_id == self.tenant_id else None

    async def create_partition(
        self,
        *,
        table_name: str,
        partition_type: str,
        partition_key: str,
        values: Iterable[str],
        strategy: str,
        retention_policy: RetentionPolicy | dict[str, Any] | None = None,
        name: str | None = None,
    ) -> Partition:
        """Register a partition and, where supported, attach it to the physical table.

        Overlap and name checks span all tenants because the parent table is
        shared. Hash partitions are routed from metadata only: their buckets
        use a process-stable digest that PostgreSQL's hash partitioning does
        not reproduce, so no ``PARTITION OF`` table is created for them.
        """
        _require_identifier(table_name, "table_name")
        _require_identifier(partition_key, "partition_key")
        if partition_type not in PARTITION_TYPES:
            raise PartitionValueError(f"Unsupported partition type: {partition_type}")
        candidate = normalize_values(strategy, values)
        policy = _coerce_policy(retention_policy)
        partition_name = _require_identifier(
            name or f"{table_name}_p_{uuid4().hex[:12]}", "partition name"
        )

        async with self._store.advisory_lock(table_lock_key(table_name)):
            for existing in await self._registered_on_table(table_name, partition_key):
                if existing.strategy != strategy:
                    raise PartitionStrategyConflictError(
                        table_name=table_name,
                        partition_key=partition_key,
                        conflicting_partition_id=self._visible_id(existing),
                        overlapping_values=candidate,
                        message=(
                            f"{table_name}.{partition_key} is already partitioned by "
                            f"{existing.strategy}; cannot add a {strategy} partition"
                        ),
                    )
                overlap = overlapping_values(strategy, candidate, existing.values)
                if overlap:
                    logger.info(
                        "partition_overlap_rejected tenant_id=%s table=%s key=%s conflicting=%s owner=%s",
                        self.tenant_id,
                        table_name,
                        partition_key,
                        existing.id,
                        existing.tenant_id,
                    )
                    raise OverlappingPartitionError(
                        table_name=table_name,
                        partition_key=partition_key,
                        conflicting_partition_id=self._visible_id(existing),
                        overlapping_values=overlap,
                    )
            # Partition names are physical table names, unique across tenants.
            if await self._store.read(PARTITIONS_TABLE, {"name": partition_name}):
                raise PartitionValueError(f"Partition name already registered: {partition_name}")

            ddl_applied = False
            if strategy != STRATEGY_HASH:
                ddl = await self._store.run_named_query(
                    "create_table_partition",
                    {
                        "table_name": table_name,
                        "partition_name": partition_name,
                        "strategy": strategy,
                        "partition_values": list(candidate),
                    },
                )
                ddl_applied = bool(ddl and ddl[0].get("applied"))
            stats = await self._store.run_named_query(
                "partition_stats", {"partition_name": partition_name}
            )
            now = self._clock()
            partition = Partition(
                id=uuid4().hex,
                tenant_id=self.tenant_id,
                name=partition_name,
                table_name=table_name,
                partition_type=partition_type,
                partition_key=partition_key,
                values=candidate,
                strategy=strategy,
                retention_policy=policy,
                performance_metrics={"ddl_applied": ddl_applied, **(stats[0] if stats else {})},
                status=STATUS_ACTIVE,
                created_at=now,
                updated_at=now,
            )
            try:
                stored = await self._store.insert(PARTITIONS_TABLE, partition.to_record())
            except DatabaseError:
                if ddl_applied:
                    logger.warning(
                        "partition_metadata_failed tenant_id=%s partition=%s action=drop",
                        self.tenant_id,
                        partition_name,
                    )
                    await self._store.run_named_query(
                        "drop_table_partition",
                        {"table_name": table_name, "partition_name": partition_name},
                    )
                raise

        logger.info(
            "partition_created tenant_id=%s partition_id=%s table=%s key=%s strategy=%s",
            self.tenant_id,
            partition.id,
            table_name,
            partition_key,
            strategy,
        )
        return Partition.from_record(stored)

    async def route_query(self, table_name: str, partition_key: str, value: str) -> str | None:
        for partition in await self._active(table_name, partition_key):
            if value_matches(partition.strategy, partition.values, value):
                return partition.id
        return None

    async def route_many(
        self, table_name: str, partition_key: str, values: Iterable[str]
    ) -> set[str]:
        # Resolve once, then route every value against the same partition set.
        partitions = await self._active(table_name, partition_key)
        routed: set[str] = set()
        for value in values:
            for partition in partitions:
                if value_matches(partition.strategy, partition.values, value):
                    routed.add(partition.id)
                    break
        return routed

    async def list_partitions(self, table_name: str | None = None) -> list[Partition]:
        if table_name is None:
            return await self._partitions()
        return await self._partitions(table_name=table_name)

    async def run_retention_sweep(
        self, table_name: str | None = None, now: datetime | None = None
    ) -> list[SweepAction]:
        moment = ensure_utc(now) if now is not None else self._clock()
        if table_name is None:
            tables = sorted({item.table_name for item in await self._partitions(status=STATUS_ACTIVE)})
        else:
            tables = [table_name]
        actions: list[SweepAction] = []
        for table in tables:
            async with self._store.advisory_lock(table_lock_key(table)):
                for partition in await self._active(table):
                    action = await self._expire_if_due(partition, moment)
                    if action is not None:
                        actions.append(action)
        logger.info(
            "retention_sweep_completed tenant_id=%s tables=%s expired=%s",
            self.tenant_id,
            len(tables),
            len(actions),
        )
        return actions

    async def _expire_if_due(self, partition: Partition, moment: datetime) -> SweepAction | None:
        policy = partition.retention_policy
        if policy is None or not policy.enabled:
            return None
        horizon = retention_horizon(partition)
        if horizon >= moment - timedelta(days=policy.retention_days):
            return None
        if policy.archive_location:
            action, status = "archive", STATUS_ARCHIVED
        else:
            action, status = "drop", STATUS_DROPPED
        if partition.strategy == STRATEGY_HASH:
            # No physical table backs a hash partition.
            logger.info("partition_ddl_skipped action=%s partition=%s", action, partition.name)
        elif action == "archive":
            await self._store.run_named_query(
                "archive_table_partition",
                {
                    "table_name": partition.table_name,
                    "partition_name": partition.name,
                    "archive_location": policy.archive_location,
                },
            )
        else:
            await self._store.run_named_query(
                "drop_table_partition",
                {"table_name": partition.table_name, "partition_name": partition.name},
            )
        await self._store.upsert(
            PARTITIONS_TABLE, {"id": partition.id, "status": status, "updated_at": moment}
        )
        logger.info(
            "partition_expired tenant_id=%s partition_id=%s action=%s horizon=%s",
            self.tenant_id,
            partition.id,
            action,
            horizon.isoformat(),
        )
        return SweepAction(
            partition_id=partition.id,
            partition_name=partition.name,
            table_name=partition.table_name,
            action=action,
            horizon=horizon,
        )


async def sweep_all_tenants(
    store: RecordStore, now: datetime | None = None
) -> dict[str, list[SweepAction]]:
    rows = await store.read(PARTITIONS_TABLE, {"status": STATUS_ACTIVE}, projection=["tenant_id"])
    results: dict[str, list[SweepAction]] = {}
    for tenant_id in sorted({row["tenant_id"] for row in rows}):
        results[tenant_id] = await PartitionManager(store, tenant_id).run_retention_sweep(now=now)
    return results
