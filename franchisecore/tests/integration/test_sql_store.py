from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from franchisecore.core.errors import OverlappingPartitionError
from franchisecore.domain.models import Base
from franchisecore.domain.types import TimeWindow
from franchisecore.persistence.db import build_engine, pool_stats
from franchisecore.persistence.store import SqlRecordStore, sql_store_factory
from franchisecore.services.aggregation import AggregationEngine
from franchisecore.services.aggregation_cache import LocalAggregationCache
from franchisecore.services.authz import PermissionResolver
from franchisecore.services.partitions import PartitionManager
from franchisecore.tests.utils.franchise import NOW, OWNER_ID, TENANT_ID, fixed_clock, seed_hierarchy


@pytest.fixture
async def sessionmaker(tmp_path):
    # File-backed SQLite lets concurrent sessions see each other's commits.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'franchise.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    assert set(pool_stats(engine)) == {"size", "checked_out", "checked_in", "overflow"}
    await engine.dispose()


async def _insert_metric(store: SqlRecordStore, record_id: str, location_id: str, value: float, at=NOW) -> None:
    await store.insert(
        "metric_records",
        {
            "id": record_id,
            "tenant_id": TENANT_ID,
            "location_id": location_id,
            "metric": "revenue",
            "value": value,
            "recorded_at": at,
        },
    )


def _shape(forest) -> dict:
    return {tree.id: _shape(tree.children) for tree in forest}


@pytest.mark.asyncio
async def test_hierarchy_reads_and_moves_on_sql(sessionmaker: async_sessionmaker[AsyncSession]) -> None:
    async with sessionmaker() as session:
        store = SqlRecordStore(session)
        hierarchy = await seed_hierarchy(store)

        assert _shape(await hierarchy.load_tree()) == {"F": {"R1": {"L1": {}, "L2": {}}, "R2": {"L3": {}}}}
        assert [node.id for node in await hierarchy.get_ancestry("L1")] == ["L1", "R1", "F"]
        assert {node.id for node in await hierarchy.get_descendants("R1")} == {"L1", "L2"}

        moved = await hierarchy.reparent("L1", "R2")
        assert moved.path == "F/R2/L1"
        assert moved.parent_id == "R2"
        assert {node.id for node in await hierarchy.get_descendants("R2")} == {"L1", "L3"}

        promoted = await hierarchy.reparent("R1", None)
        assert promoted.level == 0
        leaf = await hierarchy.get_node("L2")
        assert (leaf.path, leaf.level) == ("R1/L2", 1)

        retired = await hierarchy.set_status("L3", "inactive")
        assert retired.operational_status == "inactive"
        assert retired.path == "F/R2/L3"
        assert retired.name == "Harbor"


@pytest.mark.asyncio
async def test_grants_and_revocations_on_sql(sessionmaker: async_sessionmaker[AsyncSession]) -> None:
    async with sessionmaker() as session:
        store = SqlRecordStore(session)
        await seed_hierarchy(store)
        resolver = PermissionResolver(store, TENANT_ID, clock=fixed_clock())

        grant = await resolver.grant_permission(
            subject_id="manager",
            resource_type="region",
            resource_id="R1",
            level="read",
            conditions={"data_restrictions": {"fields_denied": ["manager_phone"]}},
            granted_by=OWNER_ID,
        )

        assert await resolver.check_access("manager", "location", "L2", "read")
        assert not await resolver.check_access("manager", "location", "L3", "read")
        await resolver.revoke_permission(grant_id=grant.id, revoked_by=OWNER_ID, reason="rotation")
        assert not await resolver.check_access("manager", "location", "L2", "read")

        events = await store.read("security_events", {"tenant_id": TENANT_ID})
        assert {"authz.grant_created", "authz.grant_revoked"} <= {row["event_type"] for row in events}


@pytest.mark.asyncio
async def test_aggregation_end_to_end_on_sql(sessionmaker: async_sessionmaker[AsyncSession]) -> None:
    async with sessionmaker() as session:
        store = SqlRecordStore(session)
        await seed_hierarchy(store)
        await _insert_metric(store, "m1", "L1", 200.0)
        await _insert_metric(store, "m2", "L1", 100.0)
        await _insert_metric(store, "m3", "L2", 700.0)
        await _insert_metric(store, "m4", "L2", 999.0, at=NOW - timedelta(days=30))
        engine = AggregationEngine(
            store,
            TENANT_ID,
            store_factory=sql_store_factory(sessionmaker),
            cache=LocalAggregationCache(ttl_s=900, max_entries=16),
            clock=fixed_clock(),
        )

        job = await engine.create_aggregation(
            name="Weekly revenue",
            description=None,
            location_ids=["L1", "L2"],
            metrics=["revenue"],
            time_window=TimeWindow(NOW - timedelta(days=7), NOW),
            requesting_user=OWNER_ID,
        )

        revenue = job.results.metrics["revenue"]
        assert revenue.total == pytest.approx(1000.0)
        assert [item.location_name for item in revenue.by_location] == ["Airport", "Downtown"]
        listed = await engine.list_aggregations(OWNER_ID)
        assert [item.id for item in listed] == [job.id]
        assert listed[0].results.metrics["revenue"].total == pytest.approx(1000.0)


@pytest.mark.asyncio
async def test_partitions_register_and_expire_on_sql(sessionmaker: async_sessionmaker[AsyncSession]) -> None:
    async with sessionmaker() as session:
        store = SqlRecordStore(session)
        partition = await PartitionManager(
            store, TENANT_ID, clock=fixed_clock(NOW - timedelta(days=40))
        ).create_partition(
            table_name="metric_records",
            partition_type="location",
            partition_key="location_id",
            values=["L1", "L2"],
            strategy="list",
            retention_policy={"enabled": True, "retention_days": 30},
        )
        manager = PartitionManager(store, TENANT_ID, clock=fixed_clock())

        # DDL only runs against PostgreSQL; SQLite keeps the metadata row alone.
        assert partition.performance_metrics == {"ddl_applied": False}
        assert await manager.route_query("metric_records", "location_id", "L2") == partition.id
        actions = await manager.run_retention_sweep()
        assert [action.action for action in actions] == ["drop"]
        listed = await manager.list_partitions()
        assert listed[0].status == "dropped"
        assert listed[0].retention_policy is not None
        assert await manager.route_query("metric_records", "location_id", "L2") is None


@pytest.mark.asyncio
async def test_concurrent_partition_creates_on_separate_sessions(
    sessionmaker: async_sessionmaker[AsyncSession],
) -> None:
    scope = sql_store_factory(sessionmaker)

    async def _create(values: list[str]):
        async with scope() as store:
            return await PartitionManager(store, TENANT_ID, clock=fixed_clock()).create_partition(
                table_name="metric_records",
                partition_type="location",
                partition_key="location_id",
                values=values,
                strategy="list",
            )

    outcomes = await asyncio.gather(_create(["L1", "L2"]), _create(["L2", "L3"]), return_exceptions=True)

    failures = [item for item in outcomes if isinstance(item, BaseException)]
    assert len(failures) == 1
    assert isinstance(failures[0], OverlappingPartitionError)
    async with scope() as store:
        assert len(await PartitionManager(store, TENANT_ID).list_partitions()) == 1
