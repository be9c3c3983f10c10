from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from franchisecore.core.errors import (
    DatabaseError,
    OverlappingPartitionError,
    PartitionStrategyConflictError,
    PartitionValueError,
)
from franchisecore.domain.partitioning import bound_clause, parse_hash, parse_range
from franchisecore.persistence.memory import InMemoryStore
from franchisecore.services.partitions import (
    PartitionManager,
    retention_horizon,
    sweep_all_tenants,
    table_lock_key,
)
from franchisecore.tests.utils.franchise import NOW, TENANT_ID, AppliedDdlStore, fixed_clock


def _manager(store: InMemoryStore, moment=NOW, tenant_id: str = TENANT_ID) -> PartitionManager:
    return PartitionManager(store, tenant_id, clock=fixed_clock(moment))


async def _list_partition(manager: PartitionManager, values, **overrides):
    params = {
        "table_name": "metric_records",
        "partition_type": "location",
        "partition_key": "location_id",
        "values": values,
        "strategy": "list",
    }
    params.update(overrides)
    return await manager.create_partition(**params)


@pytest.mark.asyncio
async def test_overlapping_list_partitions_are_rejected(store: InMemoryStore) -> None:
    manager = _manager(store)
    first = await _list_partition(manager, ["L1", "L2"])

    with pytest.raises(OverlappingPartitionError) as exc_info:
        await _list_partition(manager, ["L2", "L3"])

    error = exc_info.value
    assert error.conflicting_partition_id == first.id
    assert error.overlapping_values == ["L2"]
    assert error.table_name == "metric_records"
    assert len(await manager.list_partitions("metric_records")) == 1


@pytest.mark.asyncio
async def test_overlap_is_scoped_to_table_and_key(store: InMemoryStore) -> None:
    manager = _manager(store)
    await _list_partition(manager, ["L1", "L2"])

    await _list_partition(manager, ["L2"], table_name="sales_records")
    await _list_partition(manager, ["L2"], partition_key="region_id", partition_type="region")

    assert len(await manager.list_partitions()) == 3


@pytest.mark.asyncio
async def test_created_partition_records_metadata_and_ddl(store: InMemoryStore) -> None:
    manager = _manager(store)
    partition = await _list_partition(
        manager,
        [" L1 ", "L1", "L2"],
        name="metric_records_west",
        retention_policy={"enabled": True, "retention_days": 30, "archive_location": "archive"},
    )

    assert partition.values == ("L1", "L2")
    assert partition.name == "metric_records_west"
    assert partition.status == "active"
    assert partition.created_at == NOW
    assert partition.performance_metrics == {"ddl_applied": False}
    assert partition.retention_policy is not None
    assert partition.retention_policy.archive_location == "archive"
    payload = partition.to_dict()
    assert payload["partition_id"] == partition.id
    assert payload["partition_values"] == ["L1", "L2"]
    assert store.ddl_log[0][0] == "create"
    assert store.ddl_log[0][1]["partition_name"] == "metric_records_west"


@pytest.mark.asyncio
async def test_partition_input_validation(store: InMemoryStore) -> None:
    manager = _manager(store)

    with pytest.raises(PartitionValueError):
        await _list_partition(manager, ["L1"], table_name="metric_records; drop table x")
    with pytest.raises(PartitionValueError):
        await _list_partition(manager, ["L1"], partition_type="galaxy")
    with pytest.raises(PartitionValueError):
        await _list_partition(manager, [])
    with pytest.raises(PartitionValueError):
        await _list_partition(manager, ["L1"], strategy="round_robin")
    with pytest.raises(PartitionValueError):
        await _list_partition(
            manager, ["L1"], retention_policy={"enabled": True, "retention_days": 0}
        )
    with pytest.raises(PartitionValueError):
        await _list_partition(manager, ["0..10", "10..20"], strategy="range")
    await _list_partition(manager, ["L1"], name="metric_records_one")
    with pytest.raises(PartitionValueError):
        await _list_partition(manager, ["L9"], name="metric_records_one")


@pytest.mark.asyncio
async def test_mixing_strategies_on_one_key_is_a_conflict(store: InMemoryStore) -> None:
    manager = _manager(store)
    await _list_partition(manager, ["L1"])

    with pytest.raises(PartitionStrategyConflictError):
        await _list_partition(manager, ["0/4"], strategy="hash")


@pytest.mark.asyncio
async def test_range_partitions_are_half_open(store: InMemoryStore) -> None:
    manager = _manager(store)
    low = await _list_partition(manager, ["0..100"], strategy="range", partition_key="amount")
    high = await _list_partition(manager, ["100..200"], strategy="range", partition_key="amount")

    with pytest.raises(OverlappingPartitionError):
        await _list_partition(manager, ["150..250"], strategy="range", partition_key="amount")
    with pytest.raises(OverlappingPartitionError):
        await _list_partition(manager, ["..10"], strategy="range", partition_key="amount")

    assert await manager.route_query("metric_records", "amount", "42") == low.id
    assert await manager.route_query("metric_records", "amount", "100") == high.id
    assert await manager.route_query("metric_records", "amount", "200") is None
    assert await manager.route_query("metric_records", "amount", "not-a-number") is None


@pytest.mark.asyncio
async def test_hash_buckets_overlap_by_congruence(store: InMemoryStore) -> None:
    manager = _manager(store)
    await _list_partition(manager, ["0/4"], strategy="hash")
    await _list_partition(manager, ["1/4"], strategy="hash")
    await _list_partition(manager, ["3/4"], strategy="hash")

    with pytest.raises(OverlappingPartitionError):
        await _list_partition(manager, ["0/2"], strategy="hash")
    with pytest.raises(PartitionValueError):
        await _list_partition(manager, ["2/2"], strategy="hash")

    routed = await manager.route_many("metric_records", "location_id", [f"L{i}" for i in range(40)])
    # Bucket 2/4 is unregistered, so some values fall through while the rest land somewhere.
    assert 1 <= len(routed) <= 3


@pytest.mark.asyncio
async def test_list_routing(store: InMemoryStore) -> None:
    manager = _manager(store)
    west = await _list_partition(manager, ["L1", "L2"])
    east = await _list_partition(manager, ["L3"])

    assert await manager.route_query("metric_records", "location_id", "L3") == east.id
    assert await manager.route_query("metric_records", "location_id", "L9") is None
    assert await manager.route_many("metric_records", "location_id", ["L1", "L2", "L9"]) == {west.id}


@pytest.mark.asyncio
async def test_concurrent_overlapping_creates_admit_exactly_one(store: InMemoryStore) -> None:
    manager = _manager(store)

    outcomes = await asyncio.gather(
        _list_partition(manager, ["L1", "L2"]),
        _list_partition(manager, ["L2", "L3"]),
        return_exceptions=True,
    )

    failures = [item for item in outcomes if isinstance(item, BaseException)]
    assert len(failures) == 1
    assert isinstance(failures[0], OverlappingPartitionError)
    assert len(await manager.list_partitions()) == 1


@pytest.mark.asyncio
async def test_retention_sweep_drops_expired_partitions_once(store: InMemoryStore) -> None:
    old = await _list_partition(
        _manager(store, NOW - timedelta(days=40)),
        ["L1"],
        retention_policy={"enabled": True, "retention_days": 30},
    )
    fresh = await _list_partition(
        _manager(store, NOW - timedelta(days=5)),
        ["L2"],
        retention_policy={"enabled": True, "retention_days": 30},
    )
    await _list_partition(
        _manager(store, NOW - timedelta(days=400)),
        ["L3"],
        retention_policy={"enabled": False, "retention_days": 1},
    )
    manager = _manager(store)

    actions = await manager.run_retention_sweep()
    again = await manager.run_retention_sweep()

    assert [(action.partition_id, action.action) for action in actions] == [(old.id, "drop")]
    assert again == []
    statuses = {item.id: item.status for item in await manager.list_partitions()}
    assert statuses[old.id] == "dropped"
    assert statuses[fresh.id] == "active"
    assert [entry[0] for entry in store.ddl_log].count("drop") == 1
    # Dropped partitions no longer route or block new registrations.
    assert await manager.route_query("metric_records", "location_id", "L1") is None
    await _list_partition(manager, ["L1"])


@pytest.mark.asyncio
async def test_retention_sweep_archives_when_location_is_set(store: InMemoryStore) -> None:
    partition = await _list_partition(
        _manager(store, NOW - timedelta(days=10)),
        ["L1"],
        retention_policy={"enabled": True, "retention_days": 7, "archive_location": "cold_storage"},
    )

    actions = await _manager(store).run_retention_sweep(table_name="metric_records")

    assert [action.action for action in actions] == ["archive"]
    assert actions[0].to_dict()["partition_id"] == partition.id
    assert store.ddl_log[-1][0] == "archive"
    assert store.ddl_log[-1][1]["archive_location"] == "cold_storage"
    listed = await _manager(store).list_partitions()
    assert listed[0].status == "archived"


@pytest.mark.asyncio
async def test_time_ranges_age_from_their_upper_bound(store: InMemoryStore) -> None:
    manager = _manager(store)
    january = await _list_partition(
        manager,
        ["2026-01-01..2026-02-01"],
        strategy="range",
        partition_type="time",
        partition_key="recorded_at",
        retention_policy={"enabled": True, "retention_days": 10},
    )
    february = await _list_partition(
        manager,
        ["2026-02-01..2026-03-01"],
        strategy="range",
        partition_type="time",
        partition_key="recorded_at",
        retention_policy={"enabled": True, "retention_days": 10},
    )

    assert retention_horizon(january).isoformat() == "2026-02-01T00:00:00+00:00"
    actions = await manager.run_retention_sweep()

    assert [action.partition_id for action in actions] == [january.id]
    assert february.id not in {action.partition_id for action in actions}


@pytest.mark.asyncio
async def test_sweep_all_tenants_visits_each_tenant(store: InMemoryStore) -> None:
    for tenant_id in (TENANT_ID, "t-other"):
        await _list_partition(
            _manager(store, NOW - timedelta(days=60), tenant_id=tenant_id),
            ["L1"],
            table_name=f"records_{tenant_id.replace('-', '_')}",
            retention_policy={"enabled": True, "retention_days": 30},
        )

    results = await sweep_all_tenants(store, now=NOW)

    assert sorted(results) == [TENANT_ID, "t-other"]
    assert all(len(actions) == 1 for actions in results.values())


@pytest.mark.asyncio
async def test_overlap_spans_tenants_sharing_a_table(store: InMemoryStore) -> None:
    mine = _manager(store)
    theirs = _manager(store, tenant_id="t-other")
    await _list_partition(mine, ["L1", "L2"], name="metric_records_mine")

    with pytest.raises(OverlappingPartitionError) as exc_info:
        await _list_partition(theirs, ["L2", "L3"])
    with pytest.raises(PartitionValueError):
        await _list_partition(theirs, ["L7"], name="metric_records_mine")

    # Ids of another tenant's partitions stay hidden.
    assert exc_info.value.conflicting_partition_id is None
    assert exc_info.value.overlapping_values == ["L2"]
    await _list_partition(theirs, ["L3"])
    assert len(await theirs.list_partitions()) == 1
    assert await theirs.route_query("metric_records", "location_id", "L1") is None


@pytest.mark.asyncio
async def test_failed_registration_drops_the_attached_table() -> None:
    store = AppliedDdlStore({"data_partitions"})
    manager = _manager(store)

    with pytest.raises(DatabaseError):
        await _list_partition(manager, ["L1"], name="metric_records_west")

    assert [entry[0] for entry in store.ddl_log] == ["create", "drop"]
    assert store.ddl_log[1][1]["partition_name"] == "metric_records_west"
    assert await manager.list_partitions() == []


@pytest.mark.asyncio
async def test_hash_partitions_are_routed_from_metadata_only() -> None:
    store = AppliedDdlStore()
    old = await _list_partition(
        _manager(store, NOW - timedelta(days=40)),
        ["0/2"],
        strategy="hash",
        retention_policy={"enabled": True, "retention_days": 30},
    )
    listed = await _list_partition(_manager(store), ["L1"], table_name="sales_records")

    assert old.performance_metrics == {"ddl_applied": False}
    assert listed.performance_metrics == {"ddl_applied": True}
    assert [entry[1]["table_name"] for entry in store.ddl_log] == ["sales_records"]

    actions = await _manager(store).run_retention_sweep(table_name="metric_records")

    assert [action.partition_id for action in actions] == [old.id]
    assert len(store.ddl_log) == 1


def test_partition_value_helpers() -> None:
    assert table_lock_key("metric_records") == "partitions:metric_records"
    assert parse_range("..10").lower is None
    assert parse_range("a..m").numeric is False
    assert parse_hash("1/4").modulus == 4
    assert bound_clause("list", ["L1", "O'Hare"]) == "FOR VALUES IN ('L1', 'O''Hare')"
    assert bound_clause("range", ["0..100"]) == "FOR VALUES FROM (0.0) TO (100.0)"
    assert bound_clause("range", ["..100"]) == "FOR VALUES FROM (MINVALUE) TO (100.0)"
    with pytest.raises(PartitionValueError):
        bound_clause("hash", ["1/4"])
    with pytest.raises(PartitionValueError):
        parse_range("10..5")
