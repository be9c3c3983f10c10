from __future__ import annotations

from dataclasses import replace
from datetime import datetime
import logging
from typing import Any, Callable

from franchisecore.core.config import get_settings
from franchisecore.domain.types import (
    NODE_LOCATION,
    STATUS_ACTIVE,
    CrossLocationAggregation,
    FranchiseNode,
    Grant,
    Partition,
    Revocation,
    TimeWindow,
    TreeNode,
)
from franchisecore.persistence.store import RecordStore, StoreFactory
from franchisecore.services.aggregation import AggregationEngine
from franchisecore.services.aggregation_cache import AggregationCache
from franchisecore.services.authz.levels import PermissionLevel
from franchisecore.services.authz.resolver import (
    RESOURCE_TENANT,
    EffectiveGrant,
    PermissionResolver,
    resolve_against,
)
from franchisecore.services.hierarchy import (
    NODES_TABLE,
    HierarchyIndex,
    HierarchyStore,
    ancestry_is_complete,
    build_tree,
)
from franchisecore.services.partitions import PartitionManager, SweepAction
from franchisecore.services.tenants import (
    FEATURE_DATA_PARTITIONING,
    FEATURE_GRANULAR_PERMISSIONS,
    TenantConfiguration,
    TenantGate,
    configure_tenant,
    get_configuration,
)


logger = logging.getLogger(__name__)


class FranchiseService:
    """Entry point for calling layers; every operation runs tenant-scoped."""

    def __init__(
        self,
        store: RecordStore,
        tenant_id: str,
        *,
        store_factory: StoreFactory,
        cache: AggregationCache | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self.tenant_id = tenant_id
        self._clock = clock
        self.hierarchy = HierarchyStore(store, tenant_id)
        self.resolver = PermissionResolver(store, tenant_id, clock=clock)
        self.gate = TenantGate(store, tenant_id)
        self.partitions = PartitionManager(store, tenant_id, clock=clock)
        self.aggregations = AggregationEngine(
            store, tenant_id, store_factory=store_factory, cache=cache, clock=clock
        )

    async def _require(
        self, user_id: str, resource_type: str, resource_id: str, level: PermissionLevel
    ) -> None:
        await self.resolver.require_access(user_id, resource_type, [resource_id], level)

    async def _require_tenant(self, user_id: str, level: PermissionLevel) -> None:
        await self._require(user_id, RESOURCE_TENANT, self.tenant_id, level)

    async def _require_node(self, user_id: str, node: FranchiseNode, level: PermissionLevel) -> None:
        await self._require(user_id, node.node_type, node.id, level)

    async def _require_location_slot(self) -> None:
        active = await self._store.read(
            NODES_TABLE,
            {"tenant_id": self.tenant_id, "node_type": NODE_LOCATION, "operational_status": STATUS_ACTIVE},
            projection=["id"],
        )
        await self.gate.require_location_capacity(len(active) + 1)

    async def get_franchise_hierarchy(
        self, user_id: str, root_id: str | None = None, max_depth: int | None = None
    ) -> list[TreeNode]:
        """Return the forest of nodes the user can at least read.

        Visible nodes whose parent is hidden surface as roots. Node metadata
        passes through the field restrictions of the winning grant.
        """
        if max_depth is None:
            max_depth = get_settings().hierarchy_max_depth
        nodes = await self.hierarchy.load_nodes(root_id=root_id, max_depth=max_depth)
        known = list(nodes)
        if root_id is not None and nodes:
            # Ancestors above the requested root still contribute inherited grants.
            known.extend((await self.hierarchy.get_ancestry(root_id))[1:])
        index = HierarchyIndex(known)
        snapshot = await self.resolver.snapshot(user_id)

        visible: list[FranchiseNode] = []
        for node in nodes:
            ancestry = [node, *index.ancestors_of(node.id)]
            if not ancestry_is_complete(node, ancestry):
                ancestry = [node]
            grants = resolve_against(snapshot, node.node_type, node.id, ancestry)
            if not grants or grants[0].level < PermissionLevel.READ:
                continue
            visible.append(replace(node, metadata=grants[0].conditions.filter_fields(node.metadata)))
        logger.info(
            "hierarchy_served tenant_id=%s user_id=%s loaded=%s visible=%s",
            self.tenant_id,
            user_id,
            len(nodes),
            len(visible),
        )
        return build_tree(visible)

    async def create_hierarchy_node(
        self,
        *,
        requested_by: str,
        name: str,
        node_type: str,
        parent_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        node_id: str | None = None,
    ) -> FranchiseNode:
        if parent_id is None:
            await self._require_tenant(requested_by, PermissionLevel.ADMIN)
        else:
            parent = await self.hierarchy.get_node(parent_id)
            await self._require_node(requested_by, parent, PermissionLevel.ADMIN)
        if node_type == NODE_LOCATION:
            await self._require_location_slot()
        return await self.hierarchy.create_node(
            name=name, node_type=node_type, parent_id=parent_id, metadata=metadata, node_id=node_id
        )

    async def reparent_node(
        self, *, requested_by: str, node_id: str, new_parent_id: str | None
    ) -> FranchiseNode:
        node, new_parent = await self.hierarchy.validate_reparent(node_id, new_parent_id)
        await self._require_node(requested_by, node, PermissionLevel.ADMIN)
        if new_parent is None:
            await self._require_tenant(requested_by, PermissionLevel.ADMIN)
        else:
            await self._require_node(requested_by, new_parent, PermissionLevel.ADMIN)
        return await self.hierarchy.reparent(node_id, new_parent_id)

    async def set_node_status(self, *, requested_by: str, node_id: str, status: str) -> FranchiseNode:
        node = await self.hierarchy.get_node(node_id)
        await self._require_node(requested_by, node, PermissionLevel.ADMIN)
        if (
            node.node_type == NODE_LOCATION
            and status == STATUS_ACTIVE
            and node.operational_status != STATUS_ACTIVE
        ):
            await self._require_location_slot()
        return await self.hierarchy.set_status(node_id, status)

    async def create_cross_location_aggregation(
        self,
        *,
        name: str,
        description: str | None,
        location_ids: list[str],
        metrics: list[str],
        time_window: TimeWindow,
        user_id: str,
        benchmarks: dict[str, float] | None = None,
    ) -> CrossLocationAggregation:
        return await self.aggregations.create_aggregation(
            name=name,
            description=description,
            location_ids=location_ids,
            metrics=metrics,
            time_window=time_window,
            requesting_user=user_id,
            benchmarks=benchmarks,
        )

    async def list_aggregations(
        self, user_id: str, *, include_all: bool = False
    ) -> list[CrossLocationAggregation]:
        if not include_all:
            return await self.aggregations.list_aggregations(user_id)
        await self._require_tenant(user_id, PermissionLevel.ADMIN)
        return await self.aggregations.list_aggregations()

    async def record_metric(
        self,
        *,
        user_id: str,
        location_id: str,
        metric: str,
        value: float,
        recorded_at: datetime | None = None,
    ) -> dict[str, Any]:
        return await self.aggregations.record_metric(
            location_id=location_id,
            metric=metric,
            value=value,
            recorded_by=user_id,
            recorded_at=recorded_at,
        )

    async def grant_granular_permission(
        self,
        *,
        user_id: str,
        resource_type: str,
        resource_id: str,
        level: str,
        conditions: dict[str, Any] | None,
        granted_by: str,
        expires_at: datetime | None = None,
    ) -> Grant:
        await self.gate.require_feature(FEATURE_GRANULAR_PERMISSIONS)
        subjects = await self.resolver.active_subjects()
        if user_id not in subjects:
            await self.gate.require_user_capacity(len(subjects) + 1)
        return await self.resolver.grant_permission(
            subject_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            level=level,
            conditions=conditions,
            granted_by=granted_by,
            expires_at=expires_at,
        )

    async def revoke_permission(
        self, *, grant_id: str, revoked_by: str, reason: str | None = None
    ) -> Revocation:
        return await self.resolver.revoke_permission(
            grant_id=grant_id, revoked_by=revoked_by, reason=reason
        )

    async def get_user_effective_permissions(
        self,
        user_id: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        *,
        requested_by: str | None = None,
    ) -> list[EffectiveGrant]:
        # Inspecting another subject's access is a tenant administration task.
        if requested_by is not None and requested_by != user_id:
            await self._require_tenant(requested_by, PermissionLevel.ADMIN)
        return await self.resolver.resolve_effective_permissions(user_id, resource_type, resource_id)

    async def check_access(
        self, user_id: str, resource_type: str, resource_id: str, required_level: str
    ) -> bool:
        return await self.resolver.check_access(user_id, resource_type, resource_id, required_level)

    async def get_tenant_configuration(self, *, user_id: str) -> TenantConfiguration:
        await self._require_tenant(user_id, PermissionLevel.READ)
        return await get_configuration(self._store, self.tenant_id)

    async def configure_tenant(
        self, *, requested_by: str, partial: dict[str, Any]
    ) -> TenantConfiguration:
        await self._require_tenant(requested_by, PermissionLevel.ADMIN)
        return await configure_tenant(self._store, self.tenant_id, partial, clock=self._clock)

    async def create_data_partition(
        self,
        *,
        requested_by: str,
        table_name: str,
        partition_type: str,
        partition_key: str,
        values: list[str],
        strategy: str,
        retention_policy: dict[str, Any] | None = None,
        name: str | None = None,
    ) -> Partition:
        await self.gate.require_feature(FEATURE_DATA_PARTITIONING)
        await self._require_tenant(requested_by, PermissionLevel.ADMIN)
        return await self.partitions.create_partition(
            table_name=table_name,
            partition_type=partition_type,
            partition_key=partition_key,
            values=values,
            strategy=strategy,
            retention_policy=retention_policy,
            name=name,
        )

    async def list_partitions(self, *, user_id: str, table_name: str | None = None) -> list[Partition]:
        await self._require_tenant(user_id, PermissionLevel.READ)
        return await self.partitions.list_partitions(table_name)

    async def route_partition(
        self, *, user_id: str, table_name: str, partition_key: str, value: str
    ) -> str | None:
        await self._require_tenant(user_id, PermissionLevel.READ)
        return await self.partitions.route_query(table_name, partition_key, value)

    async def run_retention_sweep(
        self, *, requested_by: str, table_name: str | None = None
    ) -> list[SweepAction]:
        await self._require_tenant(requested_by, PermissionLevel.ADMIN)
        return await self.partitions.run_retention_sweep(table_name)
