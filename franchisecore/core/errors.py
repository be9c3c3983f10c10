from __future__ import annotations

from typing import Iterable


class FranchiseCoreError(Exception):
    """Base error for franchisecore."""


class DatabaseError(FranchiseCoreError):
    """Database layer failure."""


class UpstreamFetchError(FranchiseCoreError):
    """External store failure during a hierarchy or aggregation fetch."""

    def __init__(self, operation: str, message: str | None = None) -> None:
        self.operation = operation
        super().__init__(message or f"Upstream fetch failed: {operation}")


class AccessDeniedError(FranchiseCoreError):
    """Authorization failed; terminal and surfaced verbatim."""

    def __init__(
        self,
        *,
        subject_id: str,
        resource_type: str,
        resource_ids: Iterable[str],
        required_level: str,
    ) -> None:
        self.subject_id = subject_id
        self.resource_type = resource_type
        self.resource_ids = sorted(set(resource_ids))
        self.required_level = required_level
        super().__init__(
            f"Subject {subject_id} lacks {required_level} on {resource_type}: "
            + ", ".join(self.resource_ids)
        )


class InsufficientGranterPrivilege(FranchiseCoreError):
    """Grant request exceeds the granter's own effective level."""

    def __init__(
        self,
        *,
        granted_by: str,
        resource_type: str,
        resource_id: str,
        requested_level: str,
        granter_level: str | None,
    ) -> None:
        self.granted_by = granted_by
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.requested_level = requested_level
        self.granter_level = granter_level
        super().__init__(
            f"Granter {granted_by} holds {granter_level or 'no access'} on "
            f"{resource_type}/{resource_id} and cannot grant {requested_level}"
        )


class InvalidGrantError(FranchiseCoreError, ValueError):
    """Grant payload is malformed (bad level, expiry, or conditions)."""


class ConditionError(InvalidGrantError):
    """Grant conditions cannot be parsed."""


class NodeNotFoundError(FranchiseCoreError, LookupError):
    """Hierarchy node missing for the tenant."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Hierarchy node not found: {node_id}")


class GrantNotFoundError(FranchiseCoreError, LookupError):
    """Permission grant missing for the tenant."""

    def __init__(self, grant_id: str) -> None:
        self.grant_id = grant_id
        super().__init__(f"Permission grant not found: {grant_id}")


class HierarchyValidationError(FranchiseCoreError, ValueError):
    """Hierarchy write violates node type ordering or status rules."""


class CycleError(HierarchyValidationError):
    """Reparenting would make a node its own ancestor."""

    def __init__(self, node_id: str, new_parent_id: str) -> None:
        self.node_id = node_id
        self.new_parent_id = new_parent_id
        super().__init__(f"Moving {node_id} under {new_parent_id} would create a cycle")


class OverlappingPartitionError(FranchiseCoreError):
    """Partition values collide with an existing partition for the same table and key."""

    def __init__(
        self,
        *,
        table_name: str,
        partition_key: str,
        conflicting_partition_id: str | None,
        overlapping_values: Iterable[str],
        message: str | None = None,
    ) -> None:
        # None when the colliding partition belongs to another tenant.
        self.table_name = table_name
        self.partition_key = partition_key
        self.conflicting_partition_id = conflicting_partition_id
        self.overlapping_values = sorted(set(overlapping_values))
        owner = conflicting_partition_id or "a partition owned by another tenant"
        super().__init__(
            message
            or f"Partition values {self.overlapping_values} overlap {owner} "
            f"on {table_name}.{partition_key}"
        )


class PartitionStrategyConflictError(OverlappingPartitionError):
    """A different strategy already partitions the same table and key."""


class PartitionValueError(FranchiseCoreError, ValueError):
    """Partition values cannot be parsed for the requested strategy."""


class ConfigLimitExceeded(FranchiseCoreError):
    """Tenant quota or hard configuration limit violated."""

    def __init__(self, *, limit_name: str, limit: int, requested: int) -> None:
        self.limit_name = limit_name
        self.limit = limit
        self.requested = requested
        super().__init__(f"{limit_name} {requested} exceeds limit {limit}")


class TenantConfigInvalid(FranchiseCoreError, ValueError):
    """Merged tenant configuration does not match the schema."""


class FeatureNotEnabledError(FranchiseCoreError):
    """Tenant configuration does not enable the requested feature."""

    def __init__(self, *, tenant_id: str, feature_key: str) -> None:
        self.tenant_id = tenant_id
        self.feature_key = feature_key
        super().__init__(f"Feature {feature_key} not enabled for tenant {tenant_id}")


class AggregationRequestError(FranchiseCoreError, ValueError):
    """Aggregation request is malformed."""
