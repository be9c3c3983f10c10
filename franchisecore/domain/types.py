from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


NODE_FRANCHISOR = "franchisor"
NODE_REGION = "region"
NODE_AREA = "area"
NODE_LOCATION = "location"

# Children must rank strictly below their parent; levels may be skipped.
NODE_TYPE_RANK: dict[str, int] = {
    NODE_FRANCHISOR: 0,
    NODE_REGION: 1,
    NODE_AREA: 2,
    NODE_LOCATION: 3,
}
NODE_TYPES = frozenset(NODE_TYPE_RANK)

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_SUSPENDED = "suspended"
NODE_STATUSES = frozenset({STATUS_ACTIVE, STATUS_INACTIVE, STATUS_SUSPENDED})

PATH_SEPARATOR = "/"

WILDCARD_RESOURCE_ID = "*"


def ensure_utc(value: Any) -> datetime | None:
    # Normalize stored timestamps; SQLite hands back naive datetimes.
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        raise TypeError(f"Expected datetime, got {type(value).__name__}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FranchiseNode:
    id: str
    tenant_id: str
    name: str
    node_type: str
    parent_id: str | None
    level: int
    path: str
    operational_status: str = STATUS_ACTIVE
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def path_ids(self) -> tuple[str, ...]:
        return tuple(self.path.split(PATH_SEPARATOR))

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "FranchiseNode":
        return cls(
            id=record["id"],
            tenant_id=record["tenant_id"],
            name=record["name"],
            node_type=record["node_type"],
            parent_id=record.get("parent_id"),
            level=int(record.get("level") or 0),
            path=record["path"],
            operational_status=record.get("operational_status") or STATUS_ACTIVE,
            metadata=dict(record.get("metadata_json") or {}),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "node_type": self.node_type,
            "parent_id": self.parent_id,
            "level": self.level,
            "path": self.path,
            "operational_status": self.operational_status,
            "metadata_json": dict(self.metadata),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.node_type,
            "parent_id": self.parent_id,
            "level": self.level,
            "path": self.path,
            "operational_status": self.operational_status,
            "metadata": dict(self.metadata),
        }


@dataclass
class TreeNode:
    # Mutable view used while assembling a forest from flat rows.
    node: FranchiseNode
    level: int
    children: list["TreeNode"] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.node.id

    def walk(self):
        yield self
        for child in self.children:
            yield from child.walk()

    def to_dict(self) -> dict[str, Any]:
        # Tree level is relative to the returned forest, not the stored level.
        payload = self.node.to_dict()
        payload["level"] = self.level
        payload["children"] = [child.to_dict() for child in self.children]
        return payload


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    def cache_token(self) -> str:
        return f"{self.start.isoformat()}|{self.end.isoformat()}"


@dataclass(frozen=True)
class Grant:
    id: str
    tenant_id: str
    subject_id: str
    resource_type: str
    resource_id: str
    level: str
    conditions: dict[str, Any]
    granted_by: str
    granted_at: datetime
    expires_at: datetime | None = None
    is_inherited: bool = False
    inheritance_path: tuple[str, ...] = ()
    supersedes_id: str | None = None

    @property
    def is_type_wide(self) -> bool:
        return self.resource_id == WILDCARD_RESOURCE_ID

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Grant":
        return cls(
            id=record["id"],
            tenant_id=record["tenant_id"],
            subject_id=record["subject_id"],
            resource_type=record["resource_type"],
            resource_id=record["resource_id"],
            level=record["level"],
            conditions=dict(record.get("conditions_json") or {}),
            granted_by=record["granted_by"],
            granted_at=ensure_utc(record["granted_at"]),
            expires_at=ensure_utc(record.get("expires_at")),
            is_inherited=bool(record.get("is_inherited") or False),
            inheritance_path=tuple(record.get("inheritance_path") or ()),
            supersedes_id=record.get("supersedes_id"),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "subject_id": self.subject_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "level": self.level,
            "conditions_json": dict(self.conditions),
            "granted_by": self.granted_by,
            "granted_at": self.granted_at,
            "expires_at": self.expires_at,
            "is_inherited": self.is_inherited,
            "inheritance_path": list(self.inheritance_path),
            "supersedes_id": self.supersedes_id,
        }

    def to_dict(self) -> dict[str, Any]:
        payload = self.to_record()
        payload["conditions"] = payload.pop("conditions_json")
        payload["granted_at"] = self.granted_at.isoformat()
        payload["expires_at"] = self.expires_at.isoformat() if self.expires_at else None
        return payload


@dataclass(frozen=True)
class Revocation:
    id: str
    tenant_id: str
    grant_id: str
    subject_id: str
    revoked_by: str
    revoked_at: datetime
    reason: str | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Revocation":
        return cls(
            id=record["id"],
            tenant_id=record["tenant_id"],
            grant_id=record["grant_id"],
            subject_id=record["subject_id"],
            revoked_by=record["revoked_by"],
            revoked_at=ensure_utc(record["revoked_at"]),
            reason=record.get("reason"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "revocation_id": self.id,
            "grant_id": self.grant_id,
            "subject_id": self.subject_id,
            "revoked_by": self.revoked_by,
            "revoked_at": self.revoked_at.isoformat(),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class LocationBreakdown:
    location_id: str
    location_name: str
    value: float
    percentage: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "location_id": self.location_id,
            "location_name": self.location_name,
            "value": self.value,
            "percentage": self.percentage,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "LocationBreakdown":
        return cls(
            location_id=payload["location_id"],
            location_name=payload.get("location_name") or payload["location_id"],
            value=float(payload["value"]),
            percentage=float(payload["percentage"]),
        )


@dataclass(frozen=True)
class MetricAggregation:
    total: float
    average: float
    by_location: tuple[LocationBreakdown, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "average": self.average,
            "by_location": [item.to_dict() for item in self.by_location],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "MetricAggregation":
        return cls(
            total=float(payload["total"]),
            average=float(payload["average"]),
            by_location=tuple(LocationBreakdown.from_dict(item) for item in payload["by_location"]),
        )


@dataclass(frozen=True)
class AggregationResults:
    # The cacheable part of an aggregation: everything except job identity.
    metrics: dict[str, MetricAggregation]
    insights: tuple[str, ...]
    scanned_partitions: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "metrics": {name: agg.to_dict() for name, agg in self.metrics.items()},
            "insights": list(self.insights),
            "scanned_partitions": list(self.scanned_partitions),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "AggregationResults":
        return cls(
            metrics={
                name: MetricAggregation.from_dict(agg)
                for name, agg in (payload.get("metrics") or {}).items()
            },
            insights=tuple(payload.get("insights") or ()),
            scanned_partitions=tuple(payload.get("scanned_partitions") or ()),
        )


@dataclass(frozen=True)
class CrossLocationAggregation:
    id: str
    tenant_id: str
    name: str
    description: str | None
    location_ids: tuple[str, ...]
    metrics: tuple[str, ...]
    time_window: TimeWindow
    results: AggregationResults
    created_by: str
    created_at: datetime

    @property
    def insights(self) -> tuple[str, ...]:
        return self.results.insights

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "location_ids": list(self.location_ids),
            "metrics": list(self.metrics),
            "window_start": self.time_window.start,
            "window_end": self.time_window.end,
            "results_json": {name: agg.to_dict() for name, agg in self.results.metrics.items()},
            "insights_json": list(self.results.insights),
            "scanned_partitions": list(self.results.scanned_partitions),
            "created_by": self.created_by,
            "created_at": self.created_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "CrossLocationAggregation":
        return cls(
            id=record["id"],
            tenant_id=record["tenant_id"],
            name=record["name"],
            description=record.get("description"),
            location_ids=tuple(record.get("location_ids") or ()),
            metrics=tuple(record.get("metrics") or ()),
            time_window=TimeWindow(record["window_start"], record["window_end"]),
            results=AggregationResults(
                metrics={
                    name: MetricAggregation.from_dict(agg)
                    for name, agg in (record.get("results_json") or {}).items()
                },
                insights=tuple(record.get("insights_json") or ()),
                scanned_partitions=tuple(record.get("scanned_partitions") or ()),
            ),
            created_by=record["created_by"],
            created_at=ensure_utc(record["created_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "aggregation_id": self.id,
            "name": self.name,
            "description": self.description,
            "location_ids": list(self.location_ids),
            "metrics": list(self.metrics),
            "time_period": {
                "start": self.time_window.start.isoformat(),
                "end": self.time_window.end.isoformat(),
            },
            "aggregated_data": {name: agg.to_dict() for name, agg in self.results.metrics.items()},
            "insights": list(self.results.insights),
            "scanned_partitions": list(self.results.scanned_partitions),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class RetentionPolicy:
    enabled: bool
    retention_days: int
    archive_location: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "RetentionPolicy | None":
        if not payload:
            return None
        return cls(
            enabled=bool(payload.get("enabled", False)),
            retention_days=int(payload.get("retention_days", 0)),
            archive_location=payload.get("archive_location"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "retention_days": self.retention_days,
            "archive_location": self.archive_location,
        }


@dataclass(frozen=True)
class Partition:
    id: str
    tenant_id: str
    name: str
    table_name: str
    partition_type: str
    partition_key: str
    values: tuple[str, ...]
    strategy: str
    retention_policy: RetentionPolicy | None
    performance_metrics: dict[str, Any]
    status: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Partition":
        return cls(
            id=record["id"],
            tenant_id=record["tenant_id"],
            name=record["name"],
            table_name=record["table_name"],
            partition_type=record["partition_type"],
            partition_key=record["partition_key"],
            values=tuple(record.get("partition_values") or ()),
            strategy=record["strategy"],
            retention_policy=RetentionPolicy.from_dict(record.get("retention_policy_json")),
            performance_metrics=dict(record.get("performance_metrics_json") or {}),
            status=record.get("status") or "active",
            created_at=ensure_utc(record["created_at"]),
            updated_at=ensure_utc(record["updated_at"]),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "table_name": self.table_name,
            "partition_type": self.partition_type,
            "partition_key": self.partition_key,
            "partition_values": list(self.values),
            "strategy": self.strategy,
            "retention_policy_json": self.retention_policy.to_dict() if self.retention_policy else None,
            "performance_metrics_json": dict(self.performance_metrics),
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_dict(self) -> dict[str, Any]:
        payload = self.to_record()
        payload["partition_id"] = payload.pop("id")
        payload["retention_policy"] = payload.pop("retention_policy_json")
        payload["performance_metrics"] = payload.pop("performance_metrics_json")
        payload["created_at"] = self.created_at.isoformat()
        payload["updated_at"] = self.updated_at.isoformat()
        return payload
