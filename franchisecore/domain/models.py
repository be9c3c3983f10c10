from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on PostgreSQL while keeping SQLite usable for local runs and tests.
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class HierarchyNode(Base):
    __tablename__ = "hierarchy_nodes"
    __table_args__ = (
        Index("ix_hierarchy_nodes_tenant_path", "tenant_id", "path"),
        Index("ix_hierarchy_nodes_tenant_type", "tenant_id", "node_type"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    # One of franchisor, region, area, location.
    node_type: Mapped[str] = mapped_column(String)
    parent_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Materialized path of ancestor ids joined by "/", ending with this node id.
    path: Mapped[str] = mapped_column(Text)
    # Nodes are never hard-deleted; status transitions retire them.
    operational_status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PermissionGrant(Base):
    __tablename__ = "permission_grants"
    __table_args__ = (
        Index("ix_permission_grants_tenant_subject", "tenant_id", "subject_id"),
        Index("ix_permission_grants_resource", "tenant_id", "resource_type", "resource_id"),
    )

    # Grants are append-only; updates are expressed as superseding rows.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    subject_id: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str] = mapped_column(String)
    # "*" marks a grant over every resource of the type.
    resource_id: Mapped[str] = mapped_column(String)
    level: Mapped[str] = mapped_column(String)
    conditions_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    granted_by: Mapped[str] = mapped_column(String)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_inherited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    inheritance_path: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    supersedes_id: Mapped[str | None] = mapped_column(String, nullable=True)


class PermissionRevocation(Base):
    __tablename__ = "permission_revocations"
    __table_args__ = (Index("ix_permission_revocations_tenant_subject", "tenant_id", "subject_id"),)

    # Soft revocation markers keep the grant row untouched for audit.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    grant_id: Mapped[str] = mapped_column(String, index=True)
    subject_id: Mapped[str] = mapped_column(String)
    revoked_by: Mapped[str] = mapped_column(String)
    revoked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class AggregationJob(Base):
    __tablename__ = "aggregation_jobs"
    __table_args__ = (Index("ix_aggregation_jobs_tenant_creator", "tenant_id", "created_by"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    location_ids: Mapped[list[str]] = mapped_column(JsonType)
    metrics: Mapped[list[str]] = mapped_column(JsonType)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    results_json: Mapped[dict[str, Any]] = mapped_column(JsonType)
    insights_json: Mapped[list[str]] = mapped_column(JsonType)
    scanned_partitions: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    created_by: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class MetricRecord(Base):
    __tablename__ = "metric_records"
    __table_args__ = (
        Index(
            "ix_metric_records_lookup",
            "tenant_id",
            "metric",
            "location_id",
            "recorded_at",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    location_id: Mapped[str] = mapped_column(String)
    metric: Mapped[str] = mapped_column(String)
    value: Mapped[float] = mapped_column(Float)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class DataPartition(Base):
    __tablename__ = "data_partitions"
    __table_args__ = (
        Index("ix_data_partitions_table_key", "tenant_id", "table_name", "partition_key"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    table_name: Mapped[str] = mapped_column(String)
    # One of location, region, time, custom.
    partition_type: Mapped[str] = mapped_column(String)
    partition_key: Mapped[str] = mapped_column(String)
    partition_values: Mapped[list[str]] = mapped_column(JsonType)
    # One of range, hash, list.
    strategy: Mapped[str] = mapped_column(String)
    retention_policy_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    performance_metrics_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    # Partitions leave the routing set once archived or dropped.
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class TenantConfigurationRecord(Base):
    __tablename__ = "tenant_configurations"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_name: Mapped[str] = mapped_column(String)
    tenant_type: Mapped[str] = mapped_column(String)
    configuration_json: Mapped[dict[str, Any]] = mapped_column(JsonType)
    billing_info_json: Mapped[dict[str, Any]] = mapped_column(JsonType)
    compliance_settings_json: Mapped[dict[str, Any]] = mapped_column(JsonType)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SecurityEvent(Base):
    __tablename__ = "security_events"
    __table_args__ = (Index("ix_security_events_tenant_time", "tenant_id", "occurred_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    subject_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_level: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
