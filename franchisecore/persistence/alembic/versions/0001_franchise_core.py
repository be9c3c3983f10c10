"""franchise core

Revision ID: 0001_franchise_core
Revises:
Create Date: 2026-10-12 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_franchise_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "hierarchy_nodes",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("node_type", sa.String(), nullable=False),
        sa.Column("parent_id", sa.String(), nullable=True),
        sa.Column("level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("path", sa.Text(), nullable=False),
        sa.Column("operational_status", sa.String(), nullable=False, server_default="active"),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_hierarchy_nodes_tenant_id", "hierarchy_nodes", ["tenant_id"])
    op.create_index("ix_hierarchy_nodes_parent_id", "hierarchy_nodes", ["parent_id"])
    op.create_index("ix_hierarchy_nodes_tenant_path", "hierarchy_nodes", ["tenant_id", "path"])
    op.create_index("ix_hierarchy_nodes_tenant_type", "hierarchy_nodes", ["tenant_id", "node_type"])
    # Prefix scans on the materialized path serve subtree reads.
    op.execute(
        "CREATE INDEX ix_hierarchy_nodes_path_prefix ON hierarchy_nodes (path text_pattern_ops)"
    )

    op.create_table(
        "permission_grants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=False),
        sa.Column("level", sa.String(), nullable=False),
        sa.Column("conditions_json", postgresql.JSONB(), nullable=True),
        sa.Column("granted_by", sa.String(), nullable=False),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_inherited", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("inheritance_path", postgresql.JSONB(), nullable=True),
        sa.Column("supersedes_id", sa.String(), nullable=True),
    )
    op.create_index(
        "ix_permission_grants_tenant_subject", "permission_grants", ["tenant_id", "subject_id"]
    )
    op.create_index(
        "ix_permission_grants_resource",
        "permission_grants",
        ["tenant_id", "resource_type", "resource_id"],
    )

    op.create_table(
        "permission_revocations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("grant_id", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("revoked_by", sa.String(), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
    )
    op.create_index("ix_permission_revocations_grant_id", "permission_revocations", ["grant_id"])
    op.create_index(
        "ix_permission_revocations_tenant_subject",
        "permission_revocations",
        ["tenant_id", "subject_id"],
    )

    op.create_table(
        "aggregation_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("location_ids", postgresql.JSONB(), nullable=False),
        sa.Column("metrics", postgresql.JSONB(), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("results_json", postgresql.JSONB(), nullable=False),
        sa.Column("insights_json", postgresql.JSONB(), nullable=False),
        sa.Column("scanned_partitions", postgresql.JSONB(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_aggregation_jobs_tenant_creator", "aggregation_jobs", ["tenant_id", "created_by"]
    )

    op.create_table(
        "metric_records",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("location_id", sa.String(), nullable=False),
        sa.Column("metric", sa.String(), nullable=False),
        sa.Column("value", sa.Float(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_metric_records_lookup",
        "metric_records",
        ["tenant_id", "metric", "location_id", "recorded_at"],
    )

    op.create_table(
        "data_partitions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("table_name", sa.String(), nullable=False),
        sa.Column("partition_type", sa.String(), nullable=False),
        sa.Column("partition_key", sa.String(), nullable=False),
        sa.Column("partition_values", postgresql.JSONB(), nullable=False),
        sa.Column("strategy", sa.String(), nullable=False),
        sa.Column("retention_policy_json", postgresql.JSONB(), nullable=True),
        sa.Column("performance_metrics_json", postgresql.JSONB(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_data_partitions_table_key",
        "data_partitions",
        ["tenant_id", "table_name", "partition_key"],
    )

    op.create_table(
        "tenant_configurations",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("tenant_name", sa.String(), nullable=False),
        sa.Column("tenant_type", sa.String(), nullable=False),
        sa.Column("configuration_json", postgresql.JSONB(), nullable=False),
        sa.Column("billing_info_json", postgresql.JSONB(), nullable=False),
        sa.Column("compliance_settings_json", postgresql.JSONB(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "security_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.Text(), nullable=True),
        sa.Column("requested_level", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
    )
    op.create_index(
        "ix_security_events_tenant_time", "security_events", ["tenant_id", "occurred_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_security_events_tenant_time", table_name="security_events")
    op.drop_table("security_events")
    op.drop_table("tenant_configurations")
    op.drop_index("ix_data_partitions_table_key", table_name="data_partitions")
    op.drop_table("data_partitions")
    op.drop_index("ix_metric_records_lookup", table_name="metric_records")
    op.drop_table("metric_records")
    op.drop_index("ix_aggregation_jobs_tenant_creator", table_name="aggregation_jobs")
    op.drop_table("aggregation_jobs")
    op.drop_index("ix_permission_revocations_tenant_subject", table_name="permission_revocations")
    op.drop_index("ix_permission_revocations_grant_id", table_name="permission_revocations")
    op.drop_table("permission_revocations")
    op.drop_index("ix_permission_grants_resource", table_name="permission_grants")
    op.drop_index("ix_permission_grants_tenant_subject", table_name="permission_grants")
    op.drop_table("permission_grants")
    op.execute("DROP INDEX IF EXISTS ix_hierarchy_nodes_path_prefix")
    op.drop_index("ix_hierarchy_nodes_tenant_type", table_name="hierarchy_nodes")
    op.drop_index("ix_hierarchy_nodes_tenant_path", table_name="hierarchy_nodes")
    op.drop_index("ix_hierarchy_nodes_parent_id", table_name="hierarchy_nodes")
    op.drop_index("ix_hierarchy_nodes_tenant_id", table_name="hierarchy_nodes")
    op.drop_table("hierarchy_nodes")
