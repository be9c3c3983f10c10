from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import func, literal, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from franchisecore.core.config import get_settings
from franchisecore.domain.models import HierarchyNode, MetricRecord
from franchisecore.domain.partitioning import bound_clause
from franchisecore.domain.types import PATH_SEPARATOR


logger = logging.getLogger(__name__)

NamedQuery = Callable[[AsyncSession, dict[str, Any]], Awaitable[list[dict[str, Any]]]]

NAMED_QUERIES: dict[str, NamedQuery] = {}


def named_query(name: str) -> Callable[[NamedQuery], NamedQuery]:
    def _register(handler: NamedQuery) -> NamedQuery:
        NAMED_QUERIES[name] = handler
        return handler

    return _register


def _subtree_predicate(path: str):
    # Match the node itself and every path strictly beneath it.
    return or_(
        HierarchyNode.path == path,
        HierarchyNode.path.startswith(path + PATH_SEPARATOR, autoescape=True),
    )


@named_query("hierarchy_subtree")
async def hierarchy_subtree(session: AsyncSession, params: dict[str, Any]) -> list[dict[str, Any]]:
    tenant_id = params["tenant_id"]
    root_id = params.get("root_id")
    max_depth = params.get("max_depth")
    stmt = select(HierarchyNode.__table__).where(HierarchyNode.tenant_id == tenant_id)
    if root_id:
        root = (
            await session.execute(
                select(HierarchyNode.path, HierarchyNode.level).where(
                    HierarchyNode.tenant_id == tenant_id, HierarchyNode.id == root_id
                )
            )
        ).first()
        if root is None:
            return []
        stmt = stmt.where(_subtree_predicate(root.path))
        if max_depth is not None:
            stmt = stmt.where(HierarchyNode.level <= root.level + int(max_depth))
    elif max_depth is not None:
        stmt = stmt.where(HierarchyNode.level <= int(max_depth))
    result = await session.execute(stmt.order_by(HierarchyNode.level, HierarchyNode.path))
    return [dict(row._mapping) for row in result]


@named_query("hierarchy_ancestors")
async def hierarchy_ancestors(session: AsyncSession, params: dict[str, Any]) -> list[dict[str, Any]]:
    # Return the node and its ancestors, nearest first.
    tenant_id = params["tenant_id"]
    node = (
        await session.execute(
            select(HierarchyNode.path).where(
                HierarchyNode.tenant_id == tenant_id, HierarchyNode.id == params["node_id"]
            )
        )
    ).first()
    if node is None:
        return []
    ids = node.path.split(PATH_SEPARATOR)
    result = await session.execute(
        select(HierarchyNode.__table__)
        .where(HierarchyNode.tenant_id == tenant_id, HierarchyNode.id.in_(ids))
        .order_by(HierarchyNode.level.desc())
    )
    return [dict(row._mapping) for row in result]


@named_query("reparent_subtree")
async def reparent_subtree(session: AsyncSession, params: dict[str, Any]) -> list[dict[str, Any]]:
    tenant_id = params["tenant_id"]
    old_path = params["old_path"]
    new_path = params["new_path"]
    now = datetime.now(timezone.utc)
    moved = await session.execute(
        update(HierarchyNode)
        .where(HierarchyNode.tenant_id == tenant_id, _subtree_predicate(old_path))
        .values(
            path=literal(new_path).concat(func.substr(HierarchyNode.path, len(old_path) + 1)),
            level=HierarchyNode.level + int(params["level_delta"]),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.execute(
        update(HierarchyNode)
        .where(HierarchyNode.tenant_id == tenant_id, HierarchyNode.id == params["node_id"])
        .values(parent_id=params["new_parent_id"], updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return [{"updated": moved.rowcount or 0}]


@named_query("metric_records")
async def metric_records(session: AsyncSession, params: dict[str, Any]) -> list[dict[str, Any]]:
    # Sum raw records per location inside the inclusive time window.
    stmt = (
        select(MetricRecord.location_id, func.sum(MetricRecord.value).label("value"))
        .where(
            MetricRecord.tenant_id == params["tenant_id"],
            MetricRecord.metric == params["metric"],
            MetricRecord.location_id.in_(list(params["location_ids"])),
            MetricRecord.recorded_at >= params["start"],
            MetricRecord.recorded_at <= params["end"],
        )
        .group_by(MetricRecord.location_id)
    )
    result = await session.execute(stmt)
    return [{"location_id": row.location_id, "value": float(row.value or 0.0)} for row in result]


def _ddl_enabled(session: AsyncSession) -> bool:
    bind = session.bind
    return get_settings().partition_ddl_enabled and bind is not None and bind.dialect.name == "postgresql"


def _quote(session: AsyncSession, identifier: str) -> str:
    return session.bind.dialect.identifier_preparer.quote(identifier)


@named_query("create_table_partition")
async def create_table_partition(session: AsyncSession, params: dict[str, Any]) -> list[dict[str, Any]]:
    if not _ddl_enabled(session):
        logger.info(
            "partition_ddl_skipped action=create table=%s partition=%s",
            params["table_name"],
            params["partition_name"],
        )
        return [{"applied": False}]
    clause = bound_clause(params["strategy"], params["partition_values"])
    await session.execute(
        text(
            f"CREATE TABLE IF NOT EXISTS {_quote(session, params['partition_name'])} "
            f"PARTITION OF {_quote(session, params['table_name'])} {clause}"
        )
    )
    return [{"applied": True}]


@named_query("archive_table_partition")
async def archive_table_partition(session: AsyncSession, params: dict[str, Any]) -> list[dict[str, Any]]:
    if not _ddl_enabled(session):
        logger.info("partition_ddl_skipped action=archive partition=%s", params["partition_name"])
        return [{"applied": False}]
    partition = _quote(session, params["partition_name"])
    await session.execute(
        text(f"ALTER TABLE {_quote(session, params['table_name'])} DETACH PARTITION {partition}")
    )
    await session.execute(
        text(f"ALTER TABLE {partition} SET SCHEMA {_quote(session, params['archive_location'])}")
    )
    return [{"applied": True}]


@named_query("drop_table_partition")
async def drop_table_partition(session: AsyncSession, params: dict[str, Any]) -> list[dict[str, Any]]:
    if not _ddl_enabled(session):
        logger.info("partition_ddl_skipped action=drop partition=%s", params["partition_name"])
        return [{"applied": False}]
    await session.execute(text(f"DROP TABLE IF EXISTS {_quote(session, params['partition_name'])}"))
    return [{"applied": True}]


@named_query("partition_stats")
async def partition_stats(session: AsyncSession, params: dict[str, Any]) -> list[dict[str, Any]]:
    if not _ddl_enabled(session):
        return []
    row = (
        await session.execute(
            text(
                "SELECT pg_total_relation_size(to_regclass(:name)) AS storage_bytes, "
                "(SELECT reltuples FROM pg_class WHERE oid = to_regclass(:name)) AS row_estimate"
            ),
            {"name": params["partition_name"]},
        )
    ).first()
    if row is None:
        return []
    return [
        {
            "storage_bytes": int(row.storage_bytes or 0),
            "row_estimate": int(row.row_estimate or 0),
        }
    ]
