from __future__ import annotations

from collections import Counter
from contextlib import asynccontextmanager
import copy
import logging
from typing import Any, AsyncIterator, Mapping, Sequence

from franchisecore.core.errors import DatabaseError
from franchisecore.domain.types import PATH_SEPARATOR, ensure_utc, utc_now
from franchisecore.persistence.store import local_lock, primary_key_columns, table_models


logger = logging.getLogger(__name__)


def _in_subtree(path: str, root_path: str) -> bool:
    return path == root_path or path.startswith(root_path + PATH_SEPARATOR)


class InMemoryStore:
    """Dict-backed RecordStore for local demos and tests.

    Named queries mirror the SQL handlers so services behave the same on both
    backends. Physical partition DDL is recorded in ``ddl_log`` instead of run.
    """

    def __init__(self) -> None:
        self._models = table_models()
        self._tables: dict[str, dict[tuple[Any, ...], dict[str, Any]]] = {
            name: {} for name in self._models
        }
        self.ddl_log: list[tuple[str, dict[str, Any]]] = []
        self.named_query_calls: Counter[str] = Counter()

    def _table(self, table: str) -> dict[tuple[Any, ...], dict[str, Any]]:
        rows = self._tables.get(table)
        if rows is None:
            raise DatabaseError(f"Unknown table: {table}")
        return rows

    def _complete(self, table: str, record: Mapping[str, Any]) -> dict[str, Any]:
        # Fill omitted columns the way the ORM defaults would.
        columns = self._models[table].__table__.columns
        unknown = set(record) - {column.key for column in columns}
        if unknown:
            raise DatabaseError(f"Unknown columns for {table}: {sorted(unknown)}")
        row: dict[str, Any] = {}
        for column in columns:
            if column.key in record:
                row[column.key] = copy.deepcopy(record[column.key])
            elif column.default is not None and column.default.is_scalar:
                row[column.key] = column.default.arg
            elif column.server_default is not None:
                row[column.key] = utc_now()
            else:
                row[column.key] = None
        return row

    def _key(self, table: str, row: Mapping[str, Any]) -> tuple[Any, ...]:
        key = tuple(row.get(name) for name in primary_key_columns(table))
        if any(part is None for part in key):
            raise DatabaseError(f"Missing primary key for {table}")
        return key

    async def read(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        projection: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        rows = self._table(table).values()
        matched: list[dict[str, Any]] = []
        for row in rows:
            if not _matches(row, filters or {}):
                continue
            if projection:
                matched.append({name: copy.deepcopy(row.get(name)) for name in projection})
            else:
                matched.append(copy.deepcopy(row))
        return matched

    async def insert(self, table: str, record: Mapping[str, Any]) -> dict[str, Any]:
        rows = self._table(table)
        row = self._complete(table, record)
        key = self._key(table, row)
        if key in rows:
            raise DatabaseError(f"Duplicate primary key for {table}: {key}")
        rows[key] = row
        return copy.deepcopy(row)

    async def upsert(self, table: str, record: Mapping[str, Any]) -> dict[str, Any]:
        rows = self._table(table)
        key = self._key(table, record)
        existing = rows.get(key)
        if existing is None:
            row = self._complete(table, record)
        else:
            row = {**existing, **copy.deepcopy(dict(record))}
        rows[key] = row
        return copy.deepcopy(row)

    async def run_named_query(self, name: str, params: Mapping[str, Any]) -> list[dict[str, Any]]:
        handler = getattr(self, f"_q_{name}", None)
        if handler is None:
            raise DatabaseError(f"Unknown named query: {name}")
        self.named_query_calls[name] += 1
        return handler(dict(params))

    @asynccontextmanager
    async def advisory_lock(self, key: str) -> AsyncIterator[None]:
        async with local_lock(key):
            yield

    @asynccontextmanager
    async def scope(self) -> AsyncIterator["InMemoryStore"]:
        # Serve as its own StoreFactory; every scope shares the same tables.
        yield self

    def _tenant_nodes(self, tenant_id: str) -> list[dict[str, Any]]:
        return [row for row in self._tables["hierarchy_nodes"].values() if row["tenant_id"] == tenant_id]

    def _q_hierarchy_subtree(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        nodes = self._tenant_nodes(params["tenant_id"])
        root_id = params.get("root_id")
        max_depth = params.get("max_depth")
        if root_id:
            root = next((row for row in nodes if row["id"] == root_id), None)
            if root is None:
                return []
            nodes = [row for row in nodes if _in_subtree(row["path"], root["path"])]
            if max_depth is not None:
                nodes = [row for row in nodes if row["level"] <= root["level"] + int(max_depth)]
        elif max_depth is not None:
            nodes = [row for row in nodes if row["level"] <= int(max_depth)]
        nodes.sort(key=lambda row: (row["level"], row["path"]))
        return copy.deepcopy(nodes)

    def _q_hierarchy_ancestors(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        nodes = self._tenant_nodes(params["tenant_id"])
        node = next((row for row in nodes if row["id"] == params["node_id"]), None)
        if node is None:
            return []
        ids = set(node["path"].split(PATH_SEPARATOR))
        chain = [row for row in nodes if row["id"] in ids]
        chain.sort(key=lambda row: row["level"], reverse=True)
        return copy.deepcopy(chain)

    def _q_reparent_subtree(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        old_path = params["old_path"]
        new_path = params["new_path"]
        delta = int(params["level_delta"])
        now = utc_now()
        updated = 0
        for row in self._tenant_nodes(params["tenant_id"]):
            if _in_subtree(row["path"], old_path):
                row["path"] = new_path + row["path"][len(old_path):]
                row["level"] = row["level"] + delta
                row["updated_at"] = now
                updated += 1
            if row["id"] == params["node_id"]:
                row["parent_id"] = params["new_parent_id"]
        return [{"updated": updated}]

    def _q_metric_records(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        start = ensure_utc(params["start"])
        end = ensure_utc(params["end"])
        location_ids = set(params["location_ids"])
        totals: dict[str, float] = {}
        for row in self._tables["metric_records"].values():
            if row["tenant_id"] != params["tenant_id"] or row["metric"] != params["metric"]:
                continue
            if row["location_id"] not in location_ids:
                continue
            if not start <= ensure_utc(row["recorded_at"]) <= end:
                continue
            totals[row["location_id"]] = totals.get(row["location_id"], 0.0) + float(row["value"])
        return [{"location_id": location_id, "value": value} for location_id, value in totals.items()]

    def _record_ddl(self, action: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        self.ddl_log.append((action, dict(params)))
        logger.info("partition_ddl_skipped action=%s partition=%s", action, params.get("partition_name"))
        return [{"applied": False}]

    def _q_create_table_partition(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        return self._record_ddl("create", params)

    def _q_archive_table_partition(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        return self._record_ddl("archive", params)

    def _q_drop_table_partition(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        return self._record_ddl("drop", params)

    def _q_partition_stats(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        _ = params
        return []


def _matches(row: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    for key, expected in filters.items():
        actual = row.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif expected is None:
            if actual is not None:
                return False
        elif actual != expected:
            return False
    return True
