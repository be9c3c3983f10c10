from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Mapping, Protocol, Sequence

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from franchisecore.core.errors import DatabaseError
from franchisecore.domain.models import Base
from franchisecore.persistence.named_queries import NAMED_QUERIES


logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    # Generic persistence boundary consumed by every service.
    async def read(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        projection: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]: ...

    async def insert(self, table: str, record: Mapping[str, Any]) -> dict[str, Any]: ...

    async def upsert(self, table: str, record: Mapping[str, Any]) -> dict[str, Any]: ...

    async def run_named_query(self, name: str, params: Mapping[str, Any]) -> list[dict[str, Any]]: ...

    def advisory_lock(self, key: str) -> AsyncContextManager[None]: ...


StoreFactory = Callable[[], AsyncContextManager[RecordStore]]


def table_models() -> dict[str, type[Base]]:
    return {mapper.class_.__tablename__: mapper.class_ for mapper in Base.registry.mappers}


def primary_key_columns(table: str) -> tuple[str, ...]:
    model = table_models().get(table)
    if model is None:
        raise DatabaseError(f"Unknown table: {table}")
    return tuple(column.key for column in model.__table__.primary_key.columns)


def normalize_row(row: Mapping[str, Any]) -> dict[str, Any]:
    # SQLite drops tzinfo on DateTime(timezone=True); treat stored values as UTC.
    normalized: dict[str, Any] = {}
    for key, value in row.items():
        if isinstance(value, datetime) and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        normalized[key] = value
    return normalized


_local_locks: dict[tuple[int, str], asyncio.Lock] = {}


@asynccontextmanager
async def local_lock(key: str) -> AsyncIterator[None]:
    # Process-local fallback for stores without advisory locks; keyed per event loop.
    loop_key = (id(asyncio.get_running_loop()), key)
    lock = _local_locks.get(loop_key)
    if lock is None:
        lock = _local_locks.setdefault(loop_key, asyncio.Lock())
    async with lock:
        yield


class SqlRecordStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._models = table_models()

    @property
    def session(self) -> AsyncSession:
        return self._session

    @property
    def dialect_name(self) -> str:
        bind = self._session.bind
        return bind.dialect.name if bind is not None else ""

    def _model(self, table: str) -> type[Base]:
        model = self._models.get(table)
        if model is None:
            raise DatabaseError(f"Unknown table: {table}")
        return model

    def _column(self, model: type[Base], name: str):
        column = model.__table__.columns.get(name)
        if column is None:
            raise DatabaseError(f"Unknown column {model.__tablename__}.{name}")
        return column

    def _row_from_instance(self, model: type[Base], instance: Base) -> dict[str, Any]:
        return normalize_row({column.key: getattr(instance, column.key) for column in model.__table__.columns})

    async def read(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        projection: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        model = self._model(table)
        if projection:
            columns = [self._column(model, name) for name in projection]
        else:
            columns = list(model.__table__.columns)
        stmt = select(*columns)
        for key, value in (filters or {}).items():
            column = self._column(model, key)
            if isinstance(value, (list, tuple, set, frozenset)):
                stmt = stmt.where(column.in_(list(value)))
            elif value is None:
                stmt = stmt.where(column.is_(None))
            else:
                stmt = stmt.where(column == value)
        try:
            result = await self._session.execute(stmt)
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.warning("store_read_failed table=%s", table, exc_info=exc)
            raise DatabaseError(f"Read failed for {table}") from exc
        return [normalize_row(row._mapping) for row in result]

    async def insert(self, table: str, record: Mapping[str, Any]) -> dict[str, Any]:
        model = self._model(table)
        instance = model(**dict(record))
        try:
            self._session.add(instance)
            await self._session.flush()
            # Load server defaults before commit so callers see the stored row.
            await self._session.refresh(instance)
            stored = self._row_from_instance(model, instance)
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.warning("store_insert_failed table=%s", table, exc_info=exc)
            raise DatabaseError(f"Insert failed for {table}") from exc
        return stored

    async def upsert(self, table: str, record: Mapping[str, Any]) -> dict[str, Any]:
        model = self._model(table)
        try:
            instance = await self._session.merge(model(**dict(record)))
            await self._session.flush()
            await self._session.refresh(instance)
            stored = self._row_from_instance(model, instance)
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.warning("store_upsert_failed table=%s", table, exc_info=exc)
            raise DatabaseError(f"Upsert failed for {table}") from exc
        return stored

    async def run_named_query(self, name: str, params: Mapping[str, Any]) -> list[dict[str, Any]]:
        handler = NAMED_QUERIES.get(name)
        if handler is None:
            raise DatabaseError(f"Unknown named query: {name}")
        try:
            rows = await handler(self._session, dict(params))
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.warning("store_named_query_failed name=%s", name, exc_info=exc)
            raise DatabaseError(f"Named query failed: {name}") from exc
        return [normalize_row(row) for row in rows]

    @asynccontextmanager
    async def advisory_lock(self, key: str) -> AsyncIterator[None]:
        # Session-level advisory lock on a dedicated connection so commits do not release it.
        if self.dialect_name != "postgresql":
            async with local_lock(key):
                yield
            return
        engine = self._session.bind
        async with engine.connect() as conn:
            await conn.execute(text("SELECT pg_advisory_lock(hashtext(:key))"), {"key": key})
            try:
                yield
            finally:
                await conn.execute(text("SELECT pg_advisory_unlock(hashtext(:key))"), {"key": key})


def sql_store_factory(sessionmaker: async_sessionmaker[AsyncSession]) -> StoreFactory:
    # Build a scope factory for callers that need one session per concurrent task.
    @asynccontextmanager
    async def _scope() -> AsyncIterator[SqlRecordStore]:
        async with sessionmaker() as session:
            yield SqlRecordStore(session)

    return _scope
