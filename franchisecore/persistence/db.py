from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from franchisecore.core.config import get_settings
from franchisecore.persistence.store import sql_store_factory


def engine_options(database_url: str) -> dict[str, Any]:
    """Pool settings for ``database_url``.

    SQLite keeps driver defaults. PostgreSQL gets a bounded asyncpg pool and,
    when configured, a server-side statement timeout so slow rollups cannot
    hold connections indefinitely.
    """
    options: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        return options
    settings = get_settings()
    options.update(
        pool_size=max(1, int(settings.api_db_pool_size)),
        max_overflow=max(0, int(settings.api_db_max_overflow)),
        pool_timeout=30,
        pool_recycle=1800,
    )
    if settings.api_db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
    return options


def build_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, **engine_options(database_url))


engine = build_engine(get_settings().database_url)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

# Each concurrent unit of work opens its own session through this scope.
sql_store_scope = sql_store_factory(SessionLocal)


def pool_stats(target: AsyncEngine | None = None) -> dict[str, int | None]:
    pool = (target or engine).sync_engine.pool
    stats: dict[str, int | None] = {}
    for key, attr in (
        ("size", "size"),
        ("checked_out", "checkedout"),
        ("checked_in", "checkedin"),
        ("overflow", "overflow"),
    ):
        # Not every pool class reports every counter.
        counter = getattr(pool, attr, None)
        stats[key] = int(counter()) if callable(counter) else None
    return stats
