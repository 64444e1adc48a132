from __future__ import annotations

from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from quotagate.core.config import get_settings


settings = get_settings()
_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
# Postgres gets a bounded asyncpg pool; sqlite (tests, local runs) opens a connection per session.
if settings.database_url.startswith("sqlite"):
    # SQLite serializes writers; wait on locks instead of failing concurrent upserts.
    _engine_kwargs["poolclass"] = NullPool
    _engine_kwargs["connect_args"] = {"timeout": 30}
else:
    _engine_kwargs["pool_size"] = max(1, int(settings.api_db_pool_size))
    _engine_kwargs["max_overflow"] = max(0, int(settings.api_db_max_overflow))
    _engine_kwargs["pool_timeout"] = 30
    _engine_kwargs["pool_recycle"] = 1800
    if settings.api_db_statement_timeout_ms > 0:
        _engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
engine = create_async_engine(settings.database_url, **_engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

if engine.dialect.name == "sqlite":
    # Take the write lock at BEGIN; a read-then-write upgrade would fail fast instead of waiting.
    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_disable_implicit_begin(dbapi_connection, _connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _sqlite_begin_immediate(connection) -> None:
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def pool_stats() -> dict[str, int | None]:
    # NullPool (sqlite) exposes none of these counters.
    pool = engine.sync_engine.pool
    stats: dict[str, int | None] = {}
    for key, attr in (("size", "size"), ("checked_out", "checkedout"), ("checked_in", "checkedin"), ("overflow", "overflow")):
        reader = getattr(pool, attr, None)
        stats[key] = int(reader()) if callable(reader) else None
    return stats
