from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.core.errors import UnsupportedDialectError


def dialect_insert(session: AsyncSession, model: Any) -> Any:
    # Pick the dialect insert that supports ON CONFLICT for the bound engine.
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise UnsupportedDialectError(f"upsert not supported for dialect {dialect}")
