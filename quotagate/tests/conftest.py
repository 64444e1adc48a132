from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before quotagate.persistence.db is imported.
_DB_DIR = tempfile.mkdtemp(prefix="quotagate-tests-")
_DB_PATH = os.path.join(_DB_DIR, "quotagate.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["SHARED_TOKEN"] = "test-shared-token"
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)

import pytest
from sqlalchemy import create_engine, delete
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from quotagate.core.config import get_settings
from quotagate.domain.models import Base
from quotagate.services.billing_webhook import reset_entitlement_updater
from quotagate.services.quota import reset_quota_gate
from quotagate.services.telemetry import reset_telemetry


SHARED_TOKEN = "test-shared-token"

_sync_engine = create_engine(f"sqlite:///{_DB_PATH}")
Base.metadata.create_all(_sync_engine)


@pytest.fixture(autouse=True)
def clean_database() -> None:
    # Every test starts from empty tables; the schema is created once per session.
    with _sync_engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(delete(table))
    yield


@pytest.fixture(autouse=True)
def reset_services() -> None:
    # Clear cached settings and singletons so env overrides do not leak between tests.
    yield
    get_settings.cache_clear()
    reset_quota_gate()
    reset_entitlement_updater()
    reset_telemetry()


@pytest.fixture
def session_factory():
    from quotagate.persistence.db import SessionLocal

    return SessionLocal


@pytest.fixture
async def broken_session_factory():
    # A database path that cannot be opened makes every connection attempt fail.
    engine = create_async_engine("sqlite+aiosqlite:////nonexistent-quotagate-dir/quotagate.db")
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"X-Quotagate-Token": SHARED_TOKEN}


def pytest_sessionfinish(session, exitstatus) -> None:
    _sync_engine.dispose()
