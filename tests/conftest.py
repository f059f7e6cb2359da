import os
from typing import AsyncGenerator

# Settings are read at import time by libs.db.config; point them at SQLite
# and keep the Redis-backed settings cache out of unit tests.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AUTOMATION_SETTINGS_CACHE_ENABLED", "false")
# Use litellm's bundled model cost map; its offline remote-fetch retry thread
# deadlocks with the import under pytest.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from libs.common.config import Settings, get_settings
from libs.db.base import Base

# Import all models so metadata includes every table
from services.automations_service import models as _automation_models  # noqa: F401

get_settings.cache_clear()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings for evaluator runs: one client at a time, short timeouts."""
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/automations.db",
        AUTOMATION_SETTINGS_CACHE_ENABLED=False,
        DROPOFF_MAX_CONCURRENCY=1,
        DROPOFF_CALL_TIMEOUT_SECONDS=2,
        DROPOFF_RUN_BUDGET_SECONDS=60,
        DROPOFF_CLAIM_TTL_SECONDS=900,
    )


@pytest_asyncio.fixture
async def test_engine(test_settings):
    """
    File-backed SQLite engine, one database per test.
    Evaluator runs open several sessions, so an in-memory database would not do.
    """
    engine = create_async_engine(test_settings.DATABASE_URL, future=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def automations_client(db_session, session_factory) -> AsyncGenerator[AsyncClient, None]:
    """
    Yield an AsyncClient for the automations app with the DB dependencies
    overridden. Auth is left in place; tests override it as needed.
    """
    from libs.db.session import get_async_db, get_session_factory
    from services.automations_service.app.main import app

    app.dependency_overrides[get_async_db] = lambda: db_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
