"""
Pytest configuration and fixtures for the plugin runtime tests
"""

import os
import sys
from collections.abc import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))  # noqa: PTH100, PTH118, PTH119, PTH120

from cms_core.database import Base  # noqa: E402
from cms_core.plugins.registry import PluginRegistry  # noqa: E402
from cms_core.scheduler import TaskScheduler  # noqa: E402
from cms_core.services.plugin_store import InMemoryPluginStore  # noqa: E402
from utils.mocks import FakeJobQueue, RecordingMigrationRunner  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def job_queue() -> FakeJobQueue:
    return FakeJobQueue()


@pytest.fixture
def store() -> InMemoryPluginStore:
    return InMemoryPluginStore()


@pytest.fixture
def migration_runner() -> RecordingMigrationRunner:
    return RecordingMigrationRunner()


@pytest.fixture
def registry(store, job_queue, migration_runner) -> PluginRegistry:
    """Registry wired to in-memory collaborators"""
    return PluginRegistry(
        store=store,
        scheduler=TaskScheduler(job_queue),
        migration_runner=migration_runner,
    )


@pytest.fixture
async def sqlite_engine() -> AsyncGenerator[AsyncEngine, None]:
    """A fresh in-memory database per test, shared by every connection"""
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_factory(sqlite_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory over a database holding the host tables"""
    async with sqlite_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return async_sessionmaker(sqlite_engine, class_=AsyncSession, expire_on_commit=False)
