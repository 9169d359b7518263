"""Async test fixtures for the CRM mirror using SQLite and a mocked HubSpot API."""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crm_mirror.config import MirrorSettings
from crm_mirror.database import build_engine, create_tables, get_db
from crm_mirror.sync.progress import ProgressReporter
from crm_mirror.sync.store import MirrorStore
from crm_mirror.sync.sync_engine import SyncOrchestrator
from crm_mirror.tests.hubspot_fakes import FakeHubSpot, SleepRecorder


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'mirror.db'}")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def store(session_factory):
    return MirrorStore(session_factory)


@pytest.fixture
def hubspot():
    return FakeHubSpot()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def mirror_settings():
    return MirrorSettings(database_url="sqlite+aiosqlite:///:memory:")


@pytest_asyncio.fixture
async def orchestrator(store, hubspot, sleeper, mirror_settings):
    return SyncOrchestrator(
        store,
        client_factory=hubspot.client_factory,
        config=mirror_settings,
        sleep=sleeper,
    )


@pytest_asyncio.fixture
async def client(session_factory, store, orchestrator):
    """HTTPX async test client against the mirror app."""
    from crm_mirror.app import app
    from crm_mirror.deps import get_orchestrator, get_reporter

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_reporter] = lambda: ProgressReporter(store)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
