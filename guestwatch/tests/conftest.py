"""Shared fixtures: SQLite-backed sessions and an API client."""

from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine

from guestwatch.config import get_settings
from guestwatch.database import build_session_factory, get_db, get_session_factory
from guestwatch.dependencies import (
    get_code_sender,
    get_dispatcher,
    get_durable_store,
    get_geo_service,
)
from guestwatch.main import app
from guestwatch.models.database import Base, Guest
from guestwatch.services.best_effort import BestEffortDispatcher
from guestwatch.services.fingerprint import DeviceEnvironment
from guestwatch.services.kv_store import MemoryKeyValueStore
from guestwatch.services.network_enrichment import GeoLookupService
from guestwatch.tests.fakes import ADMIN_TOKEN, TEST_SALT, RecordingCodeSender


@pytest.fixture(autouse=True)
def settings_env(monkeypatch):
    monkeypatch.setenv("ADMIN_TOKEN", ADMIN_TOKEN)
    monkeypatch.setenv("IP_HASH_SALT", TEST_SALT)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def device_environment() -> DeviceEnvironment:
    return DeviceEnvironment(
        user_agent="Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0",
        screen_width=1920,
        screen_height=1080,
        color_depth=24,
        timezone="Europe/Berlin",
        language="de-DE",
        platform="Linux x86_64",
        touch_support=False,
        device_memory=8,
        hardware_concurrency=4,
    )


@pytest.fixture
def device_info() -> dict[str, Any]:
    return {
        "userAgent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0",
        "screen": "1920x1080x24",
        "timezone": "Europe/Berlin",
        "language": "de-DE",
        "platform": "Linux x86_64",
        "colorDepth": 24,
        "touchSupport": False,
        "deviceMemory": 8,
        "hardwareConcurrency": 4,
    }


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'guestwatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def make_guest(db_session):
    """Insert a guest row directly."""
    counter = {"n": 0}

    async def _make(**values: Any) -> Guest:
        counter["n"] += 1
        values.setdefault("fingerprint", f"{counter['n']:08x}")
        values.setdefault("flags", ["new"])
        guest = Guest(**values)
        db_session.add(guest)
        await db_session.commit()
        await db_session.refresh(guest)
        return guest

    return _make


@pytest.fixture
def dispatcher() -> BestEffortDispatcher:
    return BestEffortDispatcher()


@pytest.fixture
def durable_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def geo_service() -> GeoLookupService:
    return GeoLookupService(salt=TEST_SALT, base_url="http://geo.test/json", timeout=1.0)


@pytest.fixture
def code_sender() -> RecordingCodeSender:
    return RecordingCodeSender()


@pytest_asyncio.fixture
async def client(session_factory, dispatcher, durable_store, geo_service, code_sender):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_geo_service] = lambda: geo_service
    app.dependency_overrides[get_durable_store] = lambda: durable_store
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_code_sender] = lambda: code_sender

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac

    await dispatcher.drain(timeout=5)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}
