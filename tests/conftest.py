"""Shared pytest fixtures for storage-server tests."""

from __future__ import annotations

import base64
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storage_server.app import create_app
from storage_server.config import Settings
from storage_server.db import create_engine, create_session_factory, init_db
from storage_server.locks import KeyedLocks
from storage_server.schemas import IngestRequest
from storage_server.services import IngestService, RetentionSweeper, RetrievalService
from storage_server.store import ContentStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

# 2026-01-01T00:00:00Z
START_MS = 1_767_225_600_000


class FakeClock:
    """Settable epoch-millisecond clock."""

    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


MakeSettings = Callable[..., Settings]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_settings(tmp_path: Path) -> MakeSettings:
    """Factory for isolated settings: per-test SQLite file and storage dir."""

    def _make(**overrides) -> Settings:
        values = {
            "database_url": f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
            "storage_path": tmp_path / "storage",
            "sweeper_enabled": False,
            "token": None,
            "rate_limit": None,
            "inactivity_days": None,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def test_settings(make_settings: MakeSettings) -> Settings:
    return make_settings()


@pytest.fixture
async def test_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Engine on a fresh SQLite database with the schema applied."""
    engine = create_engine(test_settings.database_url, echo=False)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(test_engine)


@pytest.fixture
def store(test_settings: Settings) -> ContentStore:
    store = ContentStore(test_settings.storage_path)
    store.ensure_root()
    return store


@pytest.fixture
def locks() -> KeyedLocks:
    return KeyedLocks()


@pytest.fixture
def ingest_service(session_factory, store, test_settings, clock, locks) -> IngestService:
    return IngestService(session_factory, store, test_settings, clock=clock, locks=locks)


@pytest.fixture
def retrieval_service(session_factory, store, test_settings, clock, locks) -> RetrievalService:
    return RetrievalService(session_factory, store, test_settings, clock=clock, locks=locks)


@pytest.fixture
def sweeper(session_factory, store, test_settings, clock, locks) -> RetentionSweeper:
    return RetentionSweeper(session_factory, store, test_settings, clock=clock, locks=locks)


@pytest.fixture
async def client(test_settings, test_engine, store, clock) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to an app sharing the test engine and clock."""
    app = create_app(test_settings, engine=test_engine, clock=clock, configure_logs=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def upload_request(data: bytes, **kwargs) -> IngestRequest:
    return IngestRequest(file=b64(data), **kwargs)
