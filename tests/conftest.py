# tests/conftest.py

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio

from app.auth.session import SessionProvider
from app.core.config import Settings
from app.database import create_db_and_tables, create_engine, create_session_factory
from app.models import Session, get_utc_now
from app.realtime.feed import InMemoryChangeFeed
from app.store.task_store import TaskStore

from .fakes import FakeTaskStore


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings isolated from any local .env, with a throwaway SQLite file."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'todos.sqlite3'}",
        realtime_backend="memory",
        realtime_backoff_initial=0.01,
        realtime_backoff_max=0.05,
        jwt_secret="test-secret",
        bcrypt_rounds=4,
    )


@pytest.fixture()
def feed() -> InMemoryChangeFeed:
    return InMemoryChangeFeed()


@pytest.fixture()
def fake_store(feed: InMemoryChangeFeed) -> FakeTaskStore:
    return FakeTaskStore(feed)


@pytest.fixture()
def session() -> Session:
    return Session(
        user_id="u1",
        email="u1@example.com",
        token="token-u1",
        expires_at=get_utc_now() + timedelta(hours=1),
    )


@pytest_asyncio.fixture()
async def session_factory(settings: Settings):
    engine = create_engine(settings.database_url)
    await create_db_and_tables(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture()
async def task_store(session_factory, feed: InMemoryChangeFeed) -> TaskStore:
    return TaskStore(session_factory, feed)


@pytest_asyncio.fixture()
async def sessions(session_factory) -> SessionProvider:
    return SessionProvider(session_factory, secret="test-secret", bcrypt_rounds=4)
