from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from runnernotify.core.config import Settings, get_settings
from runnernotify.persistence.db import build_sessionmaker, create_all


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch: pytest.MonkeyPatch):
    # Settings are cached process-wide; tests that tweak env vars need a clean read.
    monkeypatch.setenv("ENVIRONMENT", "dev")
    monkeypatch.setenv("NOTIFICATIONS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def db_engine(tmp_path):
    # One SQLite file per test keeps rows from leaking between cases.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'notify.db'}")
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_sessionmaker(db_engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    return Settings(environment="dev", notifications_enabled=True)
