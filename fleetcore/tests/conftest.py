from __future__ import annotations

from typing import AsyncIterator, Iterator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fleetcore.core.config import get_settings
from fleetcore.domain.models import Base
from fleetcore.tests.utils.queue import RecordingQueue


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Iterator[None]:
    # Settings are cached per process; tests that monkeypatch env must see fresh values.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session_factory(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    # File-backed sqlite so every session in a test sees the same committed rows.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fleetcore.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def session(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as db:
        yield db


@pytest.fixture
def queue() -> RecordingQueue:
    return RecordingQueue()
