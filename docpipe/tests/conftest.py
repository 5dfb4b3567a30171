from __future__ import annotations

import pytest

from docpipe.core.config import get_settings
from docpipe.persistence.db import build_engine, build_session_factory, create_schema
from docpipe.services.queue import InMemoryQueueBackend, JobQueue
from docpipe.services.rate_limit import reset_rate_limiter_state
from docpipe.services.store import reset_store_state
from docpipe.tests.utils.clock import FakeClock


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch) -> None:
    # Keep every test on in-process stores and fresh cached settings.
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("LOG_JSON", "false")
    get_settings.cache_clear()
    reset_rate_limiter_state()
    reset_store_state()
    yield
    get_settings.cache_clear()
    reset_rate_limiter_state()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(clock: FakeClock) -> JobQueue:
    return JobQueue(InMemoryQueueBackend(), settings=get_settings(), time_provider=clock)


@pytest.fixture
async def session_factory(tmp_path):
    # File-backed SQLite so every session in a test sees the same schema and rows.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'docpipe.db'}")
    await create_schema(engine)
    yield build_session_factory(engine)
    await engine.dispose()
