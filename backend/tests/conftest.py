import os
import sys
import tempfile
from pathlib import Path
from typing import Generator, List

sys.path.insert(0, str(Path(__file__).parent.parent))

# Must be set before any observa module reads settings.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="observa-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/observa.db")
os.environ.setdefault("EVENT_STORE_BACKEND", "memory")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("ENABLE_FILE_LOGGING", "false")
os.environ.setdefault("RUN_TASKS_INLINE", "true")

import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from observa.core.config import Settings, get_settings
from observa.core.database import init_models
from observa.repositories.event_store import InMemoryEventStore, get_event_store


@pytest.fixture
def app_settings() -> Settings:
    return Settings(
        event_store_backend="memory",
        analysis_backoff_base_seconds=2.0,
        analysis_max_attempts=3,
        escalation_timeout_seconds=1.0,
    )


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def session_factory(tmp_path: Path) -> Generator[async_sessionmaker, None, None]:
    # NullPool: every asyncio.run() loop gets its own connection.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'control_plane.db'}", poolclass=NullPool)
    asyncio.run(init_models(engine))
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    asyncio.run(engine.dispose())


@pytest.fixture
def dispatched() -> List[str]:
    return []


@pytest.fixture
def client(event_store, session_factory, dispatched) -> Generator[TestClient, None, None]:
    from observa.api import dependencies
    from observa.core.database import get_db
    from observa.main import create_app
    from observa.services.escalation_scheduler import EscalationScheduler

    async def override_db():
        async with session_factory() as session:
            yield session

    app = create_app()
    app.dependency_overrides[dependencies.get_store] = lambda: event_store
    app.dependency_overrides[dependencies.get_session_factory] = lambda: session_factory
    app.dependency_overrides[dependencies.get_cache_service] = lambda: None
    app.dependency_overrides[dependencies.get_escalation_scheduler] = lambda: EscalationScheduler(
        session_factory, dispatched.append, get_settings()
    )
    app.dependency_overrides[get_db] = override_db

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_cached_services():
    get_event_store.cache_clear()
    yield
    get_event_store.cache_clear()
