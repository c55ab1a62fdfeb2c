import pytest
from unittest.mock import AsyncMock

import httpx

from marketplace.database import create_engine, create_session_factory, init_db
from marketplace.dependencies import get_notifier, get_storage
from marketplace.main import app
from marketplace.seeder import seed
from marketplace.storage import StorageAdapter


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def storage(session_factory):
    return StorageAdapter(session_factory, retry_backoff=0)


@pytest.fixture
async def seeded(storage):
    await seed(storage)
    return storage


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
async def client(seeded, notifier):
    app.dependency_overrides[get_storage] = lambda: seeded
    app.dependency_overrides[get_notifier] = lambda: notifier
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
