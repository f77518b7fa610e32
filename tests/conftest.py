"""
Test Configuration - Fixtures for the database, service fakes and API client.

Each test gets its own SQLite file so commits made by the code under
test are real and isolated.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from src.infrastructure.database import (
    init_database, close_database, create_tables, get_session_maker
)
from src.sla.interfaces.controllers import get_notifier
from tests.fakes import RecordingNotifier


@pytest.fixture
async def database(tmp_path):
    """Fresh SQLite database with all tables."""
    init_database(f"sqlite+aiosqlite:///{tmp_path / 'sla.db'}")
    await create_tables()
    yield get_session_maker()
    await close_database()


@pytest.fixture
async def session(database):
    async with database() as session:
        yield session


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def client(database, notifier):
    """API client with the notifier replaced by a recorder."""
    from src.main import create_app

    app = create_app()
    app.dependency_overrides[get_notifier] = lambda: notifier

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()

