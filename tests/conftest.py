import pytest

pytest.importorskip("sqlalchemy")

from db import close_db, get_session_factory, init_db, reset_database_state  # noqa: E402
from factories import StubEventBus  # noqa: E402


@pytest.fixture()
async def session_factory(tmp_path, monkeypatch):
    # A file database gives every session its own connection
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'auctions.db'}")
    await reset_database_state()
    await init_db()
    yield get_session_factory()
    await close_db()


@pytest.fixture()
def event_bus() -> StubEventBus:
    return StubEventBus()
