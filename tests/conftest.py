import os

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

# In-memory DB, no external API keys and no real retry waits for tests
os.environ["OPENAI_API_KEY"] = ""
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["LLM_PROVIDER"] = "auto"
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["INGESTION_RETRY_DELAYS"] = "0,0,0"
os.environ["SUGGESTION_RETRY_DELAYS"] = "0,0,0"

from app.database import close_db, init_db
from app.main import app
from app.services.history import HistoryStore


class SleepRecorder:
    """Stands in for asyncio.sleep and records the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ScriptedOperation:
    """Async callable returning (or raising) scripted results, one per call.

    The last step repeats once the script runs out.
    """

    def __init__(self, *steps) -> None:
        self.steps = list(steps)
        self.calls: list[tuple] = []

    async def __call__(self, *args):
        self.calls.append(args)
        index = min(len(self.calls), len(self.steps)) - 1
        step = self.steps[index]
        if isinstance(step, BaseException):
            raise step
        return step

    @property
    def call_count(self) -> int:
        return len(self.calls)


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def script():
    """Factory for ScriptedOperation instances."""
    return ScriptedOperation


@pytest_asyncio.fixture
async def db():
    """Provide a fresh in-memory database for each test."""
    import app.database as db_mod
    import app.services.history as history_mod
    from app.services.session import sessions

    # Close any existing connection
    if db_mod._db is not None:
        try:
            await db_mod._db.close()
        except Exception:
            pass
    db_mod._db = None
    history_mod._store = None
    sessions.clear()

    # Override module-level config directly (avoids fragile importlib.reload)
    db_mod.DATABASE_PATH = ":memory:"

    await init_db()
    database = await db_mod.get_db()
    yield database
    history_mod._store = None
    sessions.clear()
    await close_db()


@pytest_asyncio.fixture
async def store(db):
    return HistoryStore(db)


@pytest_asyncio.fixture
async def async_client(db):
    """Provide an async httpx client for HTTP tests."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def client(db):
    """Provide a synchronous TestClient for HTTP and WebSocket tests."""
    return TestClient(app)
