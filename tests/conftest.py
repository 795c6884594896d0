import pytest

from batchkeeper.clock import ManualClock
from batchkeeper.config import Settings
from batchkeeper.db.session import Database
from batchkeeper.providers.mock import MockProvider
from batchkeeper.scheduler import build_scheduler
from tests.mocks.store import START


@pytest.fixture(autouse=True)
def test_set_env(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.delenv("BATCHKEEPER_MOCK_MODE", raising=False)
    monkeypatch.delenv("BATCHKEEPER_DATABASE_URL", raising=False)


@pytest.fixture
def database():
    database = Database("sqlite://")
    database.init_db()
    yield database
    database.destroy_db()
    database.dispose()


@pytest.fixture
def db(database):
    with database.session() as session:
        yield session


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def no_sleep(sleeps):
    async def sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return sleep


@pytest.fixture
def mock_provider(clock) -> MockProvider:
    return MockProvider(clock=clock)


@pytest.fixture
def settings() -> Settings:
    return Settings(mock_mode=True)


@pytest.fixture
def scheduler(settings, database, mock_provider, clock, no_sleep):
    return build_scheduler(
        settings,
        database=database,
        provider=mock_provider,
        clock=clock,
        sleep=no_sleep,
    )
