import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from newsreader.store import ArticleStore


class FakeClock:
    """Callable clock for expiry tests: starts at a fixed epoch and only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine, clock):
    store = ArticleStore(engine, clock=clock)
    store.initialize()
    return store
