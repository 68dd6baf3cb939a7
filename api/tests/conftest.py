"""
Shared fixtures.

Engine tests run against an in-memory SQLite database through a plain sync
Session (the same Session type the Celery tasks use); the remote ledger API is
served by ``fakes.FakeLedger`` through a mounted requests adapter.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.models import ledger, sync_job  # noqa: F401
from app.services.progress import SyncJobTracker
from app.services.remote_client import RemoteClient
from app.services.store import LedgerStore
from fakes import BASE_URL, FakeDedup, FakeLedger, FakeProgressCache


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture
def store(session) -> LedgerStore:
    return LedgerStore(session)


@pytest.fixture
def remote() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def sleeps() -> list[float]:
    """Every backoff delay the client asked for, in order."""
    return []


@pytest.fixture
def client(remote, sleeps):
    with RemoteClient(
        BASE_URL,
        "tenant-1",
        "test-token",
        max_attempts=3,
        backoff_base=1.0,
        adapter=remote.adapter(),
        sleep=sleeps.append,
    ) as client:
        yield client


@pytest.fixture
def progress_cache() -> FakeProgressCache:
    return FakeProgressCache()


@pytest.fixture
def tracker(store, progress_cache) -> SyncJobTracker:
    return SyncJobTracker(store, progress_cache, ttl_seconds=3600, linger_seconds=300)


@pytest.fixture
def dedup() -> FakeDedup:
    return FakeDedup()
