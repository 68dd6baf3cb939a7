"""
API fixtures: the real FastAPI app over an aiosqlite file database.

Tables are created through a sync engine on the same file, which tests also
use to seed and inspect rows. Celery ``.delay`` calls are captured instead of
reaching a broker.
"""
from dataclasses import dataclass, field

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import NullPool

from app.core.database import Base, get_db
from app.main import app
from app.routers import sync as sync_router
from app.routers.sync import get_progress_cache
from fakes import FakeAsyncProgressCache, FakeProgressCache


class CapturedTask:
    def __init__(self):
        self.calls: list[tuple] = []

    def delay(self, *args):
        self.calls.append(args)


@dataclass
class Api:
    client: TestClient
    engine: object
    progress: FakeProgressCache
    sync_task: CapturedTask = field(default_factory=CapturedTask)
    webhook_task: CapturedTask = field(default_factory=CapturedTask)

    def session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)


@pytest.fixture
def api(tmp_path, monkeypatch):
    db_path = tmp_path / "api.db"
    engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)

    async_engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    sessions = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with sessions() as session:
            yield session

    progress = FakeProgressCache()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_progress_cache] = lambda: FakeAsyncProgressCache(progress)
    monkeypatch.setattr(app.state.limiter, "enabled", False)
    monkeypatch.setattr(sync_router.limiter, "enabled", False)

    with TestClient(app) as client:
        ctx = Api(client=client, engine=engine, progress=progress)
        monkeypatch.setattr("app.routers.sync.run_sync_job", ctx.sync_task)
        monkeypatch.setattr("app.routers.webhooks.process_webhook_events", ctx.webhook_task)
        yield ctx

    app.dependency_overrides.clear()
    engine.dispose()
