import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from services.site_audit.config import settings
from services.site_audit.db import session as db_session
from services.site_audit.db.models import Base


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    monkeypatch.setattr(settings, "crawl_delay_s", 0)
    monkeypatch.setattr(settings, "summary_service_url", None)


@pytest_asyncio.fixture
async def engine(monkeypatch):
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    monkeypatch.setattr(db_session, "_engine", engine)
    monkeypatch.setattr(
        db_session,
        "_sessionmaker",
        async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession),
    )
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):
    async with db_session.get_session() as s:
        yield s
