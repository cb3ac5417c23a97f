import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from keypool_app.db_models import Base
from keypool_library import DailyClock, KeyPoolEngine


class SettableNow:
    """Callable clock source tests can move forward."""

    def __init__(self, value: datetime):
        self.value = value

    def __call__(self) -> datetime:
        return self.value


@pytest.fixture
def now() -> SettableNow:
    return SettableNow(datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def clock(now: SettableNow) -> DailyClock:
    return DailyClock("UTC", now=now)


@pytest.fixture
def engine(clock: DailyClock) -> KeyPoolEngine:
    return KeyPoolEngine(clock=clock)


@pytest_asyncio.fixture
async def session_maker() -> async_sessionmaker:
    db_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(db_engine, expire_on_commit=False)
    try:
        yield maker
    finally:
        await db_engine.dispose()
