import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from dentalos_marketing import models  # noqa: F401  # register tables on Base.metadata
from dentalos_marketing.db.base import Base
from dentalos_marketing.observability.automation import get_automation_store
from dentalos_marketing.observability.loyalty import get_loyalty_store
from dentalos_marketing.observability.scheduler import get_scheduler_store


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path):
    # Concurrent rule dispatch opens several connections, so use a file database.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'marketing.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture(autouse=True)
def _reset_observability_stores():
    get_automation_store().reset()
    get_loyalty_store().reset()
    get_scheduler_store().reset()
    yield
