from __future__ import annotations

from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from dentalos_marketing.core.settings import settings

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]

engine = create_async_engine(settings.database_url, future=True, pool_pre_ping=True)

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def open_session(session_factory: SessionFactory) -> AsyncSession:
    """Resolve a factory that may return a session or an awaitable of one."""

    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


__all__ = ["SessionFactory", "async_session", "engine", "open_session"]
