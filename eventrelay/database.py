"""
Async SQLAlchemy engines and sessions.

The gateway database holds rules, attempt logs, schedules and checkpoints.
A tenant event table may live in a separate database; each distinct URL gets
one lazily created engine, and all of them are disposed together at shutdown.
expire_on_commit=False everywhere: workers read attributes after commit.
"""
import logging
from typing import AsyncGenerator, Optional
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engines: dict[str, AsyncEngine] = {}
_factories: dict[str, async_sessionmaker] = {}
_primary_url: Optional[str] = None


class Base(DeclarativeBase):
    pass


def _factory_for(url: str, pool_size: int, max_overflow: int) -> async_sessionmaker:
    factory = _factories.get(url)
    if factory is None:
        engine = create_async_engine(url, pool_size=pool_size, max_overflow=max_overflow, pool_pre_ping=True)
        _engines[url] = engine
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        _factories[url] = factory
    return factory


def _get_session_factory() -> async_sessionmaker:
    global _primary_url
    from eventrelay.config import get_settings
    settings = get_settings()
    _primary_url = settings.database_url
    return _factory_for(settings.database_url, settings.database_pool_size, settings.database_max_overflow)


def async_session_factory() -> AsyncSession:
    """New session on the gateway database, for workers outside a request."""
    return _get_session_factory()()


def external_session_factory(database_url: str) -> async_sessionmaker:
    """Session factory for a tenant-owned event database. Read-only use, small pool."""
    if database_url == _primary_url:
        return _get_session_factory()
    return _factory_for(database_url, pool_size=2, max_overflow=2)


async def dispose_engines() -> None:
    for url, engine in list(_engines.items()):
        try:
            await engine.dispose()
        except Exception as e:
            logger.warning("Failed to dispose engine for %s: %s", url.split("@")[-1], str(e))
    _engines.clear()
    _factories.clear()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, committed on success."""
    async with _get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.debug("Request session rolled back: %s", str(e))
            await session.rollback()
            raise
