"""
Async SQLAlchemy engine and the shared session factory.

The tracking store opens one short session per guarded UPDATE, so there is no
request-scoped session dependency here. Sessions never expire attributes on
commit: a Message returned from the store is read after its session closes.
"""
import logging
from typing import Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


class Base(DeclarativeBase):
    pass


def engine_options(settings) -> dict:
    """Pool sizing applies to server databases only; SQLite uses a static pool."""
    options = {"echo": settings.app_env == "development"}
    if make_url(settings.database_url).get_backend_name() != "sqlite":
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
        )
    return options


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        from src.config import get_settings
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **engine_options(settings))
        logger.info("Database engine created (%s)", make_url(settings.database_url).get_backend_name())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Process-wide factory handed to SqlMessageStore."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _session_factory


async def dispose_engine() -> None:
    """Close pooled connections on shutdown. Safe to call when never connected."""
    global _engine, _session_factory
    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()
        logger.info("Database engine disposed")
