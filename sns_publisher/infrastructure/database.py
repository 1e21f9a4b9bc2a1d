# sns_publisher/infrastructure/database.py
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

# register tables on SQLModel.metadata
from sns_publisher.models import connection, content, job, oauth_state, publish_log  # noqa: F401

logger = structlog.get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[sessionmaker] = None


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def configure_engine(database_url: str, **kwargs) -> AsyncEngine:
    global _engine, _session_factory
    _engine = create_async_engine(database_url, echo=False, **kwargs)
    _session_factory = make_session_factory(_engine)
    return _engine


def get_session_factory() -> sessionmaker:
    if _session_factory is None:
        raise RuntimeError("database engine is not configured")
    return _session_factory


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    engine = engine or _engine
    if engine is None:
        raise RuntimeError("database engine is not configured")
    async with engine.begin() as connection:
        await connection.run_sync(SQLModel.metadata.create_all)
    logger.info("db_tables_ready")


async def dispose_engine() -> None:
    if _engine is not None:
        await _engine.dispose()


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with get_session_factory()() as session:
        yield session
