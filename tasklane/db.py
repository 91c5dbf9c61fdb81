from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

import os
import logging

from . import config

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./tasklane.db")


def _is_sqlite(url: str | None) -> bool:
    return bool(url) and url.startswith('sqlite')


def _connect_args(url: str | None) -> dict:
    # Writers in different scopes may overlap; make SQLite wait for the
    # write lock instead of raising "database is locked" immediately.
    if _is_sqlite(url):
        return {'timeout': config.SQLITE_BUSY_TIMEOUT}
    return {}


# Use NullPool to avoid connection-pool objects being bound to a specific
# event loop (which can cause 'bound to a different event loop' errors
# during heavy concurrency in tests).
engine = create_async_engine(
    DATABASE_URL,
    echo=False,
    future=True,
    poolclass=NullPool,
    connect_args=_connect_args(DATABASE_URL),
)

async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    # import models so their tables are registered on SQLModel.metadata
    from . import models  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info('database initialized at %s', DATABASE_URL)


async def run_in_transaction(fn, *args, **kwargs):
    """Run ``fn(session, *args, **kwargs)`` inside a single transaction.

    The transaction commits when ``fn`` returns and rolls back when it
    raises; the exception propagates unchanged. Objects returned by ``fn``
    stay usable after commit because the session factory does not expire
    them.
    """
    async with async_session() as sess:
        async with sess.begin():
            return await fn(sess, *args, **kwargs)
