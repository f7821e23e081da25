import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, List, Optional

from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..exceptions import PersistenceError
from .models import Base

logger = logging.getLogger(__name__)

_ON_COMMIT = "mesflow_on_commit"


def on_commit(db: AsyncSession, callback: Callable[[], None]) -> None:
    """Run ``callback`` after the enclosing ``Database.transaction()`` commits; dropped on rollback"""
    db.info.setdefault(_ON_COMMIT, []).append(callback)


class Database:
    """Owns the engine and session factory for one process.

    Constructed once at startup and passed to the services that need it.
    """

    def __init__(self, url: str, echo: bool = False, engine: Optional[AsyncEngine] = None):
        self.url = url
        if engine is None:
            kwargs = {"echo": echo, "future": True}
            if not url.startswith("sqlite"):
                kwargs.update(pool_size=5, max_overflow=10, pool_pre_ping=True)
            engine = create_async_engine(url, **kwargs)
        self.engine = engine
        self.is_sqlite = engine.dialect.name == "sqlite"
        if self.is_sqlite:
            _serialize_sqlite_transactions(engine)
        self.session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """Run the enclosed block in a single transaction.

        Commits on success and rolls back on any exception. Operational
        database failures (lock timeouts, serialization failures, lost
        connections) are re-raised as ``PersistenceError``.
        """
        session = self.session_factory()
        callbacks: List[Callable[[], None]] = []
        try:
            yield session
            await session.commit()
            callbacks = session.info.pop(_ON_COMMIT, [])
        except OperationalError as e:
            await session.rollback()
            logger.error(f"Database transaction failed: {e}")
            raise PersistenceError(f"Database transaction failed: {e.orig or e}") from e
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()
        for callback in callbacks:
            callback()

    @asynccontextmanager
    async def read(self) -> AsyncGenerator[AsyncSession, None]:
        """Session for read-only projections; never commits"""
        session = self.session_factory()
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()

    async def create_all(self, drop_first: bool = False) -> None:
        """Create the schema, optionally dropping it first (development only)"""
        async with self.engine.begin() as conn:
            if drop_first:
                logger.warning("Dropping all tables! (DEVELOPMENT ONLY)")
                await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema created")

    async def dispose(self) -> None:
        await self.engine.dispose()


def _serialize_sqlite_transactions(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite's deferred BEGIN lets two check-then-act transactions both read
    before either writes; BEGIN IMMEDIATE serializes them instead.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
