import asyncio
import contextlib
import logging

from sqlalchemy import event
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from sp_validator.core.config import settings

logger = logging.getLogger(__name__)


class DatabaseFactory:
    def __init__(self, database_url: str = None):
        self.database_url = database_url or settings.DATABASE_URL
        self.engine = self.get_engine()
        self.session_factory = self.get_session_factory()

    def get_engine(self):
        """Create and return a database engine based on configuration."""
        try:
            url = make_url(self.database_url)
            is_sqlite = url.drivername.startswith("sqlite")
            if url.drivername == "sqlite":
                url = url.set(drivername="sqlite+aiosqlite")

            logger.info("Creating async database engine driver=%s database=%s", url.drivername, url.database)
            connect_args = {}
            if is_sqlite:
                connect_args = {"check_same_thread": False, "timeout": 30}
            engine = create_async_engine(
                url,
                echo=getattr(logging, settings.SQL_LOG_LEVEL.upper(), logging.WARNING) <= logging.DEBUG,
                poolclass=NullPool,
                connect_args=connect_args,
            )

            # Enable SQLite PRAGMAs for better concurrency between worker pools.
            if is_sqlite:
                @event.listens_for(engine.sync_engine, "connect")
                def set_sqlite_pragma(dbapi_connection, connection_record):
                    # aiosqlite hands us an adapted connection exposing the DB-API cursor
                    cursor = dbapi_connection.cursor()
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA synchronous=NORMAL")
                    cursor.execute("PRAGMA busy_timeout=5000")
                    cursor.execute("PRAGMA foreign_keys=ON")
                    cursor.close()

            return engine
        except Exception as e:
            logger.error(f"Error creating database engine: {e}")
            raise

    def get_session_factory(self):
        """Create and return a session factory."""
        return sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    async def create_all(self) -> None:
        """Create tables for local development and tests (Alembic owns production schema)."""
        from sp_validator.models import Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


db_factory = DatabaseFactory()


async def get_db():
    """Dependency for getting database session."""
    db = db_factory.session_factory()
    try:
        yield db
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    finally:
        # Swallow cancellation during shutdown/reload and log close issues without raising
        with contextlib.suppress(asyncio.CancelledError):
            try:
                await db.close()
            except Exception as close_error:
                logger.warning(f"Error closing database session: {close_error}")


def get_session_factory():
    """Dependency returning the shared session factory for services that manage their own sessions."""
    return db_factory.session_factory
