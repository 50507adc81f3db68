"""
Database engine and session factories (SQLAlchemy async).

The ETL processes, the CLI and the status API all build their sessions from
the factories here. Engines are created lazily so importing a module never
opens a connection.
"""

from typing import Any, AsyncGenerator, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
from core.config import settings
from core.exceptions import (
    DatabaseConnectionError,
    DatabaseError,
    DeadlockError,
    ETLException,
    UpsertError,
)
import logging

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker] = None


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create a new async engine for the given URL (defaults to settings)."""
    return create_async_engine(
        database_url or settings.DATABASE_URL,
        echo=settings.ENVIRONMENT == "development",
        poolclass=NullPool,
        future=True,
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory used by every component that touches the store."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


def get_session_maker() -> async_sessionmaker:
    global _session_maker
    if _session_maker is None:
        _session_maker = create_session_maker(get_engine())
    return _session_maker


async def dispose_engine() -> None:
    """Dispose the shared engine (end of CLI command / app shutdown)."""
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        logger.debug("Database engine disposed")
    _engine = None
    _session_maker = None


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session"""
    async with get_session_maker()() as session:
        yield session


# Driver messages that indicate a retryable lock conflict
DEADLOCK_MARKERS = (
    "deadlock",
    "lock wait timeout",
    "could not serialize access",
    "database is locked",
)


def dialect_insert(session: AsyncSession, table):
    """INSERT construct with ON CONFLICT support for the session's backend."""
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise DatabaseError(
        f"Unsupported database dialect for conditional writes: {dialect}",
        context={"dialect": dialect},
    )


def is_deadlock(error: DBAPIError) -> bool:
    message = str(error.orig if error.orig is not None else error).lower()
    return any(marker in message for marker in DEADLOCK_MARKERS)


def translate_db_error(error: DBAPIError, table_name: str, **context: Any) -> ETLException:
    """
    Map a driver error raised by a bulk write onto the load error hierarchy.

    Deadlocks and lost connections become retryable errors; anything else is
    an UpsertError.
    """
    context = {"table_name": table_name, **context}
    if error.connection_invalidated:
        return DatabaseConnectionError(
            f"Connection lost while writing {table_name}",
            context=context,
            original_exception=error,
        )
    if is_deadlock(error):
        return DeadlockError(
            f"Lock conflict while writing {table_name}",
            context=context,
            original_exception=error,
        )
    return UpsertError(
        f"Write to {table_name} failed",
        context=context,
        original_exception=error,
    )
