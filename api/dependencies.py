"""
FastAPI dependencies
"""

from sqlalchemy.ext.asyncio import async_sessionmaker
from core.database import get_session_maker


def get_db() -> async_sessionmaker:
    """Session factory for route handlers (overridden in tests)"""
    return get_session_maker()
