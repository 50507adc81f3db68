"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from core.database import create_session_maker
from ingestion.chunking import ChunkScheduler
from ingestion.extractors.chain_extractor import ChainExtractStage
from ingestion.lock_manager import LockManager
from ingestion.progress import ProgressTracker
from ingestion.retry import LinearBackoff, RetryPolicy
from ingestion.runner import BatchRunner
from models.base import Base
from tests.fakes import FakeChainClient


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed SQLite engine so separate sessions really contend for writes"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'etl_test.db'}",
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine):
    return create_session_maker(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def fast_transactions():
    """Transaction retry policy without real backoff"""
    return RetryPolicy(max_attempts=3, delay=LinearBackoff(0.0), name="transaction")


@pytest.fixture
def progress(session_maker, tmp_path, fast_transactions):
    return ProgressTracker(
        session_maker,
        fallback_dir=str(tmp_path / "fallback"),
        retry_policy=fast_transactions,
    )


@pytest.fixture
def chain_client():
    return FakeChainClient(head=20)


@pytest.fixture
def extract_stage(chain_client):
    return ChainExtractStage(chain_client, chain="testchain", lock_key="extract_test_lock")


@pytest.fixture
def make_runner(session_maker, progress, fast_transactions):
    """Build a BatchRunner around a stage with test-friendly collaborators"""

    def factory(stage, available_workers: int = 4, **kwargs) -> BatchRunner:
        kwargs.setdefault("lock_manager", LockManager(session_maker, lease_ms=60_000))
        kwargs.setdefault("progress", progress)
        kwargs.setdefault("chunk_scheduler", ChunkScheduler(unit_timeout=2.0))
        kwargs.setdefault("transaction_policy", fast_transactions)
        return BatchRunner(
            stage,
            session_maker,
            available_workers=available_workers,
            **kwargs,
        )

    return factory
