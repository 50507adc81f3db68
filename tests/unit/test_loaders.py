"""
Unit tests for idempotent block and activity loading
"""

from datetime import date, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from core.database import dialect_insert
from core.exceptions import DatabaseConnectionError, DatabaseError, DeadlockError, UpsertError
from ingestion.loaders.postgres_loader import ActivityLoader, BlockLoader
from ingestion.retry import Classification, classify_error
from models.chain_activity import FactChainDailyActivity
from models.raw_block import RawBlock


def block_row(number, **overrides):
    row = {
        "chain": "acala",
        "number": number,
        "block_hash": f"0x{number:064x}",
        "parent_hash": None,
        "timestamp": datetime(2024, 1, 15, 0, 0, number),
        "extrinsic_count": 2,
        "extrinsics": ["0x01", "0x02"],
    }
    row.update(overrides)
    return row


@pytest.mark.asyncio
async def test_block_loader_skips_existing_blocks(session_maker):
    async with session_maker() as session:
        async with session.begin():
            assert await BlockLoader(session).load([block_row(1), block_row(2)]) == 2
        async with session.begin():
            await BlockLoader(session).load([block_row(2, block_hash="0xother"), block_row(3)])

    async with session_maker() as session:
        rows = (await session.execute(select(RawBlock).order_by(RawBlock.number))).scalars().all()

    assert [row.number for row in rows] == [1, 2, 3]
    assert rows[1].block_hash == f"0x{2:064x}"
    assert rows[0].extrinsics == ["0x01", "0x02"]


@pytest.mark.asyncio
async def test_block_loader_ignores_empty_input(db_session):
    assert await BlockLoader(db_session).load([]) == 0


@pytest.mark.asyncio
async def test_activity_loader_folds_additively(session_maker):
    day = date(2024, 1, 15)
    first = {"chain": "acala", "day": day, "block_count": 3, "extrinsic_count": 7,
             "first_block": 10, "last_block": 12}
    second = {"chain": "acala", "day": day, "block_count": 2, "extrinsic_count": 4,
              "first_block": 13, "last_block": 14}

    async with session_maker() as session:
        async with session.begin():
            await ActivityLoader(session).load([first])
        async with session.begin():
            await ActivityLoader(session).load([second])

    async with session_maker() as session:
        [fact] = (await session.execute(select(FactChainDailyActivity))).scalars().all()

    assert fact.block_count == 5
    assert fact.extrinsic_count == 11
    assert (fact.first_block, fact.last_block) == (10, 14)


@pytest.mark.asyncio
async def test_activity_loader_keeps_days_apart(session_maker):
    rows = [
        {"chain": "acala", "day": date(2024, 1, 15), "block_count": 1, "extrinsic_count": 1,
         "first_block": 1, "last_block": 1},
        {"chain": "acala", "day": date(2024, 1, 16), "block_count": 1, "extrinsic_count": 2,
         "first_block": 2, "last_block": 2},
    ]

    async with session_maker() as session:
        async with session.begin():
            assert await ActivityLoader(session).load(rows) == 2

    async with session_maker() as session:
        facts = (await session.execute(
            select(FactChainDailyActivity).order_by(FactChainDailyActivity.day)
        )).scalars().all()

    assert [fact.day for fact in facts] == [date(2024, 1, 15), date(2024, 1, 16)]


def failing_session(error):
    """Session whose writes fail with ``error``"""
    session = MagicMock()
    session.bind.dialect.name = "sqlite"
    session.execute = AsyncMock(side_effect=error)
    return session


@pytest.mark.asyncio
async def test_lock_conflict_becomes_retryable_deadlock():
    error = OperationalError("INSERT INTO raw_blocks", {}, Exception("database is locked"))

    with pytest.raises(DeadlockError) as exc_info:
        await BlockLoader(failing_session(error)).load([block_row(1), block_row(2)])

    assert exc_info.value.context["table_name"] == "raw_blocks"
    assert exc_info.value.context["last_position"] == 2
    assert exc_info.value.__cause__ is error
    assert classify_error(exc_info.value) is Classification.TRANSIENT


@pytest.mark.asyncio
async def test_lost_connection_becomes_retryable():
    error = OperationalError(
        "INSERT INTO fact_chain_daily_activity", {}, Exception("server closed the connection"),
        connection_invalidated=True,
    )
    aggregate = {"chain": "acala", "day": date(2024, 1, 15), "block_count": 1,
                 "extrinsic_count": 1, "first_block": 1, "last_block": 1}

    with pytest.raises(DatabaseConnectionError):
        await ActivityLoader(failing_session(error)).load([aggregate])


@pytest.mark.asyncio
async def test_other_write_failures_are_fatal():
    error = IntegrityError("INSERT INTO raw_blocks", {}, Exception("NOT NULL constraint failed"))

    with pytest.raises(UpsertError) as exc_info:
        await BlockLoader(failing_session(error)).load([block_row(1)])

    assert classify_error(exc_info.value) is Classification.FATAL


def test_conditional_writes_need_a_supported_dialect():
    session = MagicMock()
    session.bind.dialect.name = "mysql"

    with pytest.raises(DatabaseError):
        dialect_insert(session, RawBlock)
