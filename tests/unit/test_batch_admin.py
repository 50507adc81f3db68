"""
Unit tests for operator batch actions
"""

import uuid
from datetime import datetime, timedelta

import pytest

from core.exceptions import BatchStateError
from ingestion.batch_admin import (
    cancel_batch,
    pause_batch,
    recent_batches,
    resume_batch,
    show_last_batch,
)
from models.base import BatchStatus, LockStatus, StageType
from models.batch_record import BatchRecord


async def add_batch(session_maker, stage_type, status, minutes_ago=0):
    record = BatchRecord(
        batch_key=uuid.uuid4(),
        stage_type=stage_type,
        status=status,
        start_time=datetime(2024, 1, 15, 12, 0) - timedelta(minutes=minutes_ago),
        lock_status=LockStatus.LOCKED if status == BatchStatus.RUNNING else LockStatus.UNLOCKED,
    )
    async with session_maker() as session:
        async with session.begin():
            session.add(record)
    return record


@pytest.mark.asyncio
async def test_show_last_batch_per_stage(session_maker):
    assert await show_last_batch(session_maker, StageType.EXTRACT) is None

    await add_batch(session_maker, StageType.EXTRACT, BatchStatus.SUCCESS, minutes_ago=5)
    latest = await add_batch(session_maker, StageType.EXTRACT, BatchStatus.FAILED)
    await add_batch(session_maker, StageType.TRANSFORM, BatchStatus.COMPLETED, minutes_ago=1)

    record = await show_last_batch(session_maker, StageType.EXTRACT)
    assert record.batch_key == latest.batch_key


@pytest.mark.asyncio
async def test_recent_batches_limit(session_maker):
    for minutes in range(3):
        await add_batch(session_maker, StageType.TRANSFORM, BatchStatus.COMPLETED, minutes_ago=minutes)

    records = await recent_batches(session_maker, limit=2)

    assert len(records) == 2
    assert records[0].start_time > records[1].start_time


@pytest.mark.asyncio
async def test_pause_running_batch(session_maker):
    running = await add_batch(session_maker, StageType.EXTRACT, BatchStatus.RUNNING)

    record = await pause_batch(session_maker, running.batch_key)

    assert record.status == BatchStatus.PAUSED
    assert record.end_time is None


@pytest.mark.asyncio
async def test_pause_rejects_finished_batch(session_maker):
    done = await add_batch(session_maker, StageType.EXTRACT, BatchStatus.SUCCESS)

    with pytest.raises(BatchStateError) as exc_info:
        await pause_batch(session_maker, done.batch_key)

    assert exc_info.value.context["status"] == "success"


@pytest.mark.asyncio
async def test_pause_unknown_batch(session_maker):
    with pytest.raises(BatchStateError):
        await pause_batch(session_maker, uuid.uuid4())


@pytest.mark.asyncio
async def test_cancel_paused_batch(session_maker):
    paused = await add_batch(session_maker, StageType.TRANSFORM, BatchStatus.PAUSED)

    record = await cancel_batch(session_maker, paused.batch_key)

    assert record.status == BatchStatus.CANCELED
    assert record.end_time is not None

    with pytest.raises(BatchStateError):
        await cancel_batch(session_maker, paused.batch_key)


@pytest.mark.asyncio
async def test_resume_picks_latest_unfinished_batch(session_maker):
    await add_batch(session_maker, StageType.EXTRACT, BatchStatus.PAUSED, minutes_ago=30)
    latest = await add_batch(session_maker, StageType.EXTRACT, BatchStatus.PAUSED, minutes_ago=10)
    await add_batch(session_maker, StageType.EXTRACT, BatchStatus.SUCCESS)

    record = await resume_batch(session_maker, StageType.EXTRACT)

    assert record.batch_key == latest.batch_key


@pytest.mark.asyncio
async def test_resume_without_candidates(session_maker):
    await add_batch(session_maker, StageType.TRANSFORM, BatchStatus.COMPLETED)

    with pytest.raises(BatchStateError):
        await resume_batch(session_maker, StageType.TRANSFORM)
