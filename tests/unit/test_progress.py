"""
Unit tests for ProgressTracker: monotonic writes, finalize and fallback files
"""

import json
import uuid
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from core.exceptions import ProgressError
from ingestion.progress import ProgressTracker
from models.base import BatchStatus, LockStatus, StageType, utc_now
from models.batch_record import BatchRecord


async def create_running_record(session_maker, **overrides) -> BatchRecord:
    values = dict(
        batch_key=uuid.uuid4(),
        stage_type=StageType.EXTRACT,
        status=BatchStatus.RUNNING,
        start_time=utc_now(),
        lock_key="extract_data_lock",
        lock_time=utc_now(),
        lock_status=LockStatus.LOCKED,
        processed_count=0,
        failed_count=0,
        retry_count=0,
    )
    values.update(overrides)
    record = BatchRecord(**values)
    async with session_maker() as session:
        async with session.begin():
            session.add(record)
    return record


async def load_record(session_maker, batch_key) -> BatchRecord:
    async with session_maker() as session:
        return (await session.execute(
            select(BatchRecord).where(BatchRecord.batch_key == batch_key)
        )).scalar_one()


@pytest.mark.asyncio
async def test_progress_only_moves_forward(session_maker, progress):
    record = await create_running_record(session_maker)
    progress.start(record)

    assert await progress.record_progress(record.batch_key, 10, increment_count=5) is True
    assert await progress.record_progress(record.batch_key, 7, increment_count=3) is False
    assert await progress.record_progress(record.batch_key, 10, increment_count=5) is False
    assert await progress.record_progress(record.batch_key, 15, increment_count=5, failed_count=1)

    stored = await load_record(session_maker, record.batch_key)
    assert stored.last_processed_position == 15
    assert stored.processed_count == 10
    assert stored.failed_count == 1

    cached = progress.cached(record.batch_key)
    assert cached.position == 15
    assert cached.processed_count == 10


@pytest.mark.asyncio
async def test_progress_ignored_without_lock(session_maker, progress):
    record = await create_running_record(session_maker, lock_status=LockStatus.UNLOCKED)

    assert await progress.record_progress(record.batch_key, 3, increment_count=1) is False
    stored = await load_record(session_maker, record.batch_key)
    assert stored.last_processed_position is None


@pytest.mark.asyncio
async def test_advance_rolls_back_with_the_callers_transaction(session_maker, progress):
    record = await create_running_record(session_maker)
    progress.start(record)

    with pytest.raises(RuntimeError):
        async with session_maker() as session:
            async with session.begin():
                assert await progress.advance(session, record.batch_key, 9, increment_count=10)
                raise RuntimeError("chunk write failed")

    stored = await load_record(session_maker, record.batch_key)
    assert stored.last_processed_position is None
    assert stored.processed_count == 0
    assert progress.cached(record.batch_key).position is None

    async with session_maker() as session:
        async with session.begin():
            assert await progress.advance(session, record.batch_key, 9, increment_count=10)
    progress.remember(record.batch_key, 9, increment_count=10)

    assert (await load_record(session_maker, record.batch_key)).last_processed_position == 9
    assert progress.cached(record.batch_key).processed_count == 10


@pytest.mark.asyncio
async def test_finalize_writes_terminal_state(session_maker, progress):
    record = await create_running_record(session_maker)
    progress.start(record)
    await progress.record_progress(record.batch_key, 42, increment_count=43)

    snapshot = await progress.finalize(
        record.batch_key,
        BatchStatus.SUCCESS,
        retries=2,
        logs=[{"level": "info", "message": "done"}],
    )

    assert snapshot.status == BatchStatus.SUCCESS
    assert snapshot.end_time is not None
    stored = await load_record(session_maker, record.batch_key)
    assert stored.status == BatchStatus.SUCCESS
    assert stored.end_time is not None
    assert stored.last_processed_position == 42
    assert stored.processed_count == 43
    assert stored.retry_count == 2
    assert stored.logs == [{"level": "info", "message": "done"}]
    assert progress.cached(record.batch_key) is None


@pytest.mark.asyncio
async def test_finalize_paused_has_no_end_time(session_maker, progress):
    record = await create_running_record(session_maker)
    progress.start(record)

    snapshot = await progress.finalize(record.batch_key, BatchStatus.PAUSED)

    assert snapshot.end_time is None
    stored = await load_record(session_maker, record.batch_key)
    assert stored.status == BatchStatus.PAUSED
    assert stored.end_time is None


@pytest.mark.asyncio
async def test_finalize_reads_store_without_cache(session_maker, progress):
    record = await create_running_record(
        session_maker, last_processed_position=9, processed_count=10
    )

    snapshot = await progress.finalize(record.batch_key, BatchStatus.COMPLETED)

    assert snapshot.last_processed_position == 9
    assert snapshot.processed_count == 10


@pytest.mark.asyncio
async def test_finalize_unknown_batch_raises(progress):
    with pytest.raises(ProgressError):
        await progress.finalize(uuid.uuid4(), BatchStatus.SUCCESS)


@pytest.mark.asyncio
async def test_finalize_store_failure_writes_fallback_file(session_maker, progress):
    record = await create_running_record(session_maker)
    progress.start(record)
    await progress.record_progress(record.batch_key, 4, increment_count=5)

    with patch.object(
        ProgressTracker, "_write_snapshot", AsyncMock(side_effect=ProgressError("store down"))
    ):
        snapshot = await progress.finalize(record.batch_key, BatchStatus.FAILED, error_detail="boom")

    path = progress.fallback_path(record.batch_key)
    assert path.exists()
    payload = json.loads(path.read_text())
    assert payload["batch_key"] == str(record.batch_key)
    assert payload["status"] == BatchStatus.FAILED.value
    assert payload["last_processed_position"] == 4
    assert payload["error"] == "Database update failed"
    assert "store down" in payload["db_error"]
    assert snapshot.status == BatchStatus.FAILED


@pytest.mark.asyncio
async def test_replay_fallback_applies_and_removes_files(session_maker, progress):
    record = await create_running_record(session_maker)
    progress.start(record)
    await progress.record_progress(record.batch_key, 4, increment_count=5)

    with patch.object(
        ProgressTracker, "_write_snapshot", AsyncMock(side_effect=ProgressError("store down"))
    ):
        await progress.finalize(record.batch_key, BatchStatus.SUCCESS)

    stored = await load_record(session_maker, record.batch_key)
    assert stored.status == BatchStatus.RUNNING

    replayed = await progress.replay_fallback()

    assert replayed == 1
    assert not progress.fallback_path(record.batch_key).exists()
    stored = await load_record(session_maker, record.batch_key)
    assert stored.status == BatchStatus.SUCCESS
    assert stored.end_time is not None


@pytest.mark.asyncio
async def test_successful_finalize_discards_stale_fallback(session_maker, progress):
    record = await create_running_record(session_maker)
    path = progress.fallback_path(record.batch_key)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{}")

    await progress.finalize(record.batch_key, BatchStatus.SUCCESS)

    assert not path.exists()


@pytest.mark.asyncio
async def test_current_status_reflects_external_pause(session_maker, progress):
    record = await create_running_record(session_maker)

    assert await progress.current_status(record.batch_key) == BatchStatus.RUNNING

    async with session_maker() as session:
        async with session.begin():
            stored = (await session.execute(
                select(BatchRecord).where(BatchRecord.batch_key == record.batch_key)
            )).scalar_one()
            stored.status = BatchStatus.PAUSED

    assert await progress.current_status(record.batch_key) == BatchStatus.PAUSED
