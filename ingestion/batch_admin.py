"""
Operator actions on batch records: show, pause, cancel, resume lookup.

Pause and cancel are conditional updates, so they only take effect on a
record that is still in the required state when the update runs. A running
process notices the change after its current chunk and stops.
"""

import logging
import uuid
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import BatchStateError
from models.base import BatchStatus, StageType, utc_now
from models.batch_record import BatchRecord

logger = logging.getLogger(__name__)


async def _get_record(session, batch_key: uuid.UUID) -> BatchRecord:
    record = (
        await session.execute(select(BatchRecord).where(BatchRecord.batch_key == batch_key))
    ).scalar_one_or_none()
    if record is None:
        raise BatchStateError(
            f"Batch with key {batch_key} not found",
            context={"batch_key": str(batch_key)},
        )
    return record


async def show_last_batch(
    session_maker: async_sessionmaker,
    stage_type: StageType,
) -> Optional[BatchRecord]:
    """Most recently started batch of ``stage_type`` (None if there is none)."""
    async with session_maker() as session:
        return (
            await session.execute(
                select(BatchRecord)
                .where(BatchRecord.stage_type == stage_type)
                .order_by(BatchRecord.start_time.desc(), BatchRecord.id.desc())
                .limit(1)
            )
        ).scalar_one_or_none()


async def recent_batches(
    session_maker: async_sessionmaker,
    stage_type: Optional[StageType] = None,
    limit: int = 20,
) -> List[BatchRecord]:
    query = select(BatchRecord).order_by(BatchRecord.start_time.desc(), BatchRecord.id.desc())
    if stage_type is not None:
        query = query.where(BatchRecord.stage_type == stage_type)
    async with session_maker() as session:
        return list((await session.execute(query.limit(limit))).scalars().all())


async def pause_batch(session_maker: async_sessionmaker, batch_key: uuid.UUID) -> BatchRecord:
    """
    Mark a RUNNING batch PAUSED.

    Raises:
        BatchStateError: The batch does not exist or is not RUNNING
    """
    async with session_maker() as session:
        async with session.begin():
            result = await session.execute(
                update(BatchRecord)
                .where(
                    BatchRecord.batch_key == batch_key,
                    BatchRecord.status == BatchStatus.RUNNING,
                )
                .values(status=BatchStatus.PAUSED)
                .execution_options(synchronize_session=False)
            )
            record = await _get_record(session, batch_key)
            if result.rowcount != 1:
                raise BatchStateError(
                    f"Batch {batch_key} is not running (status: {record.status.value})",
                    context={"batch_key": str(batch_key), "status": record.status.value},
                )

    logger.info(f"Batch {batch_key} paused")
    return record


async def cancel_batch(session_maker: async_sessionmaker, batch_key: uuid.UUID) -> BatchRecord:
    """
    Mark a RUNNING or PAUSED batch CANCELED.

    Raises:
        BatchStateError: The batch does not exist or has already ended
    """
    async with session_maker() as session:
        async with session.begin():
            result = await session.execute(
                update(BatchRecord)
                .where(
                    BatchRecord.batch_key == batch_key,
                    BatchRecord.status.in_([BatchStatus.RUNNING, BatchStatus.PAUSED]),
                )
                .values(status=BatchStatus.CANCELED, end_time=utc_now())
                .execution_options(synchronize_session=False)
            )
            record = await _get_record(session, batch_key)
            if result.rowcount != 1:
                raise BatchStateError(
                    f"Batch {batch_key} has already ended (status: {record.status.value})",
                    context={"batch_key": str(batch_key), "status": record.status.value},
                )

    logger.info(f"Batch {batch_key} canceled")
    return record


async def resume_batch(
    session_maker: async_sessionmaker,
    stage_type: StageType,
) -> BatchRecord:
    """
    Latest RUNNING or PAUSED batch of ``stage_type``, to be continued.

    Raises:
        BatchStateError: No batch of the stage can be resumed
    """
    async with session_maker() as session:
        record = (
            await session.execute(
                select(BatchRecord)
                .where(
                    BatchRecord.stage_type == stage_type,
                    BatchRecord.status.in_([BatchStatus.RUNNING, BatchStatus.PAUSED]),
                )
                .order_by(BatchRecord.start_time.desc(), BatchRecord.id.desc())
                .limit(1)
            )
        ).scalar_one_or_none()

    if record is None:
        raise BatchStateError(
            f"No running or paused {stage_type.value} batch to resume",
            context={"stage_type": stage_type.value},
        )
    logger.info(
        f"Resuming {stage_type.value} batch {record.batch_key} "
        f"from position {record.last_processed_position}"
    )
    return record
