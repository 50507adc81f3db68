"""
Named advisory locks backed by the batch store.

Acquisition is one conditional upsert on the ``batch_locks`` row for the key:
the row is (re)claimed only if it is not LOCKED, its lease has expired, or it
is already held by the same batch. A lock older than the lease is presumed
abandoned by a crashed run and may be reclaimed.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import settings
from core.database import dialect_insert
from core.exceptions import LockError
from models.base import LockStatus, utc_now
from models.batch_lock import BatchLock
from models.batch_record import BatchRecord

logger = logging.getLogger(__name__)


class LockManager:
    """
    Acquire and release named locks tied to batch records.

    The lease (crash-detection window) is configured separately from the run
    interval of any stage.
    """

    def __init__(self, session_maker: async_sessionmaker, lease_ms: Optional[int] = None):
        self.session_maker = session_maker
        self.lease_ms = settings.LOCK_LEASE_MS if lease_ms is None else lease_ms

    async def acquire(
        self,
        session: AsyncSession,
        lock_key: str,
        batch_key: uuid.UUID,
        lease_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Try to take ``lock_key`` for ``batch_key`` inside the caller's transaction.

        Returns:
            True if the lock is now held by ``batch_key``; False if another
            run holds an unexpired lease (the caller must defer).
        """
        now = now or utc_now()
        lease = self.lease_ms if lease_ms is None else lease_ms
        cutoff = now - timedelta(milliseconds=lease)

        stmt = dialect_insert(session, BatchLock).values(
            lock_key=lock_key,
            holder_batch_key=batch_key,
            lock_status=LockStatus.LOCKED,
            lock_time=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[BatchLock.lock_key],
            set_={
                "holder_batch_key": stmt.excluded.holder_batch_key,
                "lock_status": stmt.excluded.lock_status,
                "lock_time": stmt.excluded.lock_time,
            },
            where=or_(
                BatchLock.lock_status != LockStatus.LOCKED,
                BatchLock.lock_time < cutoff,
                BatchLock.holder_batch_key == batch_key,
            ),
        ).returning(BatchLock.holder_batch_key)

        result = await session.execute(stmt)
        acquired = result.first() is not None

        if not acquired:
            holder = await self.holder(lock_key, session=session)
            if holder is not None:
                logger.info(
                    f"Lock {lock_key} is held by batch {holder.holder_batch_key} "
                    f"until {holder.lock_time + timedelta(milliseconds=lease)}"
                )
            return False

        await session.execute(
            update(BatchRecord)
            .where(BatchRecord.batch_key == batch_key)
            .values(lock_key=lock_key, lock_time=now, lock_status=LockStatus.LOCKED)
        )
        logger.debug(f"Lock {lock_key} acquired by batch {batch_key}")
        return True

    async def release(
        self,
        batch_key: uuid.UUID,
        success: bool = True,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Release the lock held by ``batch_key``.

        The lock row is only touched if this batch still holds it; the batch
        record's mirror columns are always updated.
        """
        now = now or utc_now()
        status = LockStatus.UNLOCKED if success else LockStatus.FAILED

        async with self.session_maker() as session:
            async with session.begin():
                record = (
                    await session.execute(
                        select(BatchRecord).where(BatchRecord.batch_key == batch_key)
                    )
                ).scalar_one_or_none()
                if record is None:
                    raise LockError(
                        f"Batch with key {batch_key} not found",
                        context={"batch_key": str(batch_key)},
                    )

                if record.lock_key:
                    await session.execute(
                        update(BatchLock)
                        .where(
                            BatchLock.lock_key == record.lock_key,
                            BatchLock.holder_batch_key == batch_key,
                        )
                        .values(lock_status=status, lock_time=now)
                    )

                record.lock_status = status
                record.lock_time = now

        logger.debug(f"Lock released by batch {batch_key} ({status.value})")

    async def holder(
        self,
        lock_key: str,
        session: Optional[AsyncSession] = None,
    ) -> Optional[BatchLock]:
        """Current arbiter row for ``lock_key`` (None if never taken)."""
        query = select(BatchLock).where(BatchLock.lock_key == lock_key)
        if session is not None:
            return (await session.execute(query)).scalar_one_or_none()
        async with self.session_maker() as own_session:
            return (await own_session.execute(query)).scalar_one_or_none()
