"""
Durable progress tracking for batch runs.

Progress is written with a single conditional UPDATE that only moves the
position forward, so duplicate or out-of-order calls are no-ops and the
stored position is always the maximum reported. A per-tracker in-memory
cache mirrors what has been written and is preferred when the final
snapshot is computed.

If the final write fails the snapshot is written to a JSON file keyed by
batch key; ``replay_fallback`` applies such files later.
"""

import json
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import settings
from core.exceptions import ProgressError
from ingestion.retry import RetryPolicy
from models.base import BatchStatus, LockStatus, utc_now
from models.batch_record import BatchRecord
from schemas.batch import BatchSnapshot

logger = logging.getLogger(__name__)


@dataclass
class _CachedProgress:
    position: Optional[int]
    processed_count: int
    failed_count: int = 0


class ProgressTracker:
    """
    Records the furthest completed position and processed counts of a run.

    Responsibilities:
    - Monotonic progress writes (position only moves forward)
    - Final snapshot with cache-first, store-second sourcing
    - Side-channel snapshot file when the final store write fails
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        fallback_dir: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.session_maker = session_maker
        self.fallback_dir = Path(fallback_dir or settings.STATUS_FALLBACK_DIR)
        self.retry_policy = retry_policy or RetryPolicy.for_transactions()
        self._cache: Dict[uuid.UUID, _CachedProgress] = {}

    def start(self, record: BatchRecord) -> None:
        """Seed the cache from the record a run starts (or resumes) with."""
        self._cache[record.batch_key] = _CachedProgress(
            position=record.last_processed_position,
            processed_count=record.processed_count or 0,
            failed_count=record.failed_count or 0,
        )

    def cached(self, batch_key: uuid.UUID) -> Optional[_CachedProgress]:
        return self._cache.get(batch_key)

    async def advance(
        self,
        session: AsyncSession,
        batch_key: uuid.UUID,
        position: int,
        increment_count: int = 0,
        failed_count: int = 0,
    ) -> bool:
        """
        Conditional progress UPDATE inside the caller's transaction.

        Lets a chunk's results and its progress commit together. The cache is
        not touched; call ``remember`` once the transaction has committed.

        Returns:
            True if the stored position moved forward
        """
        result = await session.execute(
            update(BatchRecord)
            .where(
                BatchRecord.batch_key == batch_key,
                BatchRecord.lock_status == LockStatus.LOCKED,
                or_(
                    BatchRecord.last_processed_position.is_(None),
                    BatchRecord.last_processed_position < position,
                ),
            )
            .values(
                last_processed_position=position,
                processed_count=BatchRecord.processed_count + increment_count,
                failed_count=BatchRecord.failed_count + failed_count,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def remember(
        self,
        batch_key: uuid.UUID,
        position: int,
        increment_count: int = 0,
        failed_count: int = 0,
    ) -> None:
        """Mirror a committed progress write in the cache."""
        cached = self._cache.setdefault(batch_key, _CachedProgress(None, 0))
        cached.position = position
        cached.processed_count += increment_count
        cached.failed_count += failed_count

    async def record_progress(
        self,
        batch_key: uuid.UUID,
        position: int,
        increment_count: int = 0,
        failed_count: int = 0,
    ) -> bool:
        """
        Persist ``position`` and add the counts if ``position`` is new ground.

        Returns:
            True if the store moved forward, False for an already-passed
            position or a batch that no longer holds its lock.
        """

        async def write() -> bool:
            async with self.session_maker() as session:
                async with session.begin():
                    return await self.advance(
                        session, batch_key, position, increment_count, failed_count
                    )

        try:
            moved = await self.retry_policy.run(write)
        except Exception as e:
            raise ProgressError(
                "Failed to record progress",
                context={"batch_key": str(batch_key), "position": position},
                original_exception=e,
            )

        if moved:
            self.remember(batch_key, position, increment_count, failed_count)
        else:
            logger.debug(f"Progress for {batch_key} at {position} already recorded, skipping")
        return moved

    async def current_status(self, batch_key: uuid.UUID) -> Optional[BatchStatus]:
        """Stored status, so a run can notice a pause or cancel issued from outside."""
        async with self.session_maker() as session:
            return (
                await session.execute(
                    select(BatchRecord.status).where(BatchRecord.batch_key == batch_key)
                )
            ).scalar_one_or_none()

    async def _load_snapshot(self, batch_key: uuid.UUID) -> _CachedProgress:
        cached = self._cache.get(batch_key)
        if cached is not None:
            return cached

        logger.info(f"No cached progress for {batch_key}, reading from the store")
        async with self.session_maker() as session:
            record = (
                await session.execute(
                    select(BatchRecord).where(BatchRecord.batch_key == batch_key)
                )
            ).scalar_one_or_none()
        if record is None:
            raise ProgressError(
                f"Batch with key {batch_key} not found",
                context={"batch_key": str(batch_key)},
            )
        return _CachedProgress(
            position=record.last_processed_position,
            processed_count=record.processed_count or 0,
            failed_count=record.failed_count or 0,
        )

    async def finalize(
        self,
        batch_key: uuid.UUID,
        status: BatchStatus,
        error_detail: Optional[str] = None,
        retries: int = 0,
        logs: Iterable[Dict[str, Any]] = (),
    ) -> BatchSnapshot:
        """
        Write the final row for a run and return its snapshot.

        ``end_time`` is only set for terminal statuses. If the store write
        fails the snapshot goes to the fallback file instead; the failure is
        logged as degraded and not raised.
        """
        progress = await self._load_snapshot(batch_key)
        end_time: Optional[datetime] = utc_now() if status.is_terminal else None
        snapshot = BatchSnapshot(
            batch_key=batch_key,
            status=status,
            end_time=end_time,
            last_processed_position=progress.position,
            processed_count=progress.processed_count,
            failed_count=progress.failed_count,
            retries=retries,
            error_detail=error_detail,
        )
        log_entries: List[Dict[str, Any]] = list(logs)

        try:
            await self.retry_policy.run(self._write_snapshot, snapshot, log_entries)
        except Exception as e:
            logger.error(f"Final status update for {batch_key} failed, falling back to file: {e}")
            self._write_fallback(snapshot, e)
        else:
            self._discard_fallback(batch_key)
        finally:
            self._cache.pop(batch_key, None)

        return snapshot

    async def _write_snapshot(
        self,
        snapshot: BatchSnapshot,
        log_entries: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        async with self.session_maker() as session:
            async with session.begin():
                record = (
                    await session.execute(
                        select(BatchRecord).where(BatchRecord.batch_key == snapshot.batch_key)
                    )
                ).scalar_one_or_none()
                if record is None:
                    raise ProgressError(
                        f"Batch with key {snapshot.batch_key} not found",
                        context={"batch_key": str(snapshot.batch_key)},
                    )

                record.status = snapshot.status
                record.end_time = snapshot.end_time
                record.error_detail = snapshot.error_detail
                record.processed_count = max(record.processed_count or 0, snapshot.processed_count)
                record.failed_count = max(record.failed_count or 0, snapshot.failed_count)
                if snapshot.last_processed_position is not None and (
                    record.last_processed_position is None
                    or record.last_processed_position < snapshot.last_processed_position
                ):
                    record.last_processed_position = snapshot.last_processed_position
                record.retry_count = (record.retry_count or 0) + snapshot.retries
                if log_entries:
                    record.logs = [*(record.logs or []), *log_entries]

    def fallback_path(self, batch_key: uuid.UUID) -> Path:
        return self.fallback_dir / f"batch_{batch_key}_status.json"

    def _write_fallback(self, snapshot: BatchSnapshot, db_error: BaseException) -> None:
        path = self.fallback_path(snapshot.batch_key)
        payload = snapshot.model_dump(mode="json")
        payload["error"] = "Database update failed"
        payload["db_error"] = str(db_error) or type(db_error).__name__
        try:
            self.fallback_dir.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(json.dumps(payload))
            os.replace(tmp_path, path)
            logger.warning(f"Batch status saved to fallback file: {path}")
        except OSError as e:
            logger.critical(f"Failed to save batch status to fallback file {path}: {e}")
            raise ProgressError(
                "Final status could not be written to the store or the fallback file",
                context={"batch_key": str(snapshot.batch_key), "path": str(path)},
                original_exception=e,
            )

    def _discard_fallback(self, batch_key: uuid.UUID) -> None:
        path = self.fallback_path(batch_key)
        if path.exists():
            try:
                path.unlink()
                logger.info(f"Removed stale fallback file {path}")
            except OSError as e:
                logger.warning(f"Failed to remove fallback file {path}: {e}")

    async def replay_fallback(self) -> int:
        """
        Apply snapshot files left by failed final writes.

        Returns:
            Number of snapshots applied (their files are deleted)
        """
        replayed = 0
        for path in sorted(self.fallback_dir.glob("batch_*_status.json")):
            try:
                snapshot = BatchSnapshot.model_validate_json(path.read_text())
            except ValueError as e:
                logger.error(f"Skipping unreadable fallback file {path}: {e}")
                continue

            await self.retry_policy.run(self._write_snapshot, snapshot)
            path.unlink()
            replayed += 1
            logger.info(f"Replayed fallback snapshot for batch {snapshot.batch_key}")
        return replayed
