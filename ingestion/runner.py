# ============================================================================
# File: ingestion/runner.py
# Description: Batch orchestrator shared by every pipeline stage
# ============================================================================
"""
BatchRunner - one lock-guarded, resumable run of a pipeline stage.

A run goes through these phases:
1. Open - acquire the stage lock and create (or re-open) the batch record
   in the same transaction; a held lock defers the run with no side effects
2. Resolve - pick the work range from the cursor, explicit bounds or a lookback
3. Process - fan the units out in chunks and commit each chunk's results
   together with its progress in one transaction
4. Finalize - write the final status and counts, then release the lock
"""

import logging
import os
import uuid
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.exceptions import (
    BatchInterruptedError,
    BatchStateError,
    FailureThresholdExceeded,
)
from core.logging import BatchLogAdapter, RunMetrics
from ingestion.base import Stage
from ingestion.block_range import WorkRange, resolve_range
from ingestion.chunking import ChunkScheduler, plan_chunks
from ingestion.lock_manager import LockManager
from ingestion.progress import ProgressTracker
from ingestion.retry import RetryPolicy
from models.base import BatchStatus, LockStatus, utc_now
from models.batch_record import BatchRecord
from schemas.batch import BatchSnapshot, RunBounds, RunResult

logger = logging.getLogger(__name__)

_INTERRUPTING_STATUSES = (BatchStatus.PAUSED, BatchStatus.CANCELED)
_RESUMABLE_STATUSES = (BatchStatus.RUNNING, BatchStatus.PAUSED)


class BatchRunner:
    """
    Batch orchestrator for a single stage.

    Responsibilities:
    - Mutual exclusion per stage through the LockManager
    - Range resolution and chunked processing of work units
    - Durable, monotonic progress after every saved chunk
    - Final status, counts and logs on the batch record
    - Lock release on every exit path
    """

    def __init__(
        self,
        stage: Stage,
        session_maker: async_sessionmaker,
        lock_manager: Optional[LockManager] = None,
        progress: Optional[ProgressTracker] = None,
        chunk_scheduler: Optional[ChunkScheduler] = None,
        transaction_policy: Optional[RetryPolicy] = None,
        available_workers: Optional[int] = None,
        max_failure_ratio: Optional[float] = None,
        max_chunk_size: Optional[int] = None,
    ):
        self.stage = stage
        self.session_maker = session_maker
        self.lock_manager = lock_manager or LockManager(session_maker)
        self.progress = progress or ProgressTracker(session_maker)
        self.chunk_scheduler = chunk_scheduler or ChunkScheduler()
        self.transaction_policy = transaction_policy or RetryPolicy.for_transactions()
        self.available_workers = (
            available_workers or settings.AVAILABLE_WORKERS or os.cpu_count() or 1
        )
        self.max_failure_ratio = (
            settings.MAX_UNIT_FAILURE_RATIO if max_failure_ratio is None else max_failure_ratio
        )
        self.max_chunk_size = max_chunk_size or settings.MAX_CHUNK_SIZE

    # --------------------------------------------------
    # Open
    # --------------------------------------------------

    async def _open_batch(
        self,
        batch_key: uuid.UUID,
        resume: bool,
    ) -> Optional[tuple]:
        """
        Take the lock and create or re-open the batch record atomically.

        Returns:
            (record, cursor) or None when another run holds the lock
        """
        async with self.session_maker() as session:
            async with session.begin():
                record: Optional[BatchRecord] = None
                if resume:
                    record = (
                        await session.execute(
                            select(BatchRecord).where(BatchRecord.batch_key == batch_key)
                        )
                    ).scalar_one_or_none()
                    if record is None:
                        raise BatchStateError(
                            f"Batch with key {batch_key} not found",
                            context={"batch_key": str(batch_key)},
                        )
                    if record.stage_type != self.stage.stage_type:
                        raise BatchStateError(
                            f"Batch {batch_key} belongs to the {record.stage_type.value} stage",
                            context={"batch_key": str(batch_key), "stage": self.stage.name},
                        )
                    if record.status not in _RESUMABLE_STATUSES:
                        raise BatchStateError(
                            f"Batch {batch_key} is {record.status.value} and cannot be resumed",
                            context={"batch_key": str(batch_key), "status": record.status.value},
                        )

                acquired = await self.lock_manager.acquire(
                    session, self.stage.lock_key, batch_key
                )
                if not acquired:
                    return None

                now = utc_now()
                if record is None:
                    record = BatchRecord(
                        batch_key=batch_key,
                        stage_type=self.stage.stage_type,
                        status=BatchStatus.RUNNING,
                        start_time=now,
                        lock_key=self.stage.lock_key,
                        lock_time=now,
                        lock_status=LockStatus.LOCKED,
                        processed_count=0,
                        failed_count=0,
                        retry_count=0,
                        logs=[],
                    )
                    session.add(record)
                    cursor = await self.stage.last_processed_position(session)
                else:
                    record.status = BatchStatus.RUNNING
                    record.end_time = None
                    record.error_detail = None
                    record.lock_key = self.stage.lock_key
                    record.lock_time = now
                    record.lock_status = LockStatus.LOCKED
                    cursor = record.last_processed_position

                await session.flush()
        return record, cursor

    # --------------------------------------------------
    # Run
    # --------------------------------------------------

    async def run_once(
        self,
        bounds: Optional[RunBounds] = None,
        resume: Optional[uuid.UUID] = None,
    ) -> RunResult:
        """
        Execute one run of the stage.

        Args:
            bounds: Explicit range or lookback; None continues from the cursor
            resume: Batch key of a RUNNING or PAUSED record to continue

        Returns:
            RunResult (``deferred`` is True if the lock was held elsewhere)

        Raises:
            BatchStateError: The resume target cannot be resumed
            ConnectivityExhaustedError: External services stayed unreachable
            ETLException: Any other failure, after the record is marked FAILED
        """
        batch_key = resume or uuid.uuid4()
        opened = await self._open_batch(batch_key, resume=resume is not None)
        if opened is None:
            logger.info(f"{self.stage.name}: lock {self.stage.lock_key} is held, deferring run")
            return RunResult.deferred_run()

        record, cursor = opened
        self.progress.start(record)
        log = BatchLogAdapter(logger, str(batch_key))
        metrics = RunMetrics()
        log.info(
            f"{self.stage.name} batch {'resumed' if resume else 'started'} (cursor={cursor})"
        )

        work: Optional[WorkRange] = None
        try:
            with metrics.timed("resolve"):
                work = await resolve_range(self.stage, cursor, bounds)
            if resume is not None and cursor is not None and work.start <= cursor:
                work = WorkRange(start=cursor + 1, end=work.end, bounded=work.bounded)

            with metrics.timed("process"):
                await self._process(batch_key, work, metrics, log)

        except BatchInterruptedError as e:
            status = e.context.get("status", BatchStatus.PAUSED)
            log.info(f"{self.stage.name} batch interrupted ({status.value}), stopping")
            try:
                snapshot = await self.progress.finalize(
                    batch_key, status, retries=metrics.retries, logs=log.drain()
                )
            finally:
                await self._release(batch_key, success=True)
            return self._result(snapshot, work, metrics)

        except Exception as e:
            log.error(
                f"{self.stage.name} batch failed: {e}",
                detail=e.to_dict() if hasattr(e, "to_dict") else {"error": repr(e)},
            )
            try:
                await self.progress.finalize(
                    batch_key,
                    BatchStatus.FAILED,
                    error_detail=str(e),
                    retries=metrics.retries + 1,
                    logs=log.drain(),
                )
            finally:
                await self._release(batch_key, success=False)
            raise

        log.info(
            f"{self.stage.name} batch finished: {metrics.success_count} ok, "
            f"{metrics.error_count} failed",
            detail=metrics.to_dict(),
        )
        try:
            snapshot = await self.progress.finalize(
                batch_key,
                self.stage.success_status,
                retries=metrics.retries,
                logs=log.drain(),
            )
        finally:
            await self._release(batch_key, success=True)
        return self._result(snapshot, work, metrics)

    async def _process(
        self,
        batch_key: uuid.UUID,
        work: WorkRange,
        metrics: RunMetrics,
        log: BatchLogAdapter,
    ) -> None:
        if work.is_empty:
            log.info(f"No new work for {self.stage.name} ({work.start}..{work.end})")
            return

        units = await self.stage.fetch_units(work.start, work.end)
        chunk_size = plan_chunks(len(units), self.available_workers, self.max_chunk_size)
        concurrency = max(1, self.available_workers // 2)
        log.info(f"Processing positions {work.start}..{work.end} ({len(units)} units)")

        async def save(results: List[Any], last_key: int, failed: int) -> None:
            # Results and progress commit in one transaction
            async def write() -> bool:
                async with self.session_maker() as session:
                    async with session.begin():
                        moved = await self.progress.advance(
                            session, batch_key, last_key, len(results), failed
                        )
                        if moved and results:
                            await self.stage.save_results(session, results)
                        return moved

            moved = await self.transaction_policy.run(
                write, on_retry=lambda attempt, error: metrics.record_retry()
            )
            if moved:
                self.progress.remember(batch_key, last_key, len(results), failed)
            else:
                log.warning(f"Chunk ending at {last_key} already recorded or lock lost, not saved")

        async def on_chunk_saved(last_key: int, ok: int, failed: int) -> None:
            metrics.record_success(ok)
            metrics.record_error(failed)

            status = await self.progress.current_status(batch_key)
            if status in _INTERRUPTING_STATUSES:
                raise BatchInterruptedError(
                    f"Batch {batch_key} was set to {status.value}",
                    context={"batch_key": str(batch_key), "status": status},
                )

        summary = await self.chunk_scheduler.run(
            units,
            chunk_size=chunk_size,
            concurrency=concurrency,
            handler=self.stage.process_unit,
            save=save,
            key=self.stage.unit_key,
            on_chunk_saved=on_chunk_saved,
        )

        if self.max_failure_ratio is not None and summary.failure_ratio > self.max_failure_ratio:
            raise FailureThresholdExceeded(
                f"{summary.failed} of {summary.attempted} units failed",
                context={
                    "failure_ratio": round(summary.failure_ratio, 4),
                    "max_failure_ratio": self.max_failure_ratio,
                },
            )

    async def _release(self, batch_key: uuid.UUID, success: bool) -> None:
        # An unreleased lock expires with its lease
        try:
            await self.lock_manager.release(batch_key, success=success)
        except Exception as e:
            logger.error(f"Failed to release lock for batch {batch_key}: {e}")

    @staticmethod
    def _result(
        snapshot: BatchSnapshot,
        work: Optional[WorkRange],
        metrics: RunMetrics,
    ) -> RunResult:
        return RunResult(
            batch_key=snapshot.batch_key,
            status=snapshot.status,
            processed_count=snapshot.processed_count,
            failed_count=snapshot.failed_count,
            last_processed_position=snapshot.last_processed_position,
            start_position=work.start if work else None,
            end_position=work.end if work else None,
            retries=snapshot.retries,
            metrics=metrics.to_dict(),
        )
