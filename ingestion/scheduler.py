import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from core.exceptions import BatchStateError, ConnectivityExhaustedError
from ingestion.runner import BatchRunner
from schemas.batch import RunBounds, RunResult

logger = logging.getLogger(__name__)


@dataclass
class StageJob:
    """Schedule state of one stage"""
    runner: BatchRunner
    interval_ms: int
    bounds: Optional[RunBounds] = None
    resume: Optional[uuid.UUID] = None
    done: bool = False
    last_result: Optional[RunResult] = None
    last_error: Optional[BaseException] = None

    @property
    def one_shot(self) -> bool:
        return self.bounds is not None and self.bounds.is_bounded


class ETLScheduler:
    """
    Interval loop for pipeline stages.

    Each stage is a one-off job that reschedules itself ``interval_ms`` after
    its run ends, so runs of a stage never overlap inside this process. A
    bounded run happens once. Connectivity exhaustion stops every stage and
    is reported through ``fatal_error``.
    """

    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self.jobs: Dict[str, StageJob] = {}
        self.fatal_error: Optional[BaseException] = None
        self._stopped = asyncio.Event()

    def add_stage(
        self,
        name: str,
        runner: BatchRunner,
        interval_ms: int,
        bounds: Optional[RunBounds] = None,
        resume: Optional[uuid.UUID] = None,
    ) -> StageJob:
        job = StageJob(runner=runner, interval_ms=interval_ms, bounds=bounds, resume=resume)
        self.jobs[name] = job
        return job

    async def run_stage_cycle(self, name: str) -> None:
        """Job to run one stage once and schedule its next run"""
        job = self.jobs[name]
        logger.info(f"Scheduler: Starting {name} run")

        try:
            result = await job.runner.run_once(bounds=job.bounds, resume=job.resume)
        except ConnectivityExhaustedError as e:
            logger.critical(f"Scheduler: {name} cannot reach its services, stopping - {e}")
            self._fail(e)
            return
        except BatchStateError as e:
            logger.error(f"Scheduler: {name} run rejected - {e}")
            self._fail(e)
            return
        except Exception as e:
            logger.error(f"Scheduler: {name} run failed - {e}")
            job.last_error = e
        else:
            job.last_result = result
            job.last_error = None
            if result.deferred:
                logger.info(f"Scheduler: {name} run deferred, another run holds the lock")
            else:
                logger.info(
                    f"Scheduler: {name} run {result.batch_key} ended {result.status.value} "
                    f"({result.processed_count} processed, {result.failed_count} failed)"
                )

        # Resuming applies to the first run only
        job.resume = None

        if job.one_shot:
            self._finish(name)
            return
        self._schedule(name, delay_ms=job.interval_ms)

    def _schedule(self, name: str, delay_ms: int = 0) -> None:
        run_date = datetime.now(timezone.utc) + timedelta(milliseconds=delay_ms)
        self.scheduler.add_job(
            self.run_stage_cycle,
            trigger=DateTrigger(run_date=run_date),
            args=[name],
            id=f"{name}_job",
            replace_existing=True,
            misfire_grace_time=None,
        )
        if delay_ms:
            logger.info(f"Scheduler: next {name} run at {run_date.isoformat()}")

    def _finish(self, name: str) -> None:
        self.jobs[name].done = True
        if all(job.done for job in self.jobs.values()):
            self._stopped.set()

    def _fail(self, error: BaseException) -> None:
        self.fatal_error = error
        for job in self.jobs.values():
            job.done = True
        self._stopped.set()

    @property
    def errors(self) -> List[BaseException]:
        return [job.last_error for job in self.jobs.values() if job.last_error is not None]

    def start(self):
        """Start the scheduler (needs a running event loop)"""
        for name in self.jobs:
            self._schedule(name)
        self.scheduler.start()
        logger.info(f"ETL Scheduler started ({', '.join(self.jobs)})")

    async def wait(self) -> None:
        """Block until every stage is done or a fatal error stopped the loop"""
        await self._stopped.wait()

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self._stopped.set()
        logger.info("ETL Scheduler stopped")
