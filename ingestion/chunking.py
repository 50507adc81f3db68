"""
Chunked, bounded-parallel processing of work units.

Units are split into contiguous chunks in their original order. Up to
``concurrency`` chunks run at once; inside a chunk every unit is dispatched
concurrently and the chunk waits for all of them. A failed or timed-out unit
is counted and left out of the chunk's results without disturbing its
siblings or later chunks.

The chunk is also the persistence boundary: once a chunk group has finished,
each chunk is committed in chunk order, before the next group starts. The
commit receives the successful results sorted by ordering key together with
the chunk's last position, so results and progress can be written in one
transaction.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from core.config import settings
from core.exceptions import ConnectivityExhaustedError

logger = logging.getLogger(__name__)


def plan_chunks(
    total_units: int,
    available_workers: int,
    max_chunk_size: Optional[int] = None,
) -> int:
    """
    Chunk size for ``total_units``, keeping half the workers as headroom.

    ``ceil(total / max(1, workers // 2))`` with a floor of 1. With
    ``max_chunk_size`` a large range is cut into more chunks than workers, so
    at most ``max_chunk_size * workers // 2`` units are in flight at once.
    """
    effective_workers = max(1, available_workers // 2)
    size = max(1, math.ceil(total_units / effective_workers))
    if max_chunk_size is not None:
        size = min(size, max(1, max_chunk_size))
    return size


def split_into_chunks(units: Sequence[Any], chunk_size: int) -> List[List[Any]]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    return [list(units[i:i + chunk_size]) for i in range(0, len(units), chunk_size)]


@dataclass
class ChunkRunResult:
    """Totals for one ChunkScheduler.run call"""
    processed: int = 0
    failed: int = 0
    chunks: int = 0
    last_position: Optional[int] = None

    @property
    def attempted(self) -> int:
        return self.processed + self.failed

    @property
    def failure_ratio(self) -> float:
        return self.failed / self.attempted if self.attempted else 0.0


@dataclass
class _ChunkOutcome:
    results: List[Tuple[int, Any]]
    failed: int
    last_key: int


class ChunkScheduler:
    """
    Fan-out/fan-in driver for per-unit handlers.

    Args:
        unit_timeout: Seconds a single unit may take; a timeout counts as a
            unit failure, not a batch failure. None disables the timeout.
    """

    def __init__(self, unit_timeout: Optional[float] = None):
        self.unit_timeout = settings.UNIT_TIMEOUT_S if unit_timeout is None else unit_timeout

    async def _run_unit(self, handler: Callable[[Any], Awaitable[Any]], unit: Any) -> Any:
        if self.unit_timeout:
            return await asyncio.wait_for(handler(unit), timeout=self.unit_timeout)
        return await handler(unit)

    async def _process_chunk(
        self,
        chunk: List[Any],
        handler: Callable[[Any], Awaitable[Any]],
        key: Callable[[Any], int],
    ) -> _ChunkOutcome:
        outcomes = await asyncio.gather(
            *(self._run_unit(handler, unit) for unit in chunk),
            return_exceptions=True,
        )

        results: List[Tuple[int, Any]] = []
        failed = 0
        for unit, outcome in zip(chunk, outcomes):
            if isinstance(outcome, ConnectivityExhaustedError):
                raise outcome
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                failed += 1
                logger.warning(
                    f"Unit {key(unit)} failed: {type(outcome).__name__}: {outcome}"
                )
                continue
            results.append((key(unit), outcome))

        # Fetches finish in any order; writes must follow the ordering key
        results.sort(key=lambda pair: pair[0])
        return _ChunkOutcome(results=results, failed=failed, last_key=key(chunk[-1]))

    async def run(
        self,
        units: Sequence[Any],
        chunk_size: int,
        concurrency: int,
        handler: Callable[[Any], Awaitable[Any]],
        save: Callable[[List[Any], int, int], Awaitable[None]],
        key: Callable[[Any], int] = lambda unit: unit,
        on_chunk_saved: Optional[Callable[[int, int, int], Awaitable[None]]] = None,
    ) -> ChunkRunResult:
        """
        Process ``units`` chunk by chunk.

        Args:
            units: Work units in ordering-key order
            chunk_size: Units per chunk (see ``plan_chunks``)
            concurrency: Chunks processed at the same time
            handler: Fetch/transform coroutine for one unit
            save: Commits one chunk with (successful results sorted by key,
                last position of the chunk, failures); called for every
                chunk, even one without successful results
            key: Ordering key of a unit
            on_chunk_saved: Awaited after each chunk is committed with
                (last position of the chunk, successes, failures)

        Returns:
            ChunkRunResult with success and failure counts
        """
        summary = ChunkRunResult()
        if not units:
            return summary

        chunks = split_into_chunks(units, chunk_size)
        concurrency = max(1, concurrency)
        logger.info(
            f"Processing {len(units)} units in {len(chunks)} chunks "
            f"(chunk size {chunk_size}, concurrency {concurrency})"
        )

        for group_start in range(0, len(chunks), concurrency):
            group = chunks[group_start:group_start + concurrency]
            outcomes = await asyncio.gather(
                *(self._process_chunk(chunk, handler, key) for chunk in group)
            )

            for chunk, outcome in zip(group, outcomes):
                await save(
                    [result for _, result in outcome.results],
                    outcome.last_key,
                    outcome.failed,
                )

                summary.processed += len(outcome.results)
                summary.failed += outcome.failed
                summary.chunks += 1
                summary.last_position = outcome.last_key

                logger.info(
                    f"Chunk {key(chunk[0])}..{outcome.last_key} saved: "
                    f"{len(outcome.results)} ok, {outcome.failed} failed"
                )
                if on_chunk_saved is not None:
                    await on_chunk_saved(outcome.last_key, len(outcome.results), outcome.failed)

        return summary
