"""
Capability set every pipeline stage provides to the BatchRunner.

A stage is any object with these members; there is no base class to
inherit from. The runner owns locking, progress, chunking, retries and the
transaction around ``save_results``; the stage only knows how to find, fetch
and store its own data.
"""

from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

from sqlalchemy.ext.asyncio import AsyncSession

from models.base import BatchStatus, StageType


@runtime_checkable
class Stage(Protocol):
    """
    Pipeline stage capabilities.

    Attributes:
        name: Label used in logs
        stage_type: Batch lineage the runs belong to
        lock_key: Lock guarding the stage
        success_status: Terminal status of a successful run
    """

    name: str
    stage_type: StageType
    lock_key: str
    success_status: BatchStatus

    async def latest_position(self) -> int:
        """Newest position available at the source (-1 if nothing yet)."""
        ...

    async def timestamp_at(self, position: int) -> int:
        """Wall-clock time of ``position`` in epoch milliseconds (monotonic)."""
        ...

    async def last_processed_position(self, session: AsyncSession) -> Optional[int]:
        """Highest position already persisted by this stage's sink."""
        ...

    async def fetch_units(self, start: int, end: int) -> Sequence[Any]:
        """Work units for [start, end], in ordering-key order."""
        ...

    def unit_key(self, unit: Any) -> int:
        """Ordering key of a unit."""
        ...

    async def process_unit(self, unit: Any) -> Any:
        """Fetch and transform one unit."""
        ...

    async def save_results(self, session: AsyncSession, results: List[Any]) -> None:
        """Persist sorted results inside the runner's transaction."""
        ...
