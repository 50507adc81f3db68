"""
Transform staged blocks into daily chain activity facts
"""

from collections import OrderedDict
from datetime import timezone
from typing import Dict, Any, List, Optional, Sequence
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from core.config import settings
from core.exceptions import TimeRangeError, TransformationError
from ingestion.loaders.postgres_loader import ActivityLoader
from models.base import BatchStatus, StageType
from models.chain_activity import FactChainDailyActivity
from models.raw_block import RawBlock
import logging

logger = logging.getLogger(__name__)


class ChainActivityTransformStage:
    """
    Fold staged blocks into one activity row per chain and day.

    Handles:
    - Positions are block numbers of staged rows
    - Cursor is the highest block already folded into the facts
    - Per-day aggregation of each saved chunk
    """

    name = "transform"
    stage_type = StageType.TRANSFORM
    success_status = BatchStatus.COMPLETED

    def __init__(
        self,
        session_maker: async_sessionmaker,
        chain: Optional[str] = None,
        lock_key: Optional[str] = None,
    ):
        self.session_maker = session_maker
        self.chain = chain or settings.CHAIN_NAME
        self.lock_key = lock_key or settings.TRANSFORM_LOCK_KEY

    async def latest_position(self) -> int:
        """Highest staged block (-1 when nothing is staged)."""
        async with self.session_maker() as session:
            latest = (
                await session.execute(
                    select(func.max(RawBlock.number)).where(RawBlock.chain == self.chain)
                )
            ).scalar()
        return -1 if latest is None else latest

    async def timestamp_at(self, position: int) -> int:
        """Time of the first staged block at or after ``position``."""
        async with self.session_maker() as session:
            timestamp = (
                await session.execute(
                    select(RawBlock.timestamp)
                    .where(RawBlock.chain == self.chain, RawBlock.number >= position)
                    .order_by(RawBlock.number)
                    .limit(1)
                )
            ).scalar()
        if timestamp is None:
            raise TimeRangeError(
                f"No staged block at or after {position}",
                context={"chain": self.chain, "position": position},
            )
        return int(timestamp.replace(tzinfo=timezone.utc).timestamp() * 1000)

    async def last_processed_position(self, session: AsyncSession) -> Optional[int]:
        return (
            await session.execute(
                select(func.max(FactChainDailyActivity.last_block)).where(
                    FactChainDailyActivity.chain == self.chain
                )
            )
        ).scalar()

    async def fetch_units(self, start: int, end: int) -> Sequence[Dict[str, Any]]:
        async with self.session_maker() as session:
            rows = (
                await session.execute(
                    select(RawBlock.number, RawBlock.timestamp, RawBlock.extrinsic_count)
                    .where(
                        RawBlock.chain == self.chain,
                        RawBlock.number >= start,
                        RawBlock.number <= end,
                    )
                    .order_by(RawBlock.number)
                )
            ).all()
        return [
            {"number": number, "timestamp": timestamp, "extrinsic_count": extrinsic_count}
            for number, timestamp, extrinsic_count in rows
        ]

    def unit_key(self, unit: Dict[str, Any]) -> int:
        return unit["number"]

    async def process_unit(self, unit: Dict[str, Any]) -> Dict[str, Any]:
        if unit.get("timestamp") is None:
            raise TransformationError(
                f"Block {unit['number']} has no timestamp",
                context={"block_number": unit["number"], "reason": "missing timestamp"},
            )
        return {
            "number": unit["number"],
            "day": unit["timestamp"].date(),
            "extrinsic_count": unit.get("extrinsic_count") or 0,
        }

    def aggregate(self, results: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Group per-block results into one aggregate per day."""
        days: "OrderedDict[Any, Dict[str, Any]]" = OrderedDict()
        for result in results:
            day = days.get(result["day"])
            if day is None:
                days[result["day"]] = {
                    "chain": self.chain,
                    "day": result["day"],
                    "block_count": 1,
                    "extrinsic_count": result["extrinsic_count"],
                    "first_block": result["number"],
                    "last_block": result["number"],
                }
                continue
            day["block_count"] += 1
            day["extrinsic_count"] += result["extrinsic_count"]
            day["first_block"] = min(day["first_block"], result["number"])
            day["last_block"] = max(day["last_block"], result["number"])
        return list(days.values())

    async def save_results(self, session: AsyncSession, results: List[Dict[str, Any]]) -> None:
        await ActivityLoader(session).load(self.aggregate(results))
