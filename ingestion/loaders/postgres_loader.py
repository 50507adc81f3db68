"""
Load staged blocks and activity facts with idempotent conflict handling
"""

from typing import Any, Dict, List
from sqlalchemy import case
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import dialect_insert, translate_db_error
from models.base import utc_now
from models.raw_block import RawBlock
from models.chain_activity import FactChainDailyActivity
import logging

logger = logging.getLogger(__name__)


class BlockLoader:
    """
    Insert fetched blocks into ``raw_blocks``.

    Ensures:
    - No duplicate rows on repeated runs (existing (chain, number) is skipped)
    - Runs inside the caller's transaction (no commit here)
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def load(self, rows: List[Dict[str, Any]]) -> int:
        """
        Insert block rows, ignoring ones already staged.

        Returns:
            Number of rows sent to the store
        """
        if not rows:
            return 0

        stmt = dialect_insert(self.db, RawBlock).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["chain", "number"])
        try:
            await self.db.execute(stmt)
        except DBAPIError as e:
            raise translate_db_error(
                e,
                RawBlock.__tablename__,
                batch_size=len(rows),
                first_position=rows[0]["number"],
                last_position=rows[-1]["number"],
            )

        logger.info(f"Staged blocks {rows[0]['number']}..{rows[-1]['number']} ({len(rows)} rows)")
        return len(rows)


class ActivityLoader:
    """
    Fold per-day aggregates into ``fact_chain_daily_activity``.

    Counts are added to an existing row and the block bounds widened, so the
    same aggregate must only be loaded once (the transform cursor ensures it).
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def load(self, aggregates: List[Dict[str, Any]]) -> int:
        if not aggregates:
            return 0

        table = FactChainDailyActivity.__table__
        now = utc_now()
        for aggregate in aggregates:
            stmt = dialect_insert(self.db, FactChainDailyActivity).values(
                **aggregate, updated_at=now
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["chain", "day"],
                set_={
                    "block_count": table.c.block_count + stmt.excluded.block_count,
                    "extrinsic_count": table.c.extrinsic_count + stmt.excluded.extrinsic_count,
                    "first_block": case(
                        (table.c.first_block <= stmt.excluded.first_block, table.c.first_block),
                        else_=stmt.excluded.first_block,
                    ),
                    "last_block": case(
                        (table.c.last_block >= stmt.excluded.last_block, table.c.last_block),
                        else_=stmt.excluded.last_block,
                    ),
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            try:
                await self.db.execute(stmt)
            except DBAPIError as e:
                raise translate_db_error(
                    e,
                    FactChainDailyActivity.__tablename__,
                    batch_size=len(aggregates),
                    day=str(aggregate["day"]),
                )

        logger.info(f"Folded activity for {len(aggregates)} day(s)")
        return len(aggregates)
