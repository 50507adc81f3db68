"""
Extract stage: copy chain blocks into the ``raw_blocks`` staging table.

Work units are block numbers. Each unit resolves the block hash, fetches the
block body and its timestamp, and yields one staging row. The stage cursor is
the highest block already staged for the chain.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from ingestion.extractors.rpc_client import SubstrateRPCClient
from ingestion.loaders.postgres_loader import BlockLoader
from models.base import BatchStatus, StageType
from models.raw_block import RawBlock

logger = logging.getLogger(__name__)


def ms_to_datetime(timestamp_ms: int) -> datetime:
    """Epoch milliseconds to a naive UTC datetime."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).replace(tzinfo=None)


class ChainExtractStage:
    """
    Block extraction from a Substrate node.

    Attributes:
        client: JSON-RPC client for the chain
        chain: Chain label stored on every row
    """

    name = "extract"
    stage_type = StageType.EXTRACT
    success_status = BatchStatus.SUCCESS

    def __init__(
        self,
        client: SubstrateRPCClient,
        chain: Optional[str] = None,
        lock_key: Optional[str] = None,
    ):
        self.client = client
        self.chain = chain or settings.CHAIN_NAME
        self.lock_key = lock_key or settings.EXTRACT_LOCK_KEY

    async def latest_position(self) -> int:
        return await self.client.latest_block_number()

    async def timestamp_at(self, position: int) -> int:
        block_hash = await self.client.block_hash(position)
        return await self.client.timestamp_ms(block_hash)

    async def last_processed_position(self, session: AsyncSession) -> Optional[int]:
        return (
            await session.execute(
                select(func.max(RawBlock.number)).where(RawBlock.chain == self.chain)
            )
        ).scalar()

    async def fetch_units(self, start: int, end: int) -> Sequence[int]:
        return list(range(start, end + 1))

    def unit_key(self, unit: int) -> int:
        return unit

    async def process_unit(self, unit: int) -> Dict[str, Any]:
        block_hash = await self.client.block_hash(unit)
        block = await self.client.block(block_hash)
        timestamp_ms = await self.client.timestamp_ms(block_hash)

        extrinsics = block.get("extrinsics") or []
        return {
            "chain": self.chain,
            "number": unit,
            "block_hash": block_hash,
            "parent_hash": block.get("header", {}).get("parentHash"),
            "timestamp": ms_to_datetime(timestamp_ms),
            "extrinsic_count": len(extrinsics),
            "extrinsics": extrinsics,
        }

    async def save_results(self, session: AsyncSession, results: List[Dict[str, Any]]) -> None:
        await BlockLoader(session).load(results)
