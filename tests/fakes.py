"""
In-memory stand-ins for external services used across the test suite
"""

import asyncio
from typing import Any, Dict, Optional, Set

from core.exceptions import RPCError

# 2024-01-15T00:00:00Z, one block every 12 seconds
GENESIS_MS = 1705276800000
BLOCK_TIME_MS = 12000


def block_hash_of(number: int) -> str:
    return f"0x{number:064x}"


class FakeChainClient:
    """Linear chain with the SubstrateRPCClient methods the extract stage calls."""

    def __init__(
        self,
        head: int = 20,
        failing_blocks: Optional[Set[int]] = None,
        delay: float = 0.0,
    ):
        self.head = head
        self.failing_blocks = set(failing_blocks or ())
        self.delay = delay
        self.fetched = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def latest_block_number(self) -> int:
        return self.head

    async def block_hash(self, number: int) -> str:
        if number > self.head:
            raise RPCError(f"Block {number} not found", context={"block_number": number})
        return block_hash_of(number)

    async def block(self, block_hash: str) -> Dict[str, Any]:
        number = int(block_hash, 16)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if number in self.failing_blocks:
                raise RPCError(f"Block {number} is broken", context={"block_number": number})
        finally:
            self.in_flight -= 1
        self.fetched.append(number)
        return {
            "header": {"number": hex(number), "parentHash": block_hash_of(max(number - 1, 0))},
            "extrinsics": ["0x00"] * (number % 3 + 1),
        }

    async def timestamp_ms(self, block_hash: str) -> int:
        return GENESIS_MS + int(block_hash, 16) * BLOCK_TIME_MS
