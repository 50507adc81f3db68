"""
Substrate JSON-RPC client over HTTP.

Only the handful of calls the extract stage needs are wrapped:
- chain_getHeader: latest block number
- chain_getBlockHash: hash of a block number
- chain_getBlock: block body (header and extrinsics)
- state_getStorage(Timestamp.Now): block time in milliseconds

Endpoints are tried in order; a transport failure moves the client to the
next one. Connecting is guarded by the connectivity retry policy, so an
unreachable chain ends in ConnectivityExhaustedError.
"""

import itertools
import logging
from typing import Any, Dict, List, Optional

import httpx

from core.config import settings
from core.exceptions import NetworkError, RPCError
from ingestion.retry import RetryPolicy

logger = logging.getLogger(__name__)

# twox128("Timestamp") ++ twox128("Now")
TIMESTAMP_NOW_KEY = "0xf0c365c3cf59d671eb72da0e7a4113c49f1f0515f462cdcf84e0f1d6045dfcbb"


def decode_u64_le(value: str) -> int:
    """Decode a SCALE-encoded u64 (little-endian hex, 0x-prefixed)."""
    raw = bytes.fromhex(value[2:] if value.startswith("0x") else value)
    return int.from_bytes(raw[:8], "little")


class SubstrateRPCClient:
    """
    Minimal async JSON-RPC client for a Substrate node.

    Attributes:
        urls: Endpoints in preference order
        timeout: Per-request timeout in seconds
        connect_policy: Retry policy for reaching any endpoint
    """

    def __init__(
        self,
        urls: Optional[List[str]] = None,
        timeout: float = 30.0,
        connect_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.urls = list(urls or settings.CHAIN_RPC_URLS)
        if not self.urls:
            raise ValueError("At least one RPC endpoint is required")
        self.timeout = timeout
        self.connect_policy = connect_policy or RetryPolicy.for_connectivity()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._endpoint_index = 0
        self._ids = itertools.count(1)

    @property
    def endpoint(self) -> str:
        return self.urls[self._endpoint_index]

    def _rotate(self) -> None:
        self._endpoint_index = (self._endpoint_index + 1) % len(self.urls)

    async def __aenter__(self) -> "SubstrateRPCClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def connect(self) -> None:
        """Find a responsive endpoint, retrying with the connectivity policy."""
        self._ensure_client()

        async def ping() -> None:
            last_error: Optional[BaseException] = None
            for _ in range(len(self.urls)):
                try:
                    await self._post("system_chain", [])
                    logger.info(f"Connected to RPC endpoint {self.endpoint}")
                    return
                except NetworkError as e:
                    last_error = e
            raise NetworkError(
                "No RPC endpoint reachable",
                context={"endpoints": self.urls},
                original_exception=last_error,
            )

        await self.connect_policy.run(ping)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, method: str, params: List[Any]) -> Any:
        client = self._ensure_client()
        endpoint = self.endpoint
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

        try:
            response = await client.post(endpoint, json=payload)
        except httpx.TransportError as e:
            self._rotate()
            raise NetworkError(
                f"RPC transport error calling {method}",
                context={"endpoint": endpoint, "method": method},
                original_exception=e,
            )

        if response.status_code >= 500 or response.status_code == 429:
            self._rotate()
            raise NetworkError(
                f"RPC endpoint returned HTTP {response.status_code}",
                context={"endpoint": endpoint, "method": method, "status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise RPCError(
                f"RPC endpoint rejected {method} with HTTP {response.status_code}",
                context={"endpoint": endpoint, "method": method, "status_code": response.status_code},
            )

        try:
            body: Dict[str, Any] = response.json()
        except ValueError as e:
            raise RPCError(
                f"Invalid JSON in {method} response",
                context={"endpoint": endpoint, "method": method},
                original_exception=e,
            )

        if body.get("error") is not None:
            raise RPCError(
                f"RPC call {method} failed",
                context={"endpoint": endpoint, "method": method, "rpc_error": body["error"]},
            )
        return body.get("result")

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        return await self._post(method, params or [])

    async def latest_block_number(self) -> int:
        """Head block number; an unreachable chain escalates like a failed connect."""
        header = await self.connect_policy.run(self.call, "chain_getHeader")
        return int(header["number"], 16)

    async def block_hash(self, number: int) -> str:
        block_hash = await self.call("chain_getBlockHash", [number])
        if not block_hash:
            raise RPCError(
                f"Block {number} not found",
                context={"endpoint": self.endpoint, "block_number": number},
            )
        return block_hash

    async def block(self, block_hash: str) -> Dict[str, Any]:
        result = await self.call("chain_getBlock", [block_hash])
        if not result or "block" not in result:
            raise RPCError(
                f"Block {block_hash} has no body",
                context={"endpoint": self.endpoint, "block_hash": block_hash},
            )
        return result["block"]

    async def timestamp_ms(self, block_hash: str) -> int:
        """Block time from Timestamp.Now at ``block_hash``."""
        value = await self.call("state_getStorage", [TIMESTAMP_NOW_KEY, block_hash])
        if not value:
            raise RPCError(
                f"No timestamp stored at block {block_hash}",
                context={"endpoint": self.endpoint, "block_hash": block_hash},
            )
        return decode_u64_le(value)
