"""
Wiring of the configured stages into runners.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from ingestion.base import Stage
from ingestion.extractors.chain_extractor import ChainExtractStage
from ingestion.extractors.rpc_client import SubstrateRPCClient
from ingestion.runner import BatchRunner
from ingestion.transformers.activity import ChainActivityTransformStage
from models.base import StageType


def build_stage(
    stage_type: StageType,
    session_maker: async_sessionmaker,
    rpc_client: Optional[SubstrateRPCClient] = None,
) -> Stage:
    if stage_type == StageType.EXTRACT:
        if rpc_client is None:
            raise ValueError("The extract stage needs an RPC client")
        return ChainExtractStage(rpc_client)
    if stage_type == StageType.TRANSFORM:
        return ChainActivityTransformStage(session_maker)
    raise ValueError(f"Unknown stage type: {stage_type}")


def build_runner(
    stage_type: StageType,
    session_maker: async_sessionmaker,
    rpc_client: Optional[SubstrateRPCClient] = None,
) -> BatchRunner:
    return BatchRunner(build_stage(stage_type, session_maker, rpc_client), session_maker)


def interval_ms(stage_type: StageType) -> int:
    """Configured time between two runs of ``stage_type``."""
    if stage_type == StageType.EXTRACT:
        return settings.EXTRACT_INTERVAL_MS
    return settings.TRANSFORM_INTERVAL_MS


def lock_key(stage_type: StageType) -> str:
    if stage_type == StageType.EXTRACT:
        return settings.EXTRACT_LOCK_KEY
    return settings.TRANSFORM_LOCK_KEY
