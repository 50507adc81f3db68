"""
Health check endpoint with database and stage status
"""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from api.dependencies import get_db
from ingestion.batch_admin import show_last_batch
from ingestion.lock_manager import LockManager
from ingestion.pipelines import lock_key
from models.base import StageType
from schemas.api import BatchRecordInfo, HealthCheckResponse, StageHealth
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(session_maker: async_sessionmaker = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Last batch and lock state of every stage
    """

    # Check database connectivity
    try:
        async with session_maker() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Database connection failed: {str(e)}")
        return HealthCheckResponse(database_connected=False)

    lock_manager = LockManager(session_maker)
    stages = []
    for stage_type in StageType:
        record = await show_last_batch(session_maker, stage_type)
        lock = await lock_manager.holder(lock_key(stage_type))
        stages.append(StageHealth(
            stage_type=stage_type,
            last_batch=BatchRecordInfo.from_record(record) if record else None,
            lock_holder=str(lock.holder_batch_key) if lock and lock.holder_batch_key else None,
            lock_status=lock.lock_status if lock else None,
        ))

    # Overall status is set by the validator in HealthCheckResponse
    return HealthCheckResponse(database_connected=True, stages=stages)
