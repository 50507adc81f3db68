"""
Batch record endpoints (read-only)
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import async_sessionmaker
from api.dependencies import get_db
from ingestion.batch_admin import recent_batches, show_last_batch
from models.base import StageType
from schemas.api import BatchListResponse, BatchRecordInfo
from typing import Optional
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Batches"])


@router.get("/batches", response_model=BatchListResponse)
async def list_batches(
    request: Request,
    stage_type: Optional[StageType] = Query(None, description="Filter by stage"),
    limit: int = Query(20, ge=1, le=500, description="Maximum records returned"),
    session_maker: async_sessionmaker = Depends(get_db),
):
    """Most recent batch records, newest first."""
    request_id = getattr(request.state, "request_id", "-")
    logger.info(f"[{request_id}] GET /batches - stage_type={stage_type}, limit={limit}")

    records = await recent_batches(session_maker, stage_type=stage_type, limit=limit)
    items = [BatchRecordInfo.from_record(record) for record in records]
    return BatchListResponse(items=items, total_items=len(items), stage_type=stage_type)


@router.get("/batches/{stage_type}/last", response_model=BatchRecordInfo)
async def last_batch(
    stage_type: StageType,
    session_maker: async_sessionmaker = Depends(get_db),
):
    """Most recently started batch of a stage, fields as stored."""
    record = await show_last_batch(session_maker, stage_type)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No {stage_type.value} batches found")
    return BatchRecordInfo.from_record(record)
