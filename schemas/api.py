"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List
from datetime import datetime, timezone
from models.base import BatchStatus, LockStatus, StageType


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Batch Schemas
# ============================================================================

class BatchRecordInfo(BaseModel):
    """Batch record fields as stored"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    batch_key: str
    stage_type: StageType
    status: BatchStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    retry_count: int = 0
    processed_count: int = 0
    failed_count: int = 0
    last_processed_position: Optional[int] = None
    lock_key: Optional[str] = None
    lock_time: Optional[datetime] = None
    lock_status: Optional[LockStatus] = None
    error_detail: Optional[str] = None

    @classmethod
    def from_record(cls, record) -> "BatchRecordInfo":
        """Build from an ORM record, converting the UUID key to string"""
        return cls(
            id=record.id,
            batch_key=str(record.batch_key),
            stage_type=record.stage_type,
            status=record.status,
            start_time=record.start_time,
            end_time=record.end_time,
            retry_count=record.retry_count or 0,
            processed_count=record.processed_count or 0,
            failed_count=record.failed_count or 0,
            last_processed_position=record.last_processed_position,
            lock_key=record.lock_key,
            lock_time=record.lock_time,
            lock_status=record.lock_status,
            error_detail=record.error_detail,
        )


class BatchListResponse(BaseModel):
    """Recent batch records, newest first"""
    items: List[BatchRecordInfo]
    total_items: int
    stage_type: Optional[StageType] = None


# ============================================================================
# Health Check Schemas
# ============================================================================

class StageHealth(BaseModel):
    """Last known state of one pipeline stage"""
    stage_type: StageType
    last_batch: Optional[BatchRecordInfo] = None
    lock_holder: Optional[str] = None
    lock_status: Optional[LockStatus] = None


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=_now)
    database_connected: bool
    stages: List[StageHealth] = Field(default_factory=list)

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status"""
        if not self.database_connected:
            self.status = "unhealthy"
            return self

        failed = [
            s for s in self.stages
            if s.last_batch is not None and s.last_batch.status == BatchStatus.FAILED
        ]
        if not failed:
            self.status = "healthy"
        elif len(failed) < len(self.stages):
            self.status = "degraded"
        else:
            self.status = "unhealthy"
        return self


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)
