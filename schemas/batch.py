"""
Pydantic schemas for batch run results and snapshots
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, Optional
from datetime import datetime
from uuid import UUID
from models.base import BatchStatus


class BatchSnapshot(BaseModel):
    """
    Final state of a batch as written by the progress tracker.

    The same model is serialized to the fallback file when the store is
    unreachable, and read back by the reconciliation pass.
    """
    batch_key: UUID
    status: BatchStatus
    end_time: Optional[datetime] = None
    last_processed_position: Optional[int] = None
    processed_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    retries: int = Field(default=0, ge=0)
    error_detail: Optional[str] = None


class RunBounds(BaseModel):
    """
    Explicit work range for a run.

    Any bound makes the run one-shot: the interval loop exits after it.
    """
    start: Optional[int] = Field(default=None, ge=0)
    end: Optional[int] = Field(default=None, ge=0)
    time_range: Optional[str] = None

    @field_validator("end")
    @classmethod
    def end_not_before_start(cls, v, info):
        start = info.data.get("start")
        if v is not None and start is not None and v < start:
            raise ValueError("end must not be before start")
        return v

    @property
    def is_bounded(self) -> bool:
        return self.start is not None or self.end is not None or self.time_range is not None


class RunResult(BaseModel):
    """Outcome of one BatchRunner invocation"""
    model_config = ConfigDict(use_enum_values=False)

    deferred: bool = False
    batch_key: Optional[UUID] = None
    status: Optional[BatchStatus] = None
    processed_count: int = 0
    failed_count: int = 0
    last_processed_position: Optional[int] = None
    start_position: Optional[int] = None
    end_position: Optional[int] = None
    retries: int = 0
    metrics: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def deferred_run(cls) -> "RunResult":
        return cls(deferred=True)
