"""
Pydantic schemas for validation and serialization.

Schemas:
    batch: Run bounds, run results and final batch snapshots
    api: Status API response models

Usage:
    from schemas.batch import BatchSnapshot, RunBounds, RunResult
    from schemas.api import BatchRecordInfo, HealthCheckResponse
"""

__all__ = [
    "BatchSnapshot",
    "RunBounds",
    "RunResult",
    "BatchRecordInfo",
    "BatchListResponse",
    "HealthCheckResponse",
    "StageHealth",
    "ErrorResponse",
]
