from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Integer, Text, Index, Uuid
import uuid
from models.base import Base, BatchStatus, LockStatus, StageType, JSONType, utc_now


class BatchRecord(Base):
    """
    One row per pipeline invocation attempt.

    Purpose:
    - Lock ownership for the run (mirrors the batch_locks arbiter row)
    - Durable progress (last processed position, processed counts) for resume
    - Audit trail of status, retries, errors and run logs

    Invariants:
    - end_time is set iff status is terminal
    - status RUNNING implies lock_status LOCKED
    - processed_count / last_processed_position only move forward
    """
    __tablename__ = "batch_records"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    batch_key = Column(Uuid(as_uuid=True), default=uuid.uuid4, unique=True, nullable=False, index=True)

    stage_type = Column(Enum(StageType), nullable=False, index=True)
    status = Column(Enum(BatchStatus), default=BatchStatus.RUNNING, nullable=False, index=True)

    # Timestamps
    start_time = Column(DateTime, nullable=False, default=utc_now, index=True)
    end_time = Column(DateTime, nullable=True)

    # Counters
    retry_count = Column(Integer, nullable=False, default=0)
    processed_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    last_processed_position = Column(BigInteger, nullable=True)

    # Lock ownership
    lock_key = Column(String(100), nullable=True, index=True)
    lock_time = Column(DateTime, nullable=True)
    lock_status = Column(Enum(LockStatus), nullable=True)

    # Error tracking
    error_detail = Column(Text, nullable=True)
    logs = Column(JSONType, nullable=True)  # [{timestamp, level, message, detail}]

    __table_args__ = (
        Index("idx_batch_stage_start", "stage_type", "start_time"),
        Index("idx_batch_stage_status", "stage_type", "status"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "batch_key": str(self.batch_key),
            "stage_type": self.stage_type.value if self.stage_type else None,
            "status": self.status.value if self.status else None,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "retry_count": self.retry_count,
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "last_processed_position": self.last_processed_position,
            "lock_key": self.lock_key,
            "lock_time": self.lock_time.isoformat() if self.lock_time else None,
            "lock_status": self.lock_status.value if self.lock_status else None,
            "error_detail": self.error_detail,
        }
