from sqlalchemy import Column, String, Enum, DateTime, Uuid
from models.base import Base, LockStatus, utc_now


class BatchLock(Base):
    """
    Arbiter row for a named advisory lock.

    Design:
    - One row per lock key, created on first acquisition
    - Acquisition is a single conditional upsert on this row, so two runners
      can never both observe "free" and proceed
    - holder_batch_key identifies the batch record that owns the lock;
      that record's lock_* columns mirror this row
    """
    __tablename__ = "batch_locks"

    lock_key = Column(String(100), primary_key=True)
    holder_batch_key = Column(Uuid(as_uuid=True), nullable=False)
    lock_status = Column(Enum(LockStatus), nullable=False, default=LockStatus.LOCKED)
    lock_time = Column(DateTime, nullable=False, default=utc_now)
