"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class and shared enums (StageType, BatchStatus, LockStatus)
    batch_record: One row per batch run (status, lock mirror, progress, logs)
    batch_lock: Arbiter row per lock key for atomic acquisition
    raw_block: Staged blocks written by the extract stage
    chain_activity: Daily activity facts written by the transform stage

Database Schema:
    JSON columns use JSONB on PostgreSQL and plain JSON on other backends,
    so the same models run against SQLite in tests.

Usage:
    from models import BatchRecord, BatchLock, RawBlock
    from models.base import StageType, BatchStatus, LockStatus
"""

from models.base import Base, StageType, BatchStatus, LockStatus
from models.batch_record import BatchRecord
from models.batch_lock import BatchLock
from models.raw_block import RawBlock
from models.chain_activity import FactChainDailyActivity

__all__ = [
    "Base",
    "StageType",
    "BatchStatus",
    "LockStatus",
    "BatchRecord",
    "BatchLock",
    "RawBlock",
    "FactChainDailyActivity",
]
