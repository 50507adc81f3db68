from datetime import datetime, timezone
from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================================
# ENUMS
# ============================================================================

class StageType(str, enum.Enum):
    """Pipeline stage a batch belongs to"""
    EXTRACT = "extract"
    TRANSFORM = "transform"


class BatchStatus(str, enum.Enum):
    """Batch run status"""
    RUNNING = "running"
    PAUSED = "paused"
    SUCCESS = "success"
    FAILED = "failed"
    COMPLETED = "completed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    BatchStatus.SUCCESS,
    BatchStatus.FAILED,
    BatchStatus.COMPLETED,
    BatchStatus.CANCELED,
})


class LockStatus(str, enum.Enum):
    """Lock ownership state"""
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    FAILED = "failed"
