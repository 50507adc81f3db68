"""
Logging configuration and per-run logging/metrics context.

``setup_logging`` configures the process once. Everything that belongs to a
single batch run (the batch-key prefix, the log entries persisted into the
batch record, counters and phase durations) lives in a ``BatchLogAdapter``
and ``RunMetrics`` created for that run and passed to its collaborators.
"""

import logging
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from core.config import settings


def setup_logging(level: Optional[str] = None):
    """Configure application logging"""

    # Get log level from settings
    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    # Configure root logger
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Set SQLAlchemy and HTTP client logging to WARNING to reduce noise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {level_name} level")


@dataclass
class RunMetrics:
    """Counters and timings for one batch run."""

    success_count: int = 0
    error_count: int = 0
    retries: int = 0
    durations_ms: Dict[str, float] = field(default_factory=dict)

    @property
    def total_processed(self) -> int:
        return self.success_count + self.error_count

    @property
    def throughput(self) -> float:
        """Share of successful units, in percent."""
        if self.total_processed == 0:
            return 0.0
        return self.success_count / self.total_processed * 100

    def record_success(self, count: int = 1) -> None:
        self.success_count += count

    def record_error(self, count: int = 1) -> None:
        self.error_count += count

    def record_retry(self) -> None:
        self.retries += 1

    @contextmanager
    def timed(self, label: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.durations_ms[label] = (time.perf_counter() - started) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "retries": self.retries,
            "throughput": round(self.throughput, 2),
            "durations_ms": {k: round(v, 1) for k, v in self.durations_ms.items()},
        }


class BatchLogAdapter(logging.LoggerAdapter):
    """
    Logger adapter bound to one batch.

    Messages go to the wrapped logger prefixed with the batch key. Entries at
    or above ``capture_level`` are also buffered so they can be appended to
    the batch record's ``logs`` column when the run is finalized.
    """

    def __init__(
        self,
        logger: logging.Logger,
        batch_key: str,
        capture_level: int = logging.INFO,
    ):
        super().__init__(logger, {"batch_key": batch_key})
        self.batch_key = batch_key
        self.capture_level = capture_level
        self.entries: List[Dict[str, Any]] = []

    def process(self, msg, kwargs):
        return f"[{self.batch_key}] {msg}", kwargs

    def log(self, level, msg, *args, detail: Optional[Dict[str, Any]] = None, **kwargs):
        if level >= self.capture_level:
            self.entries.append({
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": logging.getLevelName(level).lower(),
                "message": msg % args if args else str(msg),
                "detail": detail,
            })
        super().log(level, msg, *args, **kwargs)

    def drain(self) -> List[Dict[str, Any]]:
        """Return buffered entries and clear the buffer."""
        entries, self.entries = self.entries, []
        return entries
