"""
Core utilities and configuration for the chain ETL system.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Async engine and session factories
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration, run metrics and per-batch log capture

Usage:
    from core.config import settings
    from core.database import get_session_maker
    from core.exceptions import ConnectivityExhaustedError, LockError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Open a session
    async with get_session_maker()() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "get_session_maker",
    "setup_logging",
    # Exceptions
    "ETLException",
    "RetryableError",
    "NonRetryableError",
    "ExtractionError",
    "RPCError",
    "NetworkError",
    "ConnectivityExhaustedError",
    "TransformationError",
    "LoadError",
    "DatabaseError",
    "DatabaseConnectionError",
    "DeadlockError",
    "UpsertError",
    "BatchError",
    "LockError",
    "ProgressError",
    "BatchStateError",
    "BatchInterruptedError",
    "FailureThresholdExceeded",
    "TimeRangeError",
]
