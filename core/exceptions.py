"""
Custom exceptions for the batch ETL pipeline with structured error context.

Every exception carries a context dictionary for logging and for the
``error_detail`` column of the batch record.

Exception Hierarchy:
    ETLException (base)
    ├── ExtractionError
    │   ├── RPCError
    │   ├── NetworkError (retryable)
    │   └── ConnectivityExhaustedError
    ├── TransformationError
    ├── LoadError
    │   ├── DatabaseError
    │   │   ├── DatabaseConnectionError (retryable)
    │   │   └── DeadlockError (retryable)
    │   └── UpsertError
    ├── BatchError
    │   ├── LockError
    │   ├── ProgressError
    │   ├── BatchStateError
    │   ├── BatchInterruptedError
    │   └── FailureThresholdExceeded
    ├── TimeRangeError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ETLException(Exception):
    """
    Base exception for all ETL-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (stage, batch key, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts and dropped connections
    - Database deadlocks
    - Temporary database connection issues
    """
    pass


class NonRetryableError(ETLException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Malformed RPC responses
    - Invalid command-line input
    - Violated batch state preconditions
    """
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(ETLException):
    """Base exception for data extraction failures."""
    pass


class RPCError(NonRetryableError, ExtractionError):
    """
    The node answered with a JSON-RPC error object or an unusable payload.

    Context should include:
        - endpoint: The RPC endpoint
        - method: The JSON-RPC method
        - rpc_error: The error object returned by the node
    """
    pass


class NetworkError(RetryableError, ExtractionError):
    """Network-related errors that should be retried."""
    pass


class ConnectivityExhaustedError(ExtractionError):
    """
    Raised when every connectivity attempt has failed.

    The process is expected to terminate instead of looping: the
    infrastructure is down, not just this run.
    """

    def __init__(
        self,
        message: str,
        attempts: int,
        last_error: BaseException,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = dict(context or {})
        context["attempts"] = attempts
        super().__init__(message, context, original_exception=last_error)
        self.attempts = attempts
        self.last_error = last_error


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(ETLException):
    """
    A staged row could not be turned into facts.

    Context should include:
        - block_number: The staged block
        - reason: What was missing or malformed
    """
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(ETLException):
    """Base exception for data loading failures."""
    pass


class DatabaseError(LoadError):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation (INSERT, UPDATE, UPSERT)
        - table_name: Name of the table
    """
    pass


class DatabaseConnectionError(RetryableError, DatabaseError):
    """Database connection errors that should be retried."""
    pass


class DeadlockError(RetryableError, DatabaseError):
    """Database deadlock errors that should be retried."""
    pass


class UpsertError(LoadError):
    """
    Exception raised when a bulk upsert fails.

    Context should include:
        - table_name: Target table
        - batch_size: Number of rows in the write
        - first_position / last_position: Ordering keys covered by the write
    """
    pass


# ============================================================================
# Batch Errors
# ============================================================================

class BatchError(ETLException):
    """Base exception for batch lifecycle failures."""
    pass


class LockError(BatchError):
    """Lock bookkeeping failed (not raised for a lock held by another run)."""
    pass


class ProgressError(BatchError):
    """
    Progress could not be read or written.

    Context should include:
        - batch_key: Batch being tracked
        - position: Position being recorded (if applicable)
    """
    pass


class BatchStateError(NonRetryableError, BatchError):
    """A pause/resume/show request violated the batch state precondition."""
    pass


class BatchInterruptedError(BatchError):
    """The running batch was paused or canceled externally; the run stops cleanly."""
    pass


class FailureThresholdExceeded(NonRetryableError, BatchError):
    """Too many units failed for the run to count as successful."""
    pass


class TimeRangeError(NonRetryableError):
    """A lookback duration string could not be parsed."""
    pass
