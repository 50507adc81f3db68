"""
Retry policy shared by network calls, transactions and deadlock handling.

An operation is retried only while its failures classify as TRANSIENT;
FATAL errors propagate on the first failure. Two delay strategies are used:

- ``LinearBackoff``: short delay growing with the attempt number
  (100 ms x attempt) for intra-transaction retries such as deadlocks
- ``FixedDelay``: constant, longer delay for connectivity retries against
  external services

When connectivity attempts run out the policy raises
``ConnectivityExhaustedError`` so the caller terminates the process instead
of looping. Exhaustion never swallows the last error.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
from sqlalchemy.exc import DBAPIError, OperationalError

from core.config import settings
from core.database import is_deadlock
from core.exceptions import (
    ConnectivityExhaustedError,
    NonRetryableError,
    RetryableError,
)

logger = logging.getLogger(__name__)


class Classification(str, enum.Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


def classify_error(error: BaseException) -> Classification:
    """Default classifier: deadlocks, lost connections and timeouts are transient."""
    if isinstance(error, NonRetryableError):
        return Classification.FATAL
    if isinstance(error, RetryableError):
        return Classification.TRANSIENT
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return Classification.TRANSIENT
    if isinstance(error, DBAPIError):
        if error.connection_invalidated:
            return Classification.TRANSIENT
        if is_deadlock(error):
            return Classification.TRANSIENT
        if isinstance(error, OperationalError) and "connect" in str(error.orig or error).lower():
            return Classification.TRANSIENT
    return Classification.FATAL


class LinearBackoff:
    """Delay of ``base_seconds * attempt``."""

    def __init__(self, base_seconds: float):
        self.base_seconds = base_seconds

    def __call__(self, attempt: int) -> float:
        return self.base_seconds * attempt


class FixedDelay:
    """Same delay before every retry."""

    def __init__(self, seconds: float):
        self.seconds = seconds

    def __call__(self, attempt: int) -> float:
        return self.seconds


async def with_retry(
    operation: Callable[[], Awaitable[Any]],
    max_attempts: int,
    classify: Callable[[BaseException], Classification] = classify_error,
    delay: Callable[[int], float] = LinearBackoff(0.1),
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    name: str = "operation",
) -> Any:
    """
    Invoke ``operation`` with bounded retries.

    Args:
        operation: Zero-argument coroutine function
        max_attempts: Total number of tries (1 means no retry)
        classify: Maps an error to TRANSIENT or FATAL
        delay: Seconds to wait before retry number ``attempt`` (1-based)
        on_retry: Called with (attempt, error) before each retry
        name: Label used in log messages

    Returns:
        Whatever ``operation`` returns

    Raises:
        The last error once attempts are exhausted, or a FATAL error at once
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if classify(e) is Classification.FATAL:
                raise
            if attempt >= max_attempts:
                logger.error(f"{name} failed after {attempt} attempts: {e}")
                raise
            wait = delay(attempt)
            logger.warning(
                f"{name} failed with transient error, retrying in {wait:.2f}s "
                f"({attempt}/{max_attempts}): {e}"
            )
            if on_retry is not None:
                on_retry(attempt, e)
            await asyncio.sleep(wait)
            attempt += 1


@dataclass
class RetryPolicy:
    """Bundle of retry parameters applied to many operations."""

    max_attempts: int = 3
    delay: Callable[[int], float] = LinearBackoff(0.1)
    classify: Callable[[BaseException], Classification] = classify_error
    escalate_on_exhaustion: bool = False
    name: str = "operation"

    @classmethod
    def for_transactions(cls, max_attempts: Optional[int] = None) -> "RetryPolicy":
        """Deadlock / lost-connection retries inside the store (100 ms x attempt)."""
        return cls(
            max_attempts=max_attempts or settings.MAX_RETRIES,
            delay=LinearBackoff(settings.DEADLOCK_RETRY_BASE_MS / 1000),
            name="transaction",
        )

    @classmethod
    def for_connectivity(
        cls,
        max_attempts: Optional[int] = None,
        delay_seconds: Optional[float] = None,
    ) -> "RetryPolicy":
        """Connection attempts against external services; exhaustion is process-fatal."""
        return cls(
            max_attempts=max_attempts or settings.CONNECT_MAX_ATTEMPTS,
            delay=FixedDelay(
                settings.CONNECT_RETRY_DELAY_S if delay_seconds is None else delay_seconds
            ),
            escalate_on_exhaustion=True,
            name="connect",
        )

    async def run(
        self,
        operation: Callable[..., Awaitable[Any]],
        *args: Any,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
        **kwargs: Any,
    ) -> Any:
        async def call():
            return await operation(*args, **kwargs)

        try:
            return await with_retry(
                call,
                max_attempts=self.max_attempts,
                classify=self.classify,
                delay=self.delay,
                on_retry=on_retry,
                name=self.name,
            )
        except Exception as e:
            if self.escalate_on_exhaustion and self.classify(e) is Classification.TRANSIENT:
                raise ConnectivityExhaustedError(
                    f"{self.name} failed after {self.max_attempts} attempts",
                    attempts=self.max_attempts,
                    last_error=e,
                ) from e
            raise
