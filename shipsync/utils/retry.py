"""
Retry utilities with exponential backoff for API calls.

Shared by the ShipStation connector and the alert channels.
"""
import asyncio
import random
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Type

import aiohttp


@dataclass
class RetryStats:
    """Tracks retry statistics for a single operation."""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    last_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    delays: List[float] = field(default_factory=list)
    success: bool = False

    def record_attempt(self, error: Optional[str] = None, delay: float = 0.0):
        """Record an attempt, and the wait that follows it when retrying."""
        self.attempts += 1
        if delay:
            self.total_delay_seconds += delay
            self.delays.append(delay)
        if error:
            self.last_error = error
            self.errors.append(error)

    def mark_success(self):
        """Mark the operation as successful."""
        self.success = True

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/storage."""
        return {
            "attempts": self.attempts,
            "total_delay_seconds": round(self.total_delay_seconds, 2),
            "success": self.success,
            "last_error": self.last_error,
            "errors": self.errors[:5]  # Cap at 5 errors
        }


# Transport failures that are always worth another attempt
DEFAULT_RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ConnectionError,
    TimeoutError,
    OSError,
)


def calculate_backoff(
    retry_number: int,
    base_delay: float = 1.0,
    jitter_seconds: float = 0.2,
    max_delay: Optional[float] = None,
) -> float:
    """
    Calculate delay before a retry.

    Args:
        retry_number: Zero-based retry index (0 = first retry)
        base_delay: Initial delay in seconds
        jitter_seconds: Upper bound of the uniform random jitter added
        max_delay: Optional cap applied before jitter

    Returns:
        Delay in seconds: base_delay * 2^retry_number + U(0, jitter_seconds)
    """
    delay = base_delay * (2 ** retry_number)

    if max_delay is not None:
        delay = min(delay, max_delay)

    if jitter_seconds > 0:
        delay += random.uniform(0, jitter_seconds)

    return delay


def is_retryable_status(status_code: int) -> bool:
    """429 and any 5xx are transient; every other non-200 is terminal."""
    return status_code == 429 or status_code >= 500


def is_retryable_error(
    error: Exception,
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE_EXCEPTIONS,
) -> bool:
    """
    Check if an exception is retryable.

    Args:
        error: The exception to check
        retryable_exceptions: Tuple of exception types to retry

    Returns:
        True if error should be retried
    """
    if isinstance(error, retryable_exceptions):
        return True

    error_str = str(error).lower()

    if "rate limit" in error_str or "too many requests" in error_str:
        return True

    if "timeout" in error_str or "timed out" in error_str:
        return True

    if "connection" in error_str and ("refused" in error_str or "reset" in error_str or "failed" in error_str):
        return True

    return False
