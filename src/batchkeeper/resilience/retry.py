"""
Retry with capped exponential backoff.

Errors are classified before each retry: non-retryable errors and open circuits
are raised straight away, everything else is retried until the attempts run out.
"""

from __future__ import annotations

import asyncio
import typing as t
from dataclasses import dataclass

import httpx
import structlog
from pydantic import ValidationError

from batchkeeper.exceptions import (
    BatchProcessingError,
    CircuitBreakerOpenError,
    NonRetryableError,
    RetryableError,
)

log = structlog.get_logger(__name__)

T = t.TypeVar("T")

_RETRYABLE_PATTERNS = (
    "timeout",
    "timed out",
    "econnreset",
    "connection reset",
    "connection refused",
    "network",
    "rate limit",
    "temporarily unavailable",
)
_NON_RETRYABLE_PATTERNS = (
    "bad request",
    "unauthorized",
    "forbidden",
    "not found",
    "invalid api key",
    "malformed",
)


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0


def compute_delay(retry_number: int, config: RetryConfig) -> float:
    """
    Delay before a retry.

    Parameters
    ----------
    retry_number : int
        0-based index of the retry (0 is the first retry after the initial attempt).
    config : RetryConfig
        Backoff settings.

    Returns
    -------
    float
        Seconds to wait.
    """
    return min(config.base_delay * config.backoff_multiplier**retry_number, config.max_delay)


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def is_retryable_error(error: BaseException) -> bool:
    """
    Classify an error for the retry loop.

    Parameters
    ----------
    error : BaseException
        The error raised by an attempt.

    Returns
    -------
    bool
        ``False`` for open circuits, explicit non-retryable errors, client-side
        HTTP errors and malformed input. ``True`` otherwise, including for errors
        nothing recognizes.
    """
    if isinstance(error, (CircuitBreakerOpenError, NonRetryableError)):
        return False
    if isinstance(error, RetryableError):
        return True
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, httpx.TransportError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return _is_retryable_status(error.response.status_code)
    if isinstance(error, (ValueError, ValidationError)):
        return False
    message = str(error).lower()
    if any(pattern in message for pattern in _RETRYABLE_PATTERNS):
        return True
    if any(pattern in message for pattern in _NON_RETRYABLE_PATTERNS):
        return False
    return True


class RetryPolicy:
    """
    Run an async operation with retries.

    Parameters
    ----------
    config : RetryConfig
        Attempt count and backoff settings.
    sleep : Callable[[float], Awaitable[None]]
        Used between attempts, so tests can skip real waiting.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        sleep: t.Callable[[float], t.Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or RetryConfig()
        self._sleep = sleep

    async def call(
        self,
        operation: t.Callable[[], t.Awaitable[T]],
        *,
        operation_name: str,
    ) -> T:
        """
        Call ``operation`` until it succeeds or retrying stops making sense.

        Parameters
        ----------
        operation : Callable[[], Awaitable[T]]
            Zero-argument coroutine factory; called once per attempt.
        operation_name : str
            Name used in logs and in the exhaustion error.

        Returns
        -------
        T
            The operation result.

        Raises
        ------
        CircuitBreakerOpenError, NonRetryableError
            Re-raised immediately without further attempts.
        BatchProcessingError
            After ``max_retries`` retries all failed. The last error is chained.
        """
        attempts = self.config.max_retries + 1
        last_error: Exception | None = None
        for attempt in range(attempts):
            try:
                return await operation()
            except Exception as e:
                last_error = e
                if not is_retryable_error(e):
                    log.warning(
                        event="Operation failed with non-retryable error",
                        operation=operation_name,
                        attempt=attempt + 1,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    raise
                if attempt == attempts - 1:
                    break
                delay = compute_delay(attempt, self.config)
                log.info(
                    event="Retrying operation",
                    operation=operation_name,
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    delay_seconds=delay,
                    error=str(e),
                )
                await self._sleep(delay)

        log.error(
            event="Operation failed after all retries",
            operation=operation_name,
            attempts=attempts,
            error=str(last_error),
        )
        raise BatchProcessingError(
            f"{operation_name} failed after {attempts} attempts: {last_error}",
            operation=operation_name,
            attempts=attempts,
        ) from last_error
