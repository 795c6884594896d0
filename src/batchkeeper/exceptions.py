"""
Batchkeeper-specific runtime exceptions.
"""

from __future__ import annotations


class BatchkeeperError(Exception):
    """Base class for every error raised by batchkeeper."""


class ProviderError(BatchkeeperError):
    """
    A provider call failed.

    Parameters
    ----------
    message : str
        Human readable description.
    status_code : int | None
        HTTP status code returned by the provider, if any.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RetryableError(ProviderError):
    """Transient provider failure (network error, timeout, 5xx, 429)."""


class NonRetryableError(ProviderError):
    """Permanent provider failure (4xx other than 429, malformed input)."""


class CircuitBreakerOpenError(BatchkeeperError):
    """
    Signal that a circuit breaker rejected the call without attempting it.
    """

    def __init__(self, operation: str) -> None:
        super().__init__(f"Circuit breaker is open for {operation}")
        self.operation = operation


class BatchProcessingError(BatchkeeperError):
    """
    An operation kept failing after every retry, or a unit of batch work failed.

    The last underlying error is chained as ``__cause__`` when available.
    """

    def __init__(self, message: str, *, operation: str | None = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.operation = operation
        self.attempts = attempts


class ResultLineError(BatchkeeperError):
    """A single line of a batch output file could not be used."""

    def __init__(self, message: str, *, line_number: int | None = None) -> None:
        super().__init__(message)
        self.line_number = line_number
