from __future__ import annotations

import asyncio
import typing as t
from dataclasses import dataclass
from enum import StrEnum

import structlog

from batchkeeper.clock import Clock, SystemClock
from batchkeeper.exceptions import CircuitBreakerOpenError

log = structlog.get_logger(__name__)

T = t.TypeVar("T")


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    timeout_seconds: float = 5 * 60.0


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker for one named operation.

    Closed: calls pass through and failures are counted. Open: calls are rejected
    with ``CircuitBreakerOpenError`` until ``timeout_seconds`` elapsed since the last
    failure. Half-open: exactly one trial call is let through; its success closes
    the circuit, its failure reopens it.

    Parameters
    ----------
    name : str
        Operation name, reported in errors and status.
    config : CircuitBreakerConfig
        Threshold and open-window settings.
    clock : Clock
        Time source for the open window.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock or SystemClock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._open_window_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _open_window_elapsed(self) -> bool:
        if self._last_failure_at is None:
            return True
        return self._clock.monotonic() - self._last_failure_at >= self.config.timeout_seconds

    def _before_call(self) -> None:
        if self._state == CircuitState.OPEN:
            if not self._open_window_elapsed():
                raise CircuitBreakerOpenError(self.name)
            self._state = CircuitState.HALF_OPEN
            log.info(event="Circuit breaker half-open", operation=self.name)
        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitBreakerOpenError(self.name)
            self._trial_in_flight = True

    def _on_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            log.info(event="Circuit breaker closed", operation=self.name)
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._trial_in_flight = False

    def _on_failure(self, error: BaseException) -> None:
        self._failure_count += 1
        self._last_failure_at = self._clock.monotonic()
        reopen = self._state == CircuitState.HALF_OPEN
        self._trial_in_flight = False
        if reopen or self._failure_count >= self.config.failure_threshold:
            if self._state != CircuitState.OPEN:
                log.warning(
                    event="Circuit breaker opened",
                    operation=self.name,
                    failure_count=self._failure_count,
                    error=str(error),
                )
            self._state = CircuitState.OPEN

    async def call(self, operation: t.Callable[[], t.Awaitable[T]]) -> T:
        """
        Run ``operation`` through the breaker.

        Raises
        ------
        CircuitBreakerOpenError
            If the circuit is open, or half-open with its trial call already running.
        """
        self._before_call()
        try:
            result = await operation()
        except asyncio.CancelledError:
            self._trial_in_flight = False
            raise
        except Exception as e:
            self._on_failure(e)
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at = None
        self._trial_in_flight = False

    def snapshot(self) -> dict[str, t.Any]:
        return {
            "state": self.state.value,
            "failure_count": self._failure_count,
            "last_failure_at": self._last_failure_at,
        }


class CircuitBreakerRegistry:
    """Lazily created breakers, one per operation name, sharing a config and clock."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock or SystemClock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(name, self.config, clock=self._clock)
        return self._breakers[name]

    def snapshot(self) -> dict[str, dict[str, t.Any]]:
        return {name: breaker.snapshot() for name, breaker in sorted(self._breakers.items())}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
        log.info(event="Circuit breakers reset", operations=sorted(self._breakers))
