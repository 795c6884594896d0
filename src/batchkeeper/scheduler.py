from __future__ import annotations

import asyncio
import typing as t
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum

import structlog

from batchkeeper.clock import Clock, SystemClock
from batchkeeper.db.crud import count_stale_batches, get_oldest_pending_requested_at
from batchkeeper.db.session import Database
from batchkeeper.fanout import TenantFanout
from batchkeeper.gateway import ProviderGateway
from batchkeeper.metrics import MetricsRegistry
from batchkeeper.policy import BatchingPolicy
from batchkeeper.processor import BatchProcessor
from batchkeeper.providers import get_provider
from batchkeeper.reconciler import ResultReconciler
from batchkeeper.resilience.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from batchkeeper.resilience.retry import RetryConfig, RetryPolicy

if t.TYPE_CHECKING:
    from batchkeeper.config import Settings
    from batchkeeper.db.models import BatchJob
    from batchkeeper.providers.base import BaseProvider

log = structlog.get_logger(__name__)


class Cadence(StrEnum):
    CREATE_BATCHES = "create_batches"
    CHECK_STATUS = "check_status"
    PROCESS_RESULTS = "process_results"
    RETRY_FAILED = "retry_failed"


DEFAULT_INTERVALS: dict[Cadence, float] = {
    Cadence.CREATE_BATCHES: 5 * 60.0,
    Cadence.CHECK_STATUS: 2 * 60.0,
    Cadence.PROCESS_RESULTS: 60.0,
    Cadence.RETRY_FAILED: 10 * 60.0,
}


@dataclass
class CadenceMetrics:
    runs: int = 0
    failures: int = 0
    skipped: int = 0
    total_duration_seconds: float = 0.0
    last_duration_seconds: float | None = None
    last_run_at: datetime | None = None


@dataclass
class SchedulerContext:
    """
    Mutable state shared by all cadences of one scheduler.

    ``consecutive_errors`` counts failures across cadences; any success resets it.
    """

    consecutive_errors: int = 0
    is_paused: bool = False
    paused_until: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    metrics: dict[Cadence, CadenceMetrics] = field(
        default_factory=lambda: {cadence: CadenceMetrics() for cadence in Cadence}
    )

    def performance(self) -> dict[str, t.Any]:
        runs = sum(metrics.runs for metrics in self.metrics.values())
        total = sum(metrics.total_duration_seconds for metrics in self.metrics.values())
        return {
            "total_operations": runs,
            "total_operation_seconds": total,
            "average_operation_seconds": total / runs if runs else 0.0,
        }


class BatchScheduler:
    """
    Run the four batch cadences, each on its own ticker task.

    Every cadence invocation goes through a scheduler-wide breaker: after
    ``max_consecutive_errors`` failures in a row, across all cadences, every
    cadence is skipped for ``error_pause_seconds``. The pause lifts by itself once
    that time has passed, or immediately through ``force_resume``.

    Parameters
    ----------
    fanout : TenantFanout
        Runs each cadence's work across tenants.
    gateway : ProviderGateway
        Exposes provider breaker state.
    database : Database
        Used for stale batch reporting.
    clock : Clock | None
        Time source for tickers and pauses.
    intervals : dict[Cadence, float] | None
        Seconds between invocations of each cadence.
    max_consecutive_errors : int
        Failures in a row that pause the scheduler.
    error_pause_seconds : float
        Length of the pause.
    batch_timeout_hours : float
        Age after which a non-terminal batch is reported as stale.
    context : SchedulerContext | None
        Initial state; a fresh context when omitted.
    """

    def __init__(
        self,
        fanout: TenantFanout,
        gateway: ProviderGateway,
        database: Database,
        *,
        clock: Clock | None = None,
        intervals: dict[Cadence, float] | None = None,
        max_consecutive_errors: int = 5,
        error_pause_seconds: float = 15 * 60.0,
        batch_timeout_hours: float = 24.0,
        context: SchedulerContext | None = None,
    ) -> None:
        self.fanout = fanout
        self.gateway = gateway
        self.database = database
        self._clock = clock or SystemClock()
        self.intervals = {**DEFAULT_INTERVALS, **(intervals or {})}
        self.max_consecutive_errors = max_consecutive_errors
        self.error_pause = timedelta(seconds=error_pause_seconds)
        self.batch_timeout = timedelta(hours=batch_timeout_hours)
        self.context = context or SchedulerContext()
        self._operations: dict[Cadence, t.Callable[[], t.Awaitable[t.Any]]] = {
            Cadence.CREATE_BATCHES: fanout.create_batches,
            Cadence.CHECK_STATUS: fanout.check_statuses,
            Cadence.PROCESS_RESULTS: fanout.process_results,
            Cadence.RETRY_FAILED: fanout.retry_failed,
        }
        self._tasks: dict[Cadence, asyncio.Task[None]] = {}
        self._in_progress: set[Cadence] = set()
        self._stopping = False

    @property
    def processor(self) -> BatchProcessor:
        return self.fanout.processor

    @property
    def is_running(self) -> bool:
        return bool(self._tasks) and all(not task.done() for task in self._tasks.values())

    def _lift_expired_pause(self) -> None:
        context = self.context
        if not context.is_paused or context.paused_until is None:
            return
        if self._clock.now() >= context.paused_until:
            context.is_paused = False
            context.paused_until = None
            context.consecutive_errors = 0
            log.info(event="Scheduler pause lifted")

    def _record_failure(self, cadence: Cadence, error: Exception) -> None:
        context = self.context
        context.consecutive_errors += 1
        context.last_error_at = self._clock.now()
        context.last_error = str(error)
        context.metrics[cadence].failures += 1
        log.error(
            event="Cadence failed",
            cadence=cadence,
            consecutive_errors=context.consecutive_errors,
            error=str(error),
            error_type=type(error).__name__,
        )
        if context.consecutive_errors >= self.max_consecutive_errors and not context.is_paused:
            context.is_paused = True
            context.paused_until = context.last_error_at + self.error_pause
            log.error(
                event="Scheduler paused after consecutive errors",
                consecutive_errors=context.consecutive_errors,
                paused_until=context.paused_until.isoformat(),
            )

    async def run_cadence(self, cadence: Cadence | str) -> bool:
        """
        Run one invocation of a cadence through the scheduler breaker.

        Parameters
        ----------
        cadence : Cadence | str
            The cadence to run.

        Returns
        -------
        bool
            ``True`` if the cadence ran and succeeded, ``False`` if it failed or
            was skipped because the scheduler is paused.
        """
        cadence = Cadence(cadence)
        self._lift_expired_pause()
        metrics = self.context.metrics[cadence]
        if self.context.is_paused:
            metrics.skipped += 1
            log.debug(event="Cadence skipped while paused", cadence=cadence)
            return False

        self._in_progress.add(cadence)
        started = self._clock.monotonic()
        metrics.last_run_at = self._clock.now()
        try:
            await self._operations[cadence]()
        except Exception as e:
            self._record_failure(cadence, e)
            return False
        else:
            if self.context.consecutive_errors:
                log.info(event="Cadence recovered", cadence=cadence)
            self.context.consecutive_errors = 0
            return True
        finally:
            self._in_progress.discard(cadence)
            duration = self._clock.monotonic() - started
            metrics.runs += 1
            metrics.last_duration_seconds = duration
            metrics.total_duration_seconds += duration

    async def _tick(self, cadence: Cadence) -> None:
        interval = self.intervals[cadence]
        while not self._stopping:
            await self._clock.sleep(interval)
            await self.run_cadence(cadence)

    def start(self) -> None:
        """Start one ticker task per cadence. Calling it twice is a no-op."""
        if self._tasks:
            log.debug(event="Scheduler already started")
            return
        self._stopping = False
        for cadence in Cadence:
            self._tasks[cadence] = asyncio.create_task(
                self._tick(cadence), name=f"batchkeeper-{cadence}"
            )
        log.info(
            event="Scheduler started",
            intervals={cadence.value: seconds for cadence, seconds in self.intervals.items()},
        )

    async def stop(self) -> None:
        """
        Stop the ticker tasks and wait until they are gone.

        Idle tickers are cancelled. A cadence that is running is left to finish,
        after which its ticker exits instead of sleeping again.
        """
        self._stopping = True
        tasks = dict(self._tasks)
        self._tasks.clear()
        draining = sorted(cadence for cadence in tasks if cadence in self._in_progress)
        for cadence, task in tasks.items():
            if cadence not in self._in_progress:
                task.cancel()
        if draining:
            log.info(event="Waiting for running cadences", cadences=draining)
        await asyncio.gather(*tasks.values(), return_exceptions=True)
        if tasks:
            log.info(event="Scheduler stopped")

    def force_resume(self) -> None:
        self.context.is_paused = False
        self.context.paused_until = None
        self.context.consecutive_errors = 0
        self.context.last_error_at = None
        self.context.last_error = None
        log.info(event="Scheduler manually resumed")

    def reset_performance_metrics(self) -> None:
        self.context.metrics = {cadence: CadenceMetrics() for cadence in Cadence}
        self.processor.metrics.reset()

    async def force_batch_creation(self, tenant_id: str) -> "BatchJob | None":
        """Submit a tenant's pending requests now, bypassing the batching policy."""
        log.info(event="Forcing batch creation", tenant_id=tenant_id)
        return await self.processor.create_batch(tenant_id, force=True)

    def get_status(self) -> dict[str, t.Any]:
        self._lift_expired_pause()
        context = self.context
        with self.database.session() as db:
            stale_batches = count_stale_batches(
                db, created_before=self._clock.now() - self.batch_timeout
            )
        return {
            "is_running": self.is_running,
            "is_paused": context.is_paused,
            "paused_until": context.paused_until,
            "consecutive_errors": context.consecutive_errors,
            "last_error_at": context.last_error_at,
            "last_error": context.last_error,
            "cadences": {
                cadence.value: {
                    "scheduled": cadence in self._tasks and not self._tasks[cadence].done(),
                    "in_progress": cadence in self._in_progress,
                    "interval_seconds": self.intervals[cadence],
                    "runs": context.metrics[cadence].runs,
                    "failures": context.metrics[cadence].failures,
                    "skipped": context.metrics[cadence].skipped,
                    "last_run_at": context.metrics[cadence].last_run_at,
                    "last_duration_seconds": context.metrics[cadence].last_duration_seconds,
                }
                for cadence in Cadence
            },
            "circuit_breakers": self.gateway.circuit_breaker_status(),
            "stale_batches": stale_batches,
            "performance": context.performance(),
            "tenant_metrics": self.processor.metrics.snapshot(),
        }


def build_scheduler(
    settings: "Settings",
    *,
    database: Database | None = None,
    provider: "BaseProvider | None" = None,
    clock: Clock | None = None,
    sleep: t.Callable[[float], t.Awaitable[None]] | None = None,
) -> BatchScheduler:
    """
    Wire a scheduler and its collaborators from settings.

    Parameters
    ----------
    settings : Settings
        Runtime settings.
    database : Database | None
        Store to use; built from ``settings.database_url`` when omitted.
    provider : BaseProvider | None
        Provider to use; selected by ``settings.mock_mode`` when omitted.
    clock : Clock | None
        Shared time source.
    sleep : Callable[[float], Awaitable[None]] | None
        Sleep used between retries; the clock's sleep when omitted.

    Returns
    -------
    BatchScheduler
        A scheduler that has not been started.
    """
    clock = clock or SystemClock()
    database = database or Database(settings.database_url)
    provider = provider or get_provider(settings, clock=clock)

    retry_policy = RetryPolicy(
        RetryConfig(
            max_retries=settings.max_retries,
            base_delay=settings.base_retry_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_delay=settings.max_retry_delay_seconds,
        ),
        sleep=sleep or clock.sleep,
    )
    breakers = CircuitBreakerRegistry(
        CircuitBreakerConfig(
            failure_threshold=settings.circuit_breaker_threshold,
            timeout_seconds=settings.circuit_breaker_timeout_seconds,
        ),
        clock=clock,
    )
    gateway = ProviderGateway(
        provider,
        retry_policy=retry_policy,
        breakers=breakers,
        timeout_seconds=settings.request_timeout_seconds,
    )

    def oldest_pending(tenant_id: str) -> datetime | None:
        with database.session() as db:
            return get_oldest_pending_requested_at(db, tenant_id)

    policy = BatchingPolicy(
        oldest_pending,
        min_batch_size=settings.min_batch_size,
        max_wait_minutes=settings.max_wait_minutes,
        clock=clock,
    )
    reconciler = ResultReconciler(database, gateway, clock=clock)
    metrics = MetricsRegistry(clock=clock)
    processor = BatchProcessor(
        database,
        gateway,
        policy,
        reconciler,
        max_requests_per_batch=settings.max_requests_per_batch,
        max_individual_attempts=settings.max_individual_attempts,
        metrics=metrics,
        clock=clock,
    )

    fanout = TenantFanout(
        database,
        processor,
        tenant_cache_ttl_seconds=settings.tenant_cache_ttl_seconds,
        max_concurrent_tenants=settings.max_concurrent_tenants,
        failed_requests_per_tenant=settings.failed_requests_per_tenant,
        clock=clock,
    )
    return BatchScheduler(
        fanout,
        gateway,
        database,
        clock=clock,
        intervals={
            Cadence.CREATE_BATCHES: settings.create_batches_interval_seconds,
            Cadence.CHECK_STATUS: settings.check_status_interval_seconds,
            Cadence.PROCESS_RESULTS: settings.process_results_interval_seconds,
            Cadence.RETRY_FAILED: settings.retry_failed_interval_seconds,
        },
        max_consecutive_errors=settings.max_consecutive_errors,
        error_pause_seconds=settings.error_pause_seconds,
        batch_timeout_hours=settings.batch_timeout_hours,
    )
