"""
Per-tenant batch metrics and cost tracking.

Counters live in memory for the lifetime of one scheduler. Token usage is also
persisted on every completed request, so the ``stats`` command can price past
work from the store alone.
"""

from __future__ import annotations

import typing as t
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

import structlog

from batchkeeper.clock import Clock, SystemClock
from batchkeeper.exceptions import CircuitBreakerOpenError

if t.TYPE_CHECKING:
    from batchkeeper.models import TokenUsage

log = structlog.get_logger(__name__)

LATENCY_WINDOW = 100


@dataclass(frozen=True)
class ModelPricing:
    """USD per token."""

    prompt_token_cost: float
    completion_token_cost: float


DEFAULT_PRICING: dict[str, ModelPricing] = {
    "gpt-4o": ModelPricing(0.0000025, 0.00001),
    "gpt-4o-2024-08-06": ModelPricing(0.0000025, 0.00001),
    "gpt-4-turbo": ModelPricing(0.00001, 0.00003),
    "gpt-4o-mini": ModelPricing(0.00000015, 0.0000006),
}


def estimate_cost(
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    *,
    pricing: t.Mapping[str, ModelPricing] | None = None,
) -> float:
    """
    Price a token count for a model.

    Parameters
    ----------
    model : str
        Model name as sent to the provider.
    prompt_tokens : int
        Input tokens.
    completion_tokens : int
        Output tokens.
    pricing : Mapping[str, ModelPricing] | None
        Price table, ``DEFAULT_PRICING`` when omitted.

    Returns
    -------
    float
        Cost in USD, ``0.0`` for models without a known price.
    """
    prices = (pricing or DEFAULT_PRICING).get(model)
    if prices is None:
        return 0.0
    return (
        prompt_tokens * prices.prompt_token_cost
        + completion_tokens * prices.completion_token_cost
    )


def _percentile(ordered: list[float], quantile: float) -> float:
    if not ordered:
        return 0.0
    return ordered[min(int(len(ordered) * quantile), len(ordered) - 1)]


@dataclass
class UsageTotals:
    request_count: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0

    def add(self, model: str, usage: "TokenUsage | None") -> None:
        self.request_count += 1
        if usage is None:
            return
        self.prompt_tokens += usage.prompt_tokens
        self.completion_tokens += usage.completion_tokens
        self.cost += estimate_cost(model, usage.prompt_tokens, usage.completion_tokens)

    def merge(self, other: "UsageTotals") -> None:
        self.request_count += other.request_count
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.cost += other.cost


@dataclass
class TenantMetrics:
    request_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    retry_count: int = 0
    circuit_breaker_trips: int = 0
    batches_created: int = 0
    operation_count: int = 0
    operation_errors: int = 0
    total_latency_seconds: float = 0.0
    usage: UsageTotals = field(default_factory=UsageTotals)
    latencies: deque[float] = field(default_factory=lambda: deque(maxlen=LATENCY_WINDOW))

    def record_latency(self, seconds: float) -> None:
        self.operation_count += 1
        self.total_latency_seconds += seconds
        self.latencies.append(seconds)

    def snapshot(self) -> dict[str, t.Any]:
        ordered = sorted(self.latencies)
        return {
            "request_count": self.request_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "retry_count": self.retry_count,
            "circuit_breaker_trips": self.circuit_breaker_trips,
            "batches_created": self.batches_created,
            "operation_count": self.operation_count,
            "operation_errors": self.operation_errors,
            "average_latency_seconds": (
                self.total_latency_seconds / self.operation_count if self.operation_count else 0.0
            ),
            "performance": {
                "p50": _percentile(ordered, 0.5),
                "p95": _percentile(ordered, 0.95),
                "p99": _percentile(ordered, 0.99),
            },
            "prompt_tokens": self.usage.prompt_tokens,
            "completion_tokens": self.usage.completion_tokens,
            "total_cost": self.usage.cost,
        }


class MetricsRegistry:
    """
    Metrics keyed by tenant id.

    Parameters
    ----------
    clock : Clock | None
        Time source for operation latencies.
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._tenants: dict[str, TenantMetrics] = {}

    def for_tenant(self, tenant_id: str) -> TenantMetrics:
        if tenant_id not in self._tenants:
            self._tenants[tenant_id] = TenantMetrics()
        return self._tenants[tenant_id]

    @contextmanager
    def track(self, tenant_id: str, operation: str) -> Iterator[TenantMetrics]:
        """
        Time one tenant operation and count it as an error if it raises.

        A ``CircuitBreakerOpenError`` also counts as a circuit breaker trip.
        """
        metrics = self.for_tenant(tenant_id)
        started = self._clock.monotonic()
        try:
            yield metrics
        except CircuitBreakerOpenError:
            metrics.operation_errors += 1
            metrics.circuit_breaker_trips += 1
            raise
        except Exception:
            metrics.operation_errors += 1
            raise
        finally:
            duration = self._clock.monotonic() - started
            metrics.record_latency(duration)
            log.debug(
                event="Tenant operation finished",
                tenant_id=tenant_id,
                operation=operation,
                duration_seconds=duration,
            )

    def snapshot(self, tenant_id: str | None = None) -> dict[str, t.Any]:
        if tenant_id is not None:
            return self.for_tenant(tenant_id).snapshot()
        return {key: metrics.snapshot() for key, metrics in sorted(self._tenants.items())}

    def reset(self) -> None:
        self._tenants.clear()


def log_cost_tracking(
    usage: UsageTotals, *, tenant_id: str, batch_id: str | None = None
) -> None:
    if not usage.request_count:
        return
    log.info(
        event="Cost tracking",
        tenant_id=tenant_id,
        batch_id=batch_id,
        request_count=usage.request_count,
        prompt_tokens=usage.prompt_tokens,
        completion_tokens=usage.completion_tokens,
        total_cost=round(usage.cost, 6),
        cost_per_request=round(usage.cost / usage.request_count, 6),
    )
