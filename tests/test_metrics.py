import pytest

from batchkeeper.exceptions import CircuitBreakerOpenError, RetryableError
from batchkeeper.metrics import MetricsRegistry, estimate_cost


def test_estimate_cost():
    assert estimate_cost("gpt-4o-mini", 1_000_000, 1_000_000) == pytest.approx(0.75)
    assert estimate_cost("gpt-4o", 2000, 0) == pytest.approx(0.005)
    assert estimate_cost("unknown-model", 1000, 1000) == 0.0


def test_track_records_latency_and_errors(clock):
    metrics = MetricsRegistry(clock=clock)

    for seconds in range(1, 101):
        with metrics.track("acme", "check_status"):
            clock.advance(seconds)
    with pytest.raises(CircuitBreakerOpenError):
        with metrics.track("acme", "check_status"):
            raise CircuitBreakerOpenError("batch_status")
    with pytest.raises(RetryableError):
        with metrics.track("acme", "create_batch"):
            raise RetryableError("503")

    snapshot = metrics.snapshot("acme")
    assert snapshot["operation_count"] == 102
    assert snapshot["operation_errors"] == 2
    assert snapshot["circuit_breaker_trips"] == 1
    assert snapshot["average_latency_seconds"] == pytest.approx(5050 / 102)
    assert snapshot["performance"] == {"p50": 51.0, "p95": 96.0, "p99": 100.0}


def test_latency_window_keeps_recent_operations(clock):
    metrics = MetricsRegistry(clock=clock)
    for seconds in range(1, 151):
        with metrics.track("acme", "process_results"):
            clock.advance(seconds)

    snapshot = metrics.snapshot("acme")
    assert snapshot["operation_count"] == 150
    assert snapshot["performance"]["p50"] == 101.0


def test_snapshot_and_reset():
    metrics = MetricsRegistry()
    metrics.for_tenant("b").request_count = 3
    metrics.for_tenant("a").retry_count = 1

    assert list(metrics.snapshot()) == ["a", "b"]
    metrics.reset()
    assert metrics.snapshot() == {}
