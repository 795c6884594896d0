from datetime import timedelta

import pytest

from batchkeeper.policy import BatchingPolicy
from tests.mocks.store import START


@pytest.fixture
def oldest():
    return {}


@pytest.fixture
def policy(oldest, clock) -> BatchingPolicy:
    return BatchingPolicy(oldest.get, min_batch_size=10, max_wait_minutes=30, clock=clock)


def test_small_fresh_backlog_waits(policy, oldest, clock):
    oldest["acme"] = START
    clock.advance(10 * 60)
    assert not policy.should_flush("acme", 9)


def test_full_batch_flushes_immediately(policy, oldest, clock):
    oldest["acme"] = START
    clock.advance(10 * 60)
    assert policy.should_flush("acme", 10)
    assert policy.should_flush("acme", 250)


def test_old_backlog_flushes_even_when_small(policy, oldest, clock):
    oldest["acme"] = START - timedelta(minutes=31)
    assert policy.should_flush("acme", 3)


def test_wait_threshold_is_inclusive(policy, oldest, clock):
    oldest["acme"] = START
    clock.advance(30 * 60 - 1)
    assert not policy.should_flush("acme", 1)
    clock.advance(1)
    assert policy.should_flush("acme", 1)


def test_empty_backlog_never_flushes(policy, oldest):
    oldest["acme"] = START - timedelta(days=2)
    assert not policy.should_flush("acme", 0)
    assert not policy.should_flush("unknown", 0)


def test_missing_oldest_request_does_not_flush(policy):
    assert not policy.should_flush("unknown", 3)
