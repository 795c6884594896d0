from __future__ import annotations

import typing as t
from datetime import datetime, timedelta

from batchkeeper.clock import Clock, SystemClock


class BatchingPolicy:
    """
    Decide whether a tenant's pending requests should be sent as a batch now.

    A tenant flushes once it has ``min_batch_size`` pending requests, or once its
    oldest pending request has waited ``max_wait_minutes``. The decision only
    reads the current snapshot, so it is simply re-evaluated on every create tick.

    Parameters
    ----------
    oldest_pending_lookup : Callable[[str], datetime | None]
        Returns the request time of a tenant's oldest pending request.
    min_batch_size : int
        Pending count that triggers an immediate flush.
    max_wait_minutes : float
        Age of the oldest pending request that triggers a flush.
    clock : Clock | None
        Time source.
    """

    def __init__(
        self,
        oldest_pending_lookup: t.Callable[[str], datetime | None],
        *,
        min_batch_size: int = 10,
        max_wait_minutes: float = 30.0,
        clock: Clock | None = None,
    ) -> None:
        self._oldest_pending_lookup = oldest_pending_lookup
        self.min_batch_size = min_batch_size
        self.max_wait = timedelta(minutes=max_wait_minutes)
        self._clock = clock or SystemClock()

    def should_flush(self, tenant_id: str, pending_count: int) -> bool:
        if pending_count <= 0:
            return False
        if pending_count >= self.min_batch_size:
            return True
        oldest = self._oldest_pending_lookup(tenant_id)
        if oldest is None:
            return False
        return self._clock.now() - oldest >= self.max_wait
