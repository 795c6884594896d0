"""
Time sources for the orchestrator.

Every component reads time and sleeps through a ``Clock`` so tests can drive the
scheduler, breakers and batching policy by advancing a ``ManualClock``.
"""

from __future__ import annotations

import asyncio
import time
import typing as t
from datetime import UTC, datetime, timedelta


def utcnow() -> datetime:
    """
    Current UTC time as a naive datetime, matching what the store persists.
    """
    return datetime.now(UTC).replace(tzinfo=None)


class Clock(t.Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock time and real ``asyncio.sleep``."""

    def now(self) -> datetime:
        return utcnow()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock:
    """
    Clock that only moves when ``advance`` is called.

    Sleepers are woken in deadline order once the clock passes their deadline.
    """

    _EPOCH = datetime(2000, 1, 1)

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2025, 1, 1, 12, 0, 0)
        self._sleepers: list[tuple[datetime, asyncio.Future[None]]] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return (self._now - self._EPOCH).total_seconds()

    @property
    def sleeper_count(self) -> int:
        return sum(1 for _, future in self._sleepers if not future.done())

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._sleepers.append((self._now + timedelta(seconds=seconds), future))
        try:
            await future
        finally:
            self._sleepers = [entry for entry in self._sleepers if entry[1] is not future]

    def set(self, moment: datetime) -> None:
        self._now = moment
        self._wake_due()

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._wake_due()

    def _wake_due(self) -> None:
        for deadline, future in sorted(self._sleepers, key=lambda entry: entry[0]):
            if deadline <= self._now and not future.done():
                future.set_result(None)
