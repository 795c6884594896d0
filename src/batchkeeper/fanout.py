"""
Multi-tenant fan-out for the scheduler cadences.

Each cadence runs one aggregate store query for all active tenants, groups the
rows by tenant and hands each group to the processor with bounded concurrency.
Tenants settle independently: one tenant's failure is logged and never stops the
others.
"""

from __future__ import annotations

import asyncio
import typing as t
from dataclasses import dataclass, field

import structlog

from batchkeeper.clock import Clock, SystemClock
from batchkeeper.db.crud import (
    create_tenant,
    get_active_tenant_ids,
    get_completed_batches_for_tenants,
    get_failed_requests_for_tenants,
    get_in_flight_batches_for_tenants,
    get_pending_requests_for_tenants,
    set_tenant_status,
)
from batchkeeper.exceptions import BatchProcessingError
from batchkeeper.status import TenantStatus

if t.TYPE_CHECKING:
    from batchkeeper.db.models import Tenant
    from batchkeeper.db.session import Database
    from batchkeeper.processor import BatchProcessor

log = structlog.get_logger(__name__)

T = t.TypeVar("T")


class TenantCache:
    """
    Read-through cache of active tenant ids.

    Parameters
    ----------
    loader : Callable[[], list[str]]
        Loads the active tenant ids from the store.
    ttl_seconds : float
        How long a loaded list is served before reloading.
    clock : Clock | None
        Time source for expiry.
    """

    def __init__(
        self,
        loader: t.Callable[[], list[str]],
        *,
        ttl_seconds: float = 300.0,
        clock: Clock | None = None,
    ) -> None:
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self._clock = clock or SystemClock()
        self._tenant_ids: list[str] | None = None
        self._loaded_at: float | None = None

    def get(self) -> list[str]:
        now = self._clock.monotonic()
        if (
            self._tenant_ids is None
            or self._loaded_at is None
            or now - self._loaded_at >= self.ttl_seconds
        ):
            self._tenant_ids = list(self._loader())
            self._loaded_at = now
            log.debug(event="Tenant cache refreshed", tenant_count=len(self._tenant_ids))
        return list(self._tenant_ids)

    def invalidate(self) -> None:
        self._tenant_ids = None
        self._loaded_at = None


@dataclass
class FanoutResult:
    operation: str
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def tenant_count(self) -> int:
        return len(self.succeeded) + len(self.failed)


class TenantFanout:
    """
    Parameters
    ----------
    database : Database
        The lifecycle store.
    processor : BatchProcessor
        Per-tenant batch operations.
    tenant_cache : TenantCache | None
        Source of active tenant ids. Built over the store when omitted.
    tenant_cache_ttl_seconds : float
        TTL of the cache built when ``tenant_cache`` is omitted.
    max_concurrent_tenants : int
        Tenants processed at the same time within one tick.
    failed_requests_per_tenant : int
        Cap on individual retries per tenant and tick.
    clock : Clock | None
        Time source for the tenant cache.
    """

    def __init__(
        self,
        database: "Database",
        processor: "BatchProcessor",
        *,
        tenant_cache: TenantCache | None = None,
        tenant_cache_ttl_seconds: float = 300.0,
        max_concurrent_tenants: int = 5,
        failed_requests_per_tenant: int = 10,
        clock: Clock | None = None,
    ) -> None:
        self.database = database
        self.processor = processor
        self.tenant_cache = tenant_cache or TenantCache(
            self._load_active_tenant_ids, ttl_seconds=tenant_cache_ttl_seconds, clock=clock
        )
        self.max_concurrent_tenants = max_concurrent_tenants
        self.failed_requests_per_tenant = failed_requests_per_tenant

    def _load_active_tenant_ids(self) -> list[str]:
        with self.database.session() as db:
            return get_active_tenant_ids(db)

    def register_tenant(self, name: str, **kwargs: t.Any) -> "Tenant":
        """Create a tenant and make the next tick see it."""
        with self.database.session() as db:
            tenant = create_tenant(db, name, **kwargs)
        self.tenant_cache.invalidate()
        log.info(event="Tenant registered", tenant_id=tenant.id, status=tenant.status)
        return tenant

    def set_tenant_status(self, tenant_id: str, status: TenantStatus | str) -> bool:
        """
        Activate or suspend a tenant.

        Returns
        -------
        bool
            Whether the tenant exists.

        Raises
        ------
        ValueError
            If ``status`` is not a ``TenantStatus``.
        """
        status = TenantStatus(status)
        with self.database.session() as db:
            found = set_tenant_status(db, tenant_id, status)
        if found:
            self.tenant_cache.invalidate()
            log.info(event="Tenant status changed", tenant_id=tenant_id, status=status)
        return found

    async def create_batches(self) -> FanoutResult:
        tenant_ids = self.tenant_cache.get()
        with self.database.session() as db:
            groups = get_pending_requests_for_tenants(
                db, tenant_ids, limit_per_tenant=self.processor.max_requests_per_batch
            )
        return await self._run_per_tenant(
            "create_batches",
            groups,
            lambda tenant_id, requests: self.processor.create_batch(tenant_id, requests),
        )

    async def check_statuses(self) -> FanoutResult:
        tenant_ids = self.tenant_cache.get()
        with self.database.session() as db:
            groups = get_in_flight_batches_for_tenants(db, tenant_ids)
        return await self._run_per_tenant(
            "check_status", groups, self.processor.check_batch_statuses
        )

    async def process_results(self) -> FanoutResult:
        tenant_ids = self.tenant_cache.get()
        with self.database.session() as db:
            groups = get_completed_batches_for_tenants(db, tenant_ids)
        return await self._run_per_tenant(
            "process_results", groups, self.processor.process_completed_batches
        )

    async def retry_failed(self) -> FanoutResult:
        tenant_ids = self.tenant_cache.get()
        with self.database.session() as db:
            groups = get_failed_requests_for_tenants(
                db,
                tenant_ids,
                limit_per_tenant=self.failed_requests_per_tenant,
                max_attempts=self.processor.max_individual_attempts,
            )
        return await self._run_per_tenant(
            "retry_failed", groups, self.processor.retry_failed_requests
        )

    async def _run_per_tenant(
        self,
        operation: str,
        groups: dict[str, list[T]],
        worker: t.Callable[[str, list[T]], t.Awaitable[t.Any]],
    ) -> FanoutResult:
        """
        Run ``worker`` for every tenant group and wait for all of them to settle.

        Raises
        ------
        BatchProcessingError
            If there was at least one tenant and every tenant failed.
        """
        result = FanoutResult(operation=operation)
        if not groups:
            log.debug(event="Nothing to do", operation=operation)
            return result

        semaphore = asyncio.Semaphore(self.max_concurrent_tenants)

        async def run(tenant_id: str, items: list[T]) -> t.Any:
            async with semaphore:
                return await worker(tenant_id, items)

        tenant_ids = list(groups)
        outcomes = await asyncio.gather(
            *(run(tenant_id, groups[tenant_id]) for tenant_id in tenant_ids),
            return_exceptions=True,
        )
        for tenant_id, outcome in zip(tenant_ids, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                result.failed[tenant_id] = str(outcome)
                log.error(
                    event="Tenant processing failed",
                    operation=operation,
                    tenant_id=tenant_id,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
            else:
                result.succeeded.append(tenant_id)

        log.info(
            event="Fan-out finished",
            operation=operation,
            tenants=result.tenant_count,
            succeeded=len(result.succeeded),
            failed=len(result.failed),
        )
        if not result.succeeded:
            raise BatchProcessingError(
                f"{operation} failed for all {len(result.failed)} tenant(s)",
                operation=operation,
            )
        return result
