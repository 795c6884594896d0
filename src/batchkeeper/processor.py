from __future__ import annotations

import asyncio
import typing as t

import structlog

from batchkeeper.clock import Clock, SystemClock
from batchkeeper.db.crud import (
    apply_provider_status,
    create_batch_job,
    get_pending_requests,
    mark_batch_failed,
    mark_request_complete,
    mark_request_failed,
)
from batchkeeper.exceptions import (
    BatchProcessingError,
    NonRetryableError,
    ResultLineError,
)
from batchkeeper.logging import logging_context
from batchkeeper.metrics import MetricsRegistry, UsageTotals, log_cost_tracking
from batchkeeper.models import validate_analysis
from batchkeeper.prompts import build_batch_lines, build_chat_body
from batchkeeper.providers.base import encode_jsonl
from batchkeeper.status import BatchStatus, RetryRoute

if t.TYPE_CHECKING:
    from batchkeeper.db.models import BatchJob, ProcessingRequest
    from batchkeeper.db.session import Database
    from batchkeeper.gateway import ProviderGateway
    from batchkeeper.policy import BatchingPolicy
    from batchkeeper.reconciler import ReconcileReport, ResultReconciler

log = structlog.get_logger(__name__)


class BatchProcessor:
    """
    Batch work for a single tenant.

    Provider calls for one tenant run sequentially, and batch creation for one
    tenant is serialized so that a forced submission and a scheduled one never
    send the same requests twice. Methods working on several
    batches or requests handle each one on its own and raise a single
    ``BatchProcessingError`` at the end if any of them failed.

    Parameters
    ----------
    database : Database
        The lifecycle store.
    gateway : ProviderGateway
        Fault-isolated provider access.
    policy : BatchingPolicy
        Decides when pending requests are flushed.
    reconciler : ResultReconciler
        Applies completed batch output.
    max_requests_per_batch : int
        Cap on the number of requests sent in one batch, oldest first.
    max_individual_attempts : int
        Attempts allowed on the individual retry path before giving up.
    metrics : MetricsRegistry | None
        Per-tenant counters, latencies and cost.
    clock : Clock | None
        Time source.
    """

    def __init__(
        self,
        database: "Database",
        gateway: "ProviderGateway",
        policy: "BatchingPolicy",
        reconciler: "ResultReconciler",
        *,
        max_requests_per_batch: int = 1000,
        max_individual_attempts: int = 5,
        metrics: MetricsRegistry | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.database = database
        self.gateway = gateway
        self.policy = policy
        self.reconciler = reconciler
        self.max_requests_per_batch = max_requests_per_batch
        self.max_individual_attempts = max_individual_attempts
        self._clock = clock or SystemClock()
        self.metrics = metrics or MetricsRegistry(clock=self._clock)
        self._batch_locks: dict[str, asyncio.Lock] = {}

    async def create_batch(
        self,
        tenant_id: str,
        requests: t.Sequence["ProcessingRequest"] | None = None,
        *,
        force: bool = False,
    ) -> "BatchJob | None":
        """
        Submit a tenant's pending requests as one batch if the policy says so.

        Parameters
        ----------
        tenant_id : str
            The tenant.
        requests : Sequence[ProcessingRequest] | None
            Pending requests already loaded by an aggregate query, oldest first.
            Loaded from the store when omitted.
        force : bool
            Skip the batching policy.

        Returns
        -------
        BatchJob | None
            The created batch, or ``None`` if nothing was submitted.
        """
        lock = self._batch_locks.setdefault(tenant_id, asyncio.Lock())
        # whoever held the lock may have linked some of the preloaded requests
        reload = requests is None or lock.locked()
        async with lock:
            with logging_context(tenant_id=tenant_id):
                if reload:
                    with self.database.session() as db:
                        requests = get_pending_requests(
                            db, tenant_id, limit=self.max_requests_per_batch
                        )
                candidates = list(requests)[: self.max_requests_per_batch]
                if not candidates:
                    return None
                if not force and not self.policy.should_flush(tenant_id, len(candidates)):
                    log.debug(event="Batch not due yet", pending=len(candidates))
                    return None

                with self.metrics.track(tenant_id, "create_batch") as metrics:
                    content = encode_jsonl(build_batch_lines(candidates))
                    file_id = await self.gateway.upload_file(content)
                    provider_batch = await self.gateway.create_batch(file_id)

                    with self.database.session() as db:
                        batch_job, linked = create_batch_job(
                            db,
                            tenant_id=tenant_id,
                            provider_batch_id=provider_batch.id,
                            input_file_id=file_id,
                            request_ids=[request.id for request in candidates],
                            status=BatchStatus.VALIDATING,
                            created_at=self._clock.now(),
                        )
                    metrics.batches_created += 1
                    metrics.request_count += linked
                if linked < len(candidates):
                    log.warning(
                        event="Some requests left pending before they could be linked",
                        batch_id=batch_job.id,
                        expected=len(candidates),
                        linked=linked,
                    )
                log.info(
                    event="Batch created",
                    batch_id=batch_job.id,
                    provider_batch_id=provider_batch.id,
                    request_count=linked,
                    forced=force,
                )
                return batch_job

    async def check_batch_status(self, batch_job: "BatchJob") -> BatchStatus:
        """
        Poll the provider and apply the response to a batch.

        A provider error that cannot succeed on retry (an unknown batch id, for
        instance) fails the batch and releases its requests. Any other error is
        raised and the batch is polled again on the next tick.
        """
        with logging_context(tenant_id=batch_job.tenant_id, batch_id=batch_job.id):
            try:
                with self.metrics.track(batch_job.tenant_id, "check_status"):
                    provider_batch = await self.gateway.get_batch_status(
                        batch_job.provider_batch_id
                    )
            except NonRetryableError as e:
                with self.database.session() as db:
                    released = mark_batch_failed(
                        db,
                        batch_job.id,
                        error_message=f"Status check failed: {e}",
                        now=self._clock.now(),
                    )
                log.error(event="Batch failed on status check", released=released, error=str(e))
                return BatchStatus.FAILED

            with self.database.session() as db:
                status, released = apply_provider_status(
                    db, batch_job.id, provider_batch, now=self._clock.now()
                )
            if status != batch_job.status:
                log.info(
                    event="Batch status changed",
                    previous_status=batch_job.status,
                    status=status,
                    provider_status=provider_batch.status,
                    released=released,
                )
            return status

    async def retry_failed_request(self, request: "ProcessingRequest") -> bool:
        """
        Resubmit one failed request as a direct chat completion.

        Returns
        -------
        bool
            Whether the request completed.
        """
        with logging_context(tenant_id=request.tenant_id, request_id=request.id):
            exhausted = request.individual_attempts + 1 >= self.max_individual_attempts
            next_route = RetryRoute.NONE if exhausted else RetryRoute.INDIVIDUAL
            metrics = self.metrics.for_tenant(request.tenant_id)
            metrics.retry_count += 1
            try:
                with self.metrics.track(request.tenant_id, "retry_failed"):
                    completion = await self.gateway.complete_chat(build_chat_body(request))
                analysis = validate_analysis(request.processing_type, completion.content)
            except NonRetryableError as e:
                return self._fail_individual(request, str(e), RetryRoute.NONE)
            except (BatchProcessingError, ResultLineError) as e:
                return self._fail_individual(request, str(e), next_route)

            with self.database.session() as db:
                completed = mark_request_complete(
                    db,
                    request.id,
                    usage=completion.usage,
                    session_updates=analysis.session_updates(),
                    now=self._clock.now(),
                )
            log.info(event="Request completed individually", completed=completed)
            if completed:
                usage = UsageTotals()
                usage.add(request.model, completion.usage)
                metrics.success_count += 1
                metrics.usage.merge(usage)
                log_cost_tracking(usage, tenant_id=request.tenant_id)
            return completed

    def _fail_individual(self, request: "ProcessingRequest", error: str, route: RetryRoute) -> bool:
        self.metrics.for_tenant(request.tenant_id).failure_count += 1
        with self.database.session() as db:
            mark_request_failed(db, request.id, error_message=error, retry_route=route)
        log.warning(
            event="Individual retry failed",
            attempts=request.individual_attempts + 1,
            retry_route=route,
            error=error,
        )
        return False

    async def check_batch_statuses(
        self, tenant_id: str, batches: t.Sequence["BatchJob"]
    ) -> dict[str, BatchStatus]:
        results: dict[str, BatchStatus] = {}
        errors: list[Exception] = []
        for batch_job in batches:
            try:
                results[batch_job.id] = await self.check_batch_status(batch_job)
            except Exception as e:
                errors.append(e)
                log.warning(
                    event="Batch status check failed",
                    tenant_id=tenant_id,
                    batch_id=batch_job.id,
                    error=str(e),
                )
        self._raise_if_failed(tenant_id, "check_status", errors, total=len(batches))
        return results

    async def process_completed_batches(
        self, tenant_id: str, batches: t.Sequence["BatchJob"]
    ) -> list["ReconcileReport"]:
        reports: list["ReconcileReport"] = []
        errors: list[Exception] = []
        for batch_job in batches:
            try:
                with self.metrics.track(tenant_id, "process_results") as metrics:
                    report = await self.reconciler.reconcile(batch_job)
                metrics.success_count += report.completed
                metrics.failure_count += report.failed
                metrics.usage.merge(report.usage)
                reports.append(report)
            except Exception as e:
                errors.append(e)
                log.warning(
                    event="Batch reconciliation failed",
                    tenant_id=tenant_id,
                    batch_id=batch_job.id,
                    error=str(e),
                )
        self._raise_if_failed(tenant_id, "process_results", errors, total=len(batches))
        return reports

    async def retry_failed_requests(
        self, tenant_id: str, requests: t.Sequence["ProcessingRequest"]
    ) -> int:
        completed = 0
        errors: list[Exception] = []
        for request in requests:
            try:
                if await self.retry_failed_request(request):
                    completed += 1
            except Exception as e:
                errors.append(e)
                log.warning(
                    event="Individual retry crashed",
                    tenant_id=tenant_id,
                    request_id=request.id,
                    error=str(e),
                )
        self._raise_if_failed(tenant_id, "retry_failed", errors, total=len(requests))
        return completed

    @staticmethod
    def _raise_if_failed(
        tenant_id: str, operation: str, errors: list[Exception], *, total: int
    ) -> None:
        if not errors:
            return
        raise BatchProcessingError(
            f"{operation} failed for {len(errors)} of {total} item(s) of tenant {tenant_id}: "
            f"{errors[0]}",
            operation=operation,
        ) from errors[0]
