from __future__ import annotations

import typing as t
from dataclasses import dataclass, field

import structlog

from batchkeeper.clock import Clock, SystemClock
from batchkeeper.db.crud import (
    get_processing_requests,
    mark_batch_failed,
    mark_batch_processed,
    mark_request_complete,
    mark_request_failed,
    release_batch_requests,
)
from batchkeeper.exceptions import BatchProcessingError, NonRetryableError, ResultLineError
from batchkeeper.logging import logging_context
from batchkeeper.metrics import UsageTotals, log_cost_tracking
from batchkeeper.models import ErrorLine, SuccessLine, parse_result_line, validate_analysis
from batchkeeper.status import BatchStatus, RequestStatus, RetryRoute

if t.TYPE_CHECKING:
    from batchkeeper.db.models import BatchJob, ProcessingRequest
    from batchkeeper.db.session import Database
    from batchkeeper.gateway import ProviderGateway

log = structlog.get_logger(__name__)

MISSING_RESULT_MESSAGE = "Provider returned no result line for this request"


@dataclass
class ReconcileReport:
    batch_id: str
    completed: int = 0
    failed: int = 0
    skipped_lines: int = 0
    unmatched_lines: int = 0
    released: int = 0
    batch_failed: bool = False
    usage: UsageTotals = field(default_factory=UsageTotals)


class ResultReconciler:
    """
    Apply the output of a completed batch to its requests and sessions.

    Every line is handled on its own: a malformed line is logged and skipped, an
    error line or a completion that does not match the analysis schema fails only
    its own request. Requests that got no line at all go back to ``pending``. Only
    a failed download of the output file fails the whole batch.

    Parameters
    ----------
    database : Database
        The lifecycle store.
    gateway : ProviderGateway
        Used to download output and error files.
    clock : Clock | None
        Time source for completion timestamps.
    """

    def __init__(
        self,
        database: "Database",
        gateway: "ProviderGateway",
        *,
        clock: Clock | None = None,
    ) -> None:
        self.database = database
        self.gateway = gateway
        self._clock = clock or SystemClock()

    async def _download_error_file(self, batch_job: "BatchJob") -> str:
        if not batch_job.error_file_id:
            return ""
        try:
            return await self.gateway.download_file(batch_job.error_file_id)
        except Exception as e:
            # the affected requests are released as unanswered below
            log.warning(
                event="Could not download batch error file",
                error_file_id=batch_job.error_file_id,
                error=str(e),
            )
            return ""

    async def reconcile(self, batch_job: "BatchJob") -> ReconcileReport:
        """
        Reconcile one completed batch.

        Parameters
        ----------
        batch_job : BatchJob
            A batch in ``completed`` status with an output file.

        Returns
        -------
        ReconcileReport
            Per-outcome counts.

        Raises
        ------
        ValueError
            If the batch is not ready for reconciliation.
        CircuitBreakerOpenError
            If downloads are currently short-circuited; the batch stays
            ``completed`` and is picked up again on a later tick.
        """
        if batch_job.status != BatchStatus.COMPLETED or not batch_job.output_file_id:
            raise ValueError(
                f"Batch {batch_job.id} is not ready for reconciliation (status={batch_job.status})"
            )
        report = ReconcileReport(batch_id=batch_job.id)
        with logging_context(tenant_id=batch_job.tenant_id, batch_id=batch_job.id):
            try:
                content = await self.gateway.download_file(batch_job.output_file_id)
            except (BatchProcessingError, NonRetryableError) as e:
                with self.database.session() as db:
                    released = mark_batch_failed(
                        db,
                        batch_job.id,
                        error_message=f"Output download failed: {e}",
                        now=self._clock.now(),
                    )
                report.batch_failed = True
                report.released = released or 0
                log.error(
                    event="Batch failed: output could not be downloaded",
                    released=report.released,
                    error=str(e),
                )
                return report

            error_content = await self._download_error_file(batch_job)
            with self.database.session() as db:
                outstanding = {
                    request.id: request
                    for request in get_processing_requests(db, batch_id=batch_job.id)
                    if request.status == RequestStatus.BATCHING_IN_PROGRESS
                }

            raw_lines = content.splitlines() + error_content.splitlines()
            for line_number, raw in enumerate(raw_lines, start=1):
                if not raw.strip():
                    continue
                try:
                    line = parse_result_line(raw, line_number=line_number)
                except Exception as e:
                    report.skipped_lines += 1
                    log.warning(
                        event="Skipping malformed result line",
                        line_number=line_number,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    continue
                request = outstanding.pop(line.custom_id, None)
                if request is None:
                    report.unmatched_lines += 1
                    log.warning(
                        event="Result line does not match an outstanding request",
                        line_number=line_number,
                        custom_id=line.custom_id,
                    )
                    continue
                if self._apply_line(batch_job.id, request, line):
                    report.completed += 1
                    report.usage.add(request.model, line.response.body.usage)
                else:
                    report.failed += 1

            with self.database.session() as db:
                if outstanding:
                    report.released = release_batch_requests(
                        db, batch_job.id, error_message=MISSING_RESULT_MESSAGE
                    )
                    log.warning(event="Released requests without result", count=report.released)
                mark_batch_processed(db, batch_job.id, now=self._clock.now())

            log.info(
                event="Batch reconciled",
                completed=report.completed,
                failed=report.failed,
                skipped_lines=report.skipped_lines,
                unmatched_lines=report.unmatched_lines,
                released=report.released,
            )
            log_cost_tracking(report.usage, tenant_id=batch_job.tenant_id, batch_id=batch_job.id)
        return report

    def _apply_line(
        self, batch_id: str, request: "ProcessingRequest", line: SuccessLine | ErrorLine
    ) -> bool:
        if isinstance(line, ErrorLine):
            error_message = line.error.message
        else:
            try:
                analysis = validate_analysis(request.processing_type, line.response.body.content)
            except ResultLineError as e:
                error_message = str(e)
            else:
                with self.database.session() as db:
                    return mark_request_complete(
                        db,
                        request.id,
                        usage=line.response.body.usage,
                        session_updates=analysis.session_updates(),
                        batch_id=batch_id,
                        now=self._clock.now(),
                    )

        log.info(event="Request failed in batch", request_id=request.id, error=error_message)
        with self.database.session() as db:
            mark_request_failed(
                db,
                request.id,
                error_message=error_message,
                retry_route=RetryRoute.INDIVIDUAL,
                batch_id=batch_id,
            )
        return False
