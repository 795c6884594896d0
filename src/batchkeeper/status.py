from enum import StrEnum


class RequestStatus(StrEnum):
    PENDING = "pending"
    BATCHING_IN_PROGRESS = "batching_in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


class RetryRoute(StrEnum):
    """
    Which retry path owns a request that is not currently inside a batch.

    ``batch`` requests are picked up by the next batch when ``pending``,
    ``individual`` requests are resubmitted one by one when ``failed``, and
    ``none`` marks a failure that no cadence will touch again.
    """

    BATCH = "batch"
    INDIVIDUAL = "individual"
    NONE = "none"


class BatchStatus(StrEnum):
    VALIDATING = "validating"
    IN_PROGRESS = "in_progress"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    PROCESSED = "processed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProviderBatchStatus(StrEnum):
    VALIDATING = "validating"
    IN_PROGRESS = "in_progress"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"


class TenantStatus(StrEnum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class ProcessingType(StrEnum):
    SENTIMENT_ANALYSIS = "sentiment_analysis"
    CATEGORIZATION = "categorization"
    SUMMARY = "summary"
    FULL_ANALYSIS = "full_analysis"


IN_FLIGHT_BATCH_STATUSES = frozenset(
    {BatchStatus.VALIDATING, BatchStatus.IN_PROGRESS, BatchStatus.FINALIZING}
)
TERMINAL_BATCH_STATUSES = frozenset(
    {BatchStatus.PROCESSED, BatchStatus.FAILED, BatchStatus.CANCELLED}
)
RELEASING_BATCH_STATUSES = frozenset({BatchStatus.FAILED, BatchStatus.CANCELLED})
# poll responses no longer apply once a batch is here
COMPLETED_OR_TERMINAL_BATCH_STATUSES = TERMINAL_BATCH_STATUSES | {BatchStatus.COMPLETED}

PROVIDER_STATUS_MAP: dict[str, BatchStatus] = {
    ProviderBatchStatus.VALIDATING: BatchStatus.VALIDATING,
    ProviderBatchStatus.IN_PROGRESS: BatchStatus.IN_PROGRESS,
    ProviderBatchStatus.FINALIZING: BatchStatus.FINALIZING,
    ProviderBatchStatus.COMPLETED: BatchStatus.COMPLETED,
    ProviderBatchStatus.FAILED: BatchStatus.FAILED,
    ProviderBatchStatus.EXPIRED: BatchStatus.FAILED,
    # the provider still owns the requests until it confirms the cancellation
    ProviderBatchStatus.CANCELLING: BatchStatus.IN_PROGRESS,
    ProviderBatchStatus.CANCELLED: BatchStatus.CANCELLED,
}


def map_provider_status(status: str | None) -> BatchStatus:
    """
    Map a provider batch status onto the local batch lifecycle.

    Parameters
    ----------
    status : str | None
        Status string reported by the provider.

    Returns
    -------
    BatchStatus
        Local status. Unknown or missing statuses map to ``failed``.
    """
    if status is None:
        return BatchStatus.FAILED
    return PROVIDER_STATUS_MAP.get(status, BatchStatus.FAILED)
