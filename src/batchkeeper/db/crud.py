import typing as t
from collections import defaultdict
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import selectinload

from batchkeeper.clock import utcnow
from batchkeeper.db.models import BatchJob, ChatSession, ProcessingRequest, SessionMessage, Tenant
from batchkeeper.status import (
    COMPLETED_OR_TERMINAL_BATCH_STATUSES,
    IN_FLIGHT_BATCH_STATUSES,
    RELEASING_BATCH_STATUSES,
    TERMINAL_BATCH_STATUSES,
    BatchStatus,
    RequestStatus,
    RetryRoute,
    TenantStatus,
    map_provider_status,
)

if t.TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from batchkeeper.models import ProviderBatch, TokenUsage


def _with_transcript():
    return selectinload(ProcessingRequest.session).selectinload(ChatSession.messages)


def _group_by_tenant(rows: t.Iterable[t.Any], *, limit: int | None = None) -> dict[str, list]:
    grouped: dict[str, list] = defaultdict(list)
    for row in rows:
        bucket = grouped[row.tenant_id]
        if limit is None or len(bucket) < limit:
            bucket.append(row)
    return dict(grouped)


# tenants and sessions


def create_tenant(
    db: "Session",
    name: str,
    *,
    status: str = TenantStatus.ACTIVE,
    tenant_id: str | None = None,
    created_at: datetime | None = None,
) -> Tenant:
    tenant = Tenant(name=name, status=status, created_at=created_at or utcnow())
    if tenant_id is not None:
        tenant.id = tenant_id
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return tenant


def get_tenant(db: "Session", tenant_id: str) -> Tenant | None:
    return db.get(Tenant, tenant_id)


def get_active_tenant_ids(db: "Session") -> list[str]:
    stmt = (
        select(Tenant.id).where(Tenant.status == TenantStatus.ACTIVE).order_by(Tenant.created_at)
    )
    return list(db.execute(stmt).scalars().all())


def set_tenant_status(db: "Session", tenant_id: str, status: str) -> bool:
    result = db.execute(update(Tenant).where(Tenant.id == tenant_id).values(status=status))
    db.commit()
    return result.rowcount == 1


def create_session(
    db: "Session",
    tenant_id: str,
    messages: t.Sequence[tuple[str, str]],
    *,
    created_at: datetime | None = None,
) -> ChatSession:
    """Create a chat session

    Parameters
    ----------
    db : Session
        The database session
    tenant_id : str
        The owning tenant
    messages : Sequence[tuple[str, str]]
        ``(role, content)`` pairs in transcript order
    created_at : datetime | None
        Creation time, defaults to now

    Returns
    -------
    ChatSession
        The created session with its messages
    """
    chat_session = ChatSession(tenant_id=tenant_id, created_at=created_at or utcnow())
    chat_session.messages = [
        SessionMessage(role=role, content=content, order=index)
        for index, (role, content) in enumerate(messages)
    ]
    db.add(chat_session)
    db.commit()
    return get_session(db=db, session_id=chat_session.id)


def get_session(db: "Session", session_id: str) -> ChatSession | None:
    stmt = (
        select(ChatSession)
        .where(ChatSession.id == session_id)
        .options(selectinload(ChatSession.messages))
    )
    return db.execute(stmt).scalar_one_or_none()


# processing requests


def create_processing_request(
    db: "Session",
    session_id: str,
    *,
    model: str,
    processing_type: str,
    requested_at: datetime | None = None,
) -> ProcessingRequest:
    """Create a pending processing request for a session

    Parameters
    ----------
    db : Session
        The database session
    session_id : str
        The session to analyze
    model : str
        The model to run the analysis with
    processing_type : str
        One of the ``ProcessingType`` values
    requested_at : datetime | None
        Request time, defaults to now

    Returns
    -------
    ProcessingRequest
        The created request, ``pending`` and routed to the batch path

    Raises
    ------
    ValueError
        If the session does not exist
    """
    chat_session = db.get(ChatSession, session_id)
    if chat_session is None:
        raise ValueError(f"Session {session_id} does not exist")
    request = ProcessingRequest(
        session_id=session_id,
        tenant_id=chat_session.tenant_id,
        model=model,
        processing_type=processing_type,
        status=RequestStatus.PENDING,
        retry_route=RetryRoute.BATCH,
        individual_attempts=0,
        requested_at=requested_at or utcnow(),
    )
    db.add(request)
    db.commit()
    db.refresh(request)
    return request


def get_processing_request(db: "Session", request_id: str) -> ProcessingRequest | None:
    stmt = (
        select(ProcessingRequest)
        .where(ProcessingRequest.id == request_id)
        .options(_with_transcript())
    )
    return db.execute(stmt).scalar_one_or_none()


def get_processing_requests(
    db: "Session",
    *,
    tenant_id: str | None = None,
    status: str | None = None,
    batch_id: str | None = None,
) -> list[ProcessingRequest]:
    stmt = select(ProcessingRequest)
    if tenant_id is not None:
        stmt = stmt.where(ProcessingRequest.tenant_id == tenant_id)
    if status is not None:
        stmt = stmt.where(ProcessingRequest.status == status)
    if batch_id is not None:
        stmt = stmt.where(ProcessingRequest.batch_id == batch_id)
    stmt = stmt.order_by(ProcessingRequest.requested_at, ProcessingRequest.id)
    return list(db.execute(stmt).scalars().all())


def _pending_for_batch():
    return select(ProcessingRequest).where(
        ProcessingRequest.status == RequestStatus.PENDING,
        ProcessingRequest.retry_route == RetryRoute.BATCH,
    )


def get_pending_requests(
    db: "Session", tenant_id: str, *, limit: int | None = None
) -> list[ProcessingRequest]:
    """Get the batch-eligible pending requests of a tenant, oldest first

    Parameters
    ----------
    db : Session
        The database session
    tenant_id : str
        The tenant
    limit : int | None
        Maximum number of requests to return

    Returns
    -------
    list[ProcessingRequest]
        Requests with their transcripts loaded
    """
    stmt = (
        _pending_for_batch()
        .where(ProcessingRequest.tenant_id == tenant_id)
        .options(_with_transcript())
        .order_by(ProcessingRequest.requested_at, ProcessingRequest.id)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).scalars().all())


def get_pending_requests_for_tenants(
    db: "Session", tenant_ids: t.Sequence[str], *, limit_per_tenant: int | None = None
) -> dict[str, list[ProcessingRequest]]:
    """Get batch-eligible pending requests of many tenants in one query

    Parameters
    ----------
    db : Session
        The database session
    tenant_ids : Sequence[str]
        Tenants to include
    limit_per_tenant : int | None
        Maximum number of requests kept per tenant, oldest first

    Returns
    -------
    dict[str, list[ProcessingRequest]]
        Requests grouped by tenant. Tenants without pending requests are absent.
    """
    if not tenant_ids:
        return {}
    stmt = (
        _pending_for_batch()
        .where(ProcessingRequest.tenant_id.in_(tenant_ids))
        .options(_with_transcript())
        .order_by(ProcessingRequest.requested_at, ProcessingRequest.id)
    )
    return _group_by_tenant(db.execute(stmt).scalars().all(), limit=limit_per_tenant)


def count_pending_requests(db: "Session", tenant_id: str) -> int:
    stmt = (
        select(func.count())
        .select_from(ProcessingRequest)
        .where(
            ProcessingRequest.tenant_id == tenant_id,
            ProcessingRequest.status == RequestStatus.PENDING,
            ProcessingRequest.retry_route == RetryRoute.BATCH,
        )
    )
    return db.execute(stmt).scalar_one()


def get_oldest_pending_requested_at(db: "Session", tenant_id: str) -> datetime | None:
    stmt = select(func.min(ProcessingRequest.requested_at)).where(
        ProcessingRequest.tenant_id == tenant_id,
        ProcessingRequest.status == RequestStatus.PENDING,
        ProcessingRequest.retry_route == RetryRoute.BATCH,
    )
    return db.execute(stmt).scalar_one_or_none()


def get_failed_requests_for_tenants(
    db: "Session",
    tenant_ids: t.Sequence[str],
    *,
    limit_per_tenant: int,
    max_attempts: int,
) -> dict[str, list[ProcessingRequest]]:
    """Get requests waiting on the individual retry path, oldest first

    Parameters
    ----------
    db : Session
        The database session
    tenant_ids : Sequence[str]
        Tenants to include
    limit_per_tenant : int
        Maximum number of requests kept per tenant
    max_attempts : int
        Requests with this many individual attempts or more are excluded

    Returns
    -------
    dict[str, list[ProcessingRequest]]
        Requests grouped by tenant, with transcripts loaded
    """
    if not tenant_ids:
        return {}
    stmt = (
        select(ProcessingRequest)
        .where(
            ProcessingRequest.tenant_id.in_(tenant_ids),
            ProcessingRequest.status == RequestStatus.FAILED,
            ProcessingRequest.retry_route == RetryRoute.INDIVIDUAL,
            ProcessingRequest.individual_attempts < max_attempts,
        )
        .options(_with_transcript())
        .order_by(ProcessingRequest.requested_at, ProcessingRequest.id)
    )
    return _group_by_tenant(db.execute(stmt).scalars().all(), limit=limit_per_tenant)


def bulk_update_request_status(
    db: "Session",
    request_ids: t.Sequence[str],
    *,
    status: str,
    retry_route: str | None = None,
    error_message: str | None = None,
    from_status: str | None = None,
) -> int:
    """Set the status of many requests by id

    Moving a request to ``pending`` or ``failed`` always clears its batch link.

    Parameters
    ----------
    db : Session
        The database session
    request_ids : Sequence[str]
        Requests to update
    status : str
        The new status. ``batching_in_progress`` is only reachable through
        ``create_batch_job``.
    retry_route : str | None
        New retry route, unchanged if omitted
    error_message : str | None
        Error annotation, unchanged if omitted
    from_status : str | None
        Only update requests currently in this status

    Returns
    -------
    int
        Number of updated requests
    """
    if status == RequestStatus.BATCHING_IN_PROGRESS:
        raise ValueError("Requests can only enter a batch through create_batch_job")
    if not request_ids:
        return 0
    values: dict[str, t.Any] = {"status": status}
    if status in {RequestStatus.PENDING, RequestStatus.FAILED}:
        values["batch_id"] = None
    if retry_route is not None:
        values["retry_route"] = retry_route
    if error_message is not None:
        values["error_message"] = error_message
    stmt = update(ProcessingRequest).where(ProcessingRequest.id.in_(request_ids))
    if from_status is not None:
        stmt = stmt.where(ProcessingRequest.status == from_status)
    result = db.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


def mark_request_complete(
    db: "Session",
    request_id: str,
    *,
    usage: "TokenUsage | None",
    session_updates: dict[str, str],
    batch_id: str | None = None,
    now: datetime | None = None,
) -> bool:
    """Mark a request complete and write its analysis onto the session

    Parameters
    ----------
    db : Session
        The database session
    request_id : str
        The request
    usage : TokenUsage | None
        Token usage reported by the provider
    session_updates : dict[str, str]
        Analysis fields to set on the owning session
    batch_id : str | None
        When given, the request must still be linked to this batch and keeps
        the id as history. Otherwise the request must be waiting on the
        individual retry path.
    now : datetime | None
        Completion time

    Returns
    -------
    bool
        Whether the request was in the expected state and got updated
    """
    values: dict[str, t.Any] = {
        "status": RequestStatus.COMPLETE,
        "retry_route": RetryRoute.NONE,
        "success": True,
        "error_message": None,
        "completed_at": now or utcnow(),
        "prompt_tokens": usage.prompt_tokens if usage else None,
        "completion_tokens": usage.completion_tokens if usage else None,
        "total_tokens": usage.total_tokens if usage else None,
    }
    stmt = update(ProcessingRequest).where(ProcessingRequest.id == request_id)
    if batch_id is not None:
        stmt = stmt.where(
            ProcessingRequest.batch_id == batch_id,
            ProcessingRequest.status == RequestStatus.BATCHING_IN_PROGRESS,
        )
    else:
        stmt = stmt.where(
            ProcessingRequest.status == RequestStatus.FAILED,
            ProcessingRequest.retry_route == RetryRoute.INDIVIDUAL,
        )
        values["individual_attempts"] = ProcessingRequest.individual_attempts + 1
    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    if result.rowcount != 1:
        db.rollback()
        return False
    if session_updates:
        session_id = select(ProcessingRequest.session_id).where(
            ProcessingRequest.id == request_id
        )
        db.execute(
            update(ChatSession)
            .where(ChatSession.id == session_id.scalar_subquery())
            .values(**session_updates)
            .execution_options(synchronize_session=False)
        )
    db.commit()
    return True


def mark_request_failed(
    db: "Session",
    request_id: str,
    *,
    error_message: str,
    retry_route: str,
    batch_id: str | None = None,
) -> bool:
    """Mark a request failed and route it for its next retry

    Parameters
    ----------
    db : Session
        The database session
    request_id : str
        The request
    error_message : str
        Why it failed
    retry_route : str
        ``individual`` to hand it to the retry cadence, ``none`` to stop
    batch_id : str | None
        When given, the request must still be linked to this batch and the
        link is cleared. Otherwise the request must be waiting on the
        individual retry path and its attempt counter is incremented.

    Returns
    -------
    bool
        Whether the request was in the expected state and got updated
    """
    values: dict[str, t.Any] = {
        "status": RequestStatus.FAILED,
        "retry_route": retry_route,
        "batch_id": None,
        "success": False,
        "error_message": error_message,
    }
    stmt = update(ProcessingRequest).where(ProcessingRequest.id == request_id)
    if batch_id is not None:
        stmt = stmt.where(
            ProcessingRequest.batch_id == batch_id,
            ProcessingRequest.status == RequestStatus.BATCHING_IN_PROGRESS,
        )
    else:
        stmt = stmt.where(
            ProcessingRequest.status == RequestStatus.FAILED,
            ProcessingRequest.retry_route == RetryRoute.INDIVIDUAL,
        )
        values["individual_attempts"] = ProcessingRequest.individual_attempts + 1
    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    db.commit()
    return result.rowcount == 1


# batch jobs


def create_batch_job(
    db: "Session",
    *,
    tenant_id: str,
    provider_batch_id: str,
    input_file_id: str,
    request_ids: t.Sequence[str],
    status: str = BatchStatus.VALIDATING,
    created_at: datetime | None = None,
) -> tuple[BatchJob, int]:
    """Create a batch job and link its requests in one transaction

    Only requests that are still ``pending`` on the batch route get linked.

    Parameters
    ----------
    db : Session
        The database session
    tenant_id : str
        The owning tenant
    provider_batch_id : str
        Batch id assigned by the provider
    input_file_id : str
        Id of the uploaded input file
    request_ids : Sequence[str]
        Requests contained in the input file
    status : str
        Initial local status
    created_at : datetime | None
        Creation time, defaults to now

    Returns
    -------
    tuple[BatchJob, int]
        The created batch job and the number of requests linked to it
    """
    batch_job = BatchJob(
        tenant_id=tenant_id,
        provider_batch_id=provider_batch_id,
        input_file_id=input_file_id,
        status=status,
        created_at=created_at or utcnow(),
    )
    try:
        db.add(batch_job)
        db.flush()
        result = db.execute(
            update(ProcessingRequest)
            .where(
                ProcessingRequest.id.in_(request_ids),
                ProcessingRequest.status == RequestStatus.PENDING,
                ProcessingRequest.retry_route == RetryRoute.BATCH,
            )
            .values(status=RequestStatus.BATCHING_IN_PROGRESS, batch_id=batch_job.id)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return batch_job, result.rowcount


def get_batch_job(db: "Session", batch_id: str) -> BatchJob | None:
    return db.get(BatchJob, batch_id)


def get_batch_jobs(
    db: "Session",
    *,
    tenant_id: str | None = None,
    statuses: t.Iterable[str] | None = None,
    limit: int | None = None,
) -> list[BatchJob]:
    stmt = select(BatchJob)
    if tenant_id is not None:
        stmt = stmt.where(BatchJob.tenant_id == tenant_id)
    if statuses is not None:
        stmt = stmt.where(BatchJob.status.in_(list(statuses)))
    stmt = stmt.order_by(BatchJob.created_at.desc())
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).scalars().all())


def _batches_for_tenants(
    db: "Session", tenant_ids: t.Sequence[str], statuses: t.Iterable[str]
) -> dict[str, list[BatchJob]]:
    if not tenant_ids:
        return {}
    stmt = (
        select(BatchJob)
        .where(BatchJob.tenant_id.in_(tenant_ids), BatchJob.status.in_(list(statuses)))
        .order_by(BatchJob.created_at, BatchJob.id)
    )
    return _group_by_tenant(db.execute(stmt).scalars().all())


def get_in_flight_batches_for_tenants(
    db: "Session", tenant_ids: t.Sequence[str]
) -> dict[str, list[BatchJob]]:
    return _batches_for_tenants(db, tenant_ids, IN_FLIGHT_BATCH_STATUSES)


def get_completed_batches_for_tenants(
    db: "Session", tenant_ids: t.Sequence[str]
) -> dict[str, list[BatchJob]]:
    batches = _batches_for_tenants(db, tenant_ids, [BatchStatus.COMPLETED])
    return {
        tenant_id: [batch for batch in tenant_batches if batch.output_file_id]
        for tenant_id, tenant_batches in batches.items()
        if any(batch.output_file_id for batch in tenant_batches)
    }


def get_batch_request_ids(db: "Session", batch_id: str) -> list[str]:
    """Ids of the requests currently linked to a batch"""
    stmt = (
        select(ProcessingRequest.id)
        .where(
            ProcessingRequest.batch_id == batch_id,
            ProcessingRequest.status == RequestStatus.BATCHING_IN_PROGRESS,
        )
        .order_by(ProcessingRequest.requested_at, ProcessingRequest.id)
    )
    return list(db.execute(stmt).scalars().all())


def _release_batch_requests(db: "Session", batch_id: str, *, error_message: str) -> int:
    result = db.execute(
        update(ProcessingRequest)
        .where(
            ProcessingRequest.batch_id == batch_id,
            ProcessingRequest.status == RequestStatus.BATCHING_IN_PROGRESS,
        )
        .values(
            status=RequestStatus.PENDING,
            retry_route=RetryRoute.BATCH,
            batch_id=None,
            error_message=error_message,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def release_batch_requests(db: "Session", batch_id: str, *, error_message: str) -> int:
    """Send every request still linked to a batch back to ``pending``

    Returns
    -------
    int
        Number of released requests
    """
    released = _release_batch_requests(db, batch_id, error_message=error_message)
    db.commit()
    return released


def apply_provider_status(
    db: "Session",
    batch_id: str,
    provider_batch: "ProviderBatch",
    *,
    now: datetime | None = None,
) -> tuple[BatchStatus, int]:
    """Apply a provider poll response to a batch job

    Re-applying the same response is a no-op. Batches that already completed
    or reached a terminal state are left untouched. Reaching ``failed`` or
    ``cancelled`` releases every linked request in the same transaction.

    Parameters
    ----------
    db : Session
        The database session
    batch_id : str
        The local batch id
    provider_batch : ProviderBatch
        The poll response
    now : datetime | None
        Time of the poll

    Returns
    -------
    tuple[BatchStatus, int]
        The resulting local status and the number of released requests

    Raises
    ------
    ValueError
        If the batch does not exist
    """
    batch_job = db.get(BatchJob, batch_id)
    if batch_job is None:
        raise ValueError(f"Batch {batch_id} does not exist")
    if batch_job.status in COMPLETED_OR_TERMINAL_BATCH_STATUSES:
        return BatchStatus(batch_job.status), 0

    new_status = map_provider_status(provider_batch.status)
    values: dict[str, t.Any] = {"status": new_status}
    if provider_batch.output_file_id:
        values["output_file_id"] = provider_batch.output_file_id
    if provider_batch.error_file_id:
        values["error_file_id"] = provider_batch.error_file_id
    if new_status == BatchStatus.COMPLETED:
        values["completed_at"] = now or utcnow()
    if new_status in RELEASING_BATCH_STATUSES:
        values["error_message"] = f"Provider reported batch status {provider_batch.status!r}"

    try:
        result = db.execute(
            update(BatchJob)
            .where(
                BatchJob.id == batch_id,
                BatchJob.status.notin_(list(COMPLETED_OR_TERMINAL_BATCH_STATUSES)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        released = 0
        if result.rowcount == 1 and new_status in RELEASING_BATCH_STATUSES:
            released = _release_batch_requests(
                db,
                batch_id,
                error_message=f"Batch {new_status}: {values['error_message']}",
            )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(batch_job)
    return BatchStatus(batch_job.status), released


def mark_batch_failed(
    db: "Session",
    batch_id: str,
    *,
    error_message: str,
    now: datetime | None = None,
) -> int | None:
    """Fail a batch and release its requests in one transaction

    Parameters
    ----------
    db : Session
        The database session
    batch_id : str
        The local batch id
    error_message : str
        Why the batch failed
    now : datetime | None
        Time of the failure

    Returns
    -------
    int | None
        Number of released requests, or ``None`` if the batch was already
        terminal and nothing changed
    """
    try:
        result = db.execute(
            update(BatchJob)
            .where(
                BatchJob.id == batch_id,
                BatchJob.status.notin_(list(TERMINAL_BATCH_STATUSES)),
            )
            .values(
                status=BatchStatus.FAILED,
                error_message=error_message,
                completed_at=now or utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            return None
        released = _release_batch_requests(
            db, batch_id, error_message=f"Batch failed: {error_message}"
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return released


def mark_batch_processed(db: "Session", batch_id: str, *, now: datetime | None = None) -> bool:
    result = db.execute(
        update(BatchJob)
        .where(BatchJob.id == batch_id, BatchJob.status == BatchStatus.COMPLETED)
        .values(status=BatchStatus.PROCESSED, processed_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


# reporting


def get_batch_processing_stats(db: "Session", tenant_id: str | None = None) -> dict[str, t.Any]:
    """Count batches and requests by status

    Parameters
    ----------
    db : Session
        The database session
    tenant_id : str | None
        Restrict to one tenant

    Returns
    -------
    dict[str, Any]
        ``batches`` and ``requests`` status counts, plus the number of
        ``pending_requests`` eligible for the next batch
    """
    batch_stmt = select(BatchJob.status, func.count()).group_by(BatchJob.status)
    request_stmt = select(ProcessingRequest.status, func.count()).group_by(
        ProcessingRequest.status
    )
    if tenant_id is not None:
        batch_stmt = batch_stmt.where(BatchJob.tenant_id == tenant_id)
        request_stmt = request_stmt.where(ProcessingRequest.tenant_id == tenant_id)
    pending_stmt = (
        select(func.count())
        .select_from(ProcessingRequest)
        .where(
            ProcessingRequest.status == RequestStatus.PENDING,
            ProcessingRequest.retry_route == RetryRoute.BATCH,
        )
    )
    if tenant_id is not None:
        pending_stmt = pending_stmt.where(ProcessingRequest.tenant_id == tenant_id)
    return {
        "batches": dict(db.execute(batch_stmt).tuples().all()),
        "requests": dict(db.execute(request_stmt).tuples().all()),
        "pending_requests": db.execute(pending_stmt).scalar_one(),
    }


def get_token_usage(
    db: "Session", tenant_id: str | None = None
) -> list[tuple[str, str, int, int, int]]:
    """Sum token usage of completed requests

    Parameters
    ----------
    db : Session
        The database session
    tenant_id : str | None
        Restrict to one tenant

    Returns
    -------
    list[tuple[str, str, int, int, int]]
        ``(tenant_id, model, request_count, prompt_tokens, completion_tokens)`` rows
    """
    stmt = (
        select(
            ProcessingRequest.tenant_id,
            ProcessingRequest.model,
            func.count(),
            func.coalesce(func.sum(ProcessingRequest.prompt_tokens), 0),
            func.coalesce(func.sum(ProcessingRequest.completion_tokens), 0),
        )
        .where(ProcessingRequest.status == RequestStatus.COMPLETE)
        .group_by(ProcessingRequest.tenant_id, ProcessingRequest.model)
        .order_by(ProcessingRequest.tenant_id, ProcessingRequest.model)
    )
    if tenant_id is not None:
        stmt = stmt.where(ProcessingRequest.tenant_id == tenant_id)
    return list(db.execute(stmt).tuples().all())


def count_stale_batches(db: "Session", *, created_before: datetime) -> int:
    """Count non-terminal batches created before a cutoff"""
    stmt = (
        select(func.count())
        .select_from(BatchJob)
        .where(
            BatchJob.status.notin_(list(TERMINAL_BATCH_STATUSES)),
            BatchJob.created_at < created_before,
        )
    )
    return db.execute(stmt).scalar_one()
