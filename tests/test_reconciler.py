import json

import pytest

from batchkeeper.exceptions import CircuitBreakerOpenError, RetryableError
from batchkeeper.providers.mock import mock_error_line, mock_success_line
from batchkeeper.reconciler import MISSING_RESULT_MESSAGE
from tests.mocks.store import (
    add_requests,
    add_tenant,
    fetch_batch,
    fetch_request,
    fetch_requests,
    fetch_session,
)


@pytest.fixture
def processor(scheduler):
    return scheduler.processor


@pytest.fixture
def reconciler(processor):
    return processor.reconciler


async def submit(processor, tenant_id):
    batch_job = await processor.create_batch(tenant_id, force=True)
    assert batch_job is not None
    return batch_job


async def complete(processor, database, clock, batch_job):
    clock.advance(180)
    assert await processor.check_batch_status(batch_job) == "completed"
    return fetch_batch(database, batch_job.id)


@pytest.mark.asyncio
async def test_all_lines_succeed(processor, reconciler, database, clock):
    tenant_id = add_tenant(database)
    request_ids = add_requests(database, tenant_id, 5)
    batch_job = await complete(processor, database, clock, await submit(processor, tenant_id))

    report = await reconciler.reconcile(batch_job)

    assert (report.completed, report.failed, report.skipped_lines, report.released) == (5, 0, 0, 0)
    assert report.usage.request_count == 5
    assert (report.usage.prompt_tokens, report.usage.completion_tokens) == (250, 150)
    assert report.usage.cost == pytest.approx(5 * 0.0000255)
    assert fetch_batch(database, batch_job.id).status == "processed"
    for request in fetch_requests(database, request_ids):
        assert request.status == "complete"
        assert request.batch_id == batch_job.id
        assert request.total_tokens == 80
    chat_session = fetch_session(database, fetch_request(database, request_ids[0]).session_id)
    assert chat_session.summary == "Mock AI analysis result"
    assert chat_session.sentiment == "NEUTRAL"
    assert chat_session.category == "UNRECOGNIZED_OTHER"
    assert chat_session.language == "en"


@pytest.mark.asyncio
async def test_malformed_lines_are_skipped_individually(
    processor, reconciler, database, clock, mock_provider
):
    tenant_id = add_tenant(database)
    request_ids = add_requests(database, tenant_id, 100)
    batch_job = await submit(processor, tenant_id)
    lines = [mock_success_line(request_id) for request_id in request_ids]
    lines[36] = '{"custom_id": "' + request_ids[36] + '", "response": {'
    lines[81] = "not json at all"
    mock_provider.set_output(batch_job.provider_batch_id, "\n".join(lines))
    batch_job = await complete(processor, database, clock, batch_job)

    report = await reconciler.reconcile(batch_job)

    assert report.completed == 98
    assert report.skipped_lines == 2
    assert report.released == 2
    assert not report.batch_failed
    assert fetch_batch(database, batch_job.id).status == "processed"
    for index in (36, 81):
        request = fetch_request(database, request_ids[index])
        assert request.status == "pending"
        assert request.retry_route == "batch"
        assert request.batch_id is None
        assert request.error_message == MISSING_RESULT_MESSAGE


@pytest.mark.asyncio
async def test_non_object_response_is_skipped_without_aborting(
    processor, reconciler, database, clock, mock_provider
):
    tenant_id = add_tenant(database)
    request_ids = add_requests(database, tenant_id, 3)
    batch_job = await submit(processor, tenant_id)
    lines = [mock_success_line(request_id) for request_id in request_ids]
    lines[1] = json.dumps({"custom_id": request_ids[1], "response": "oops"})
    mock_provider.set_output(batch_job.provider_batch_id, "\n".join(lines))
    batch_job = await complete(processor, database, clock, batch_job)

    report = await reconciler.reconcile(batch_job)

    assert (report.completed, report.skipped_lines, report.released) == (2, 1, 1)
    assert fetch_batch(database, batch_job.id).status == "processed"
    statuses = [request.status for request in fetch_requests(database, request_ids)]
    assert statuses == ["complete", "pending", "complete"]


@pytest.mark.asyncio
async def test_error_and_invalid_lines_fail_only_their_request(
    processor, reconciler, database, clock, mock_provider
):
    tenant_id = add_tenant(database)
    ok, errored, invalid = add_requests(database, tenant_id, 3)
    batch_job = await submit(processor, tenant_id)
    mock_provider.set_output(
        batch_job.provider_batch_id,
        "\n".join(
            [
                mock_success_line(ok),
                mock_error_line(errored, "Model overloaded"),
                mock_success_line(invalid, json.dumps({"sentiment": "MAYBE"})),
            ]
        ),
    )
    batch_job = await complete(processor, database, clock, batch_job)

    report = await reconciler.reconcile(batch_job)

    assert (report.completed, report.failed) == (1, 2)
    assert fetch_request(database, ok).status == "complete"
    errored_request = fetch_request(database, errored)
    assert errored_request.status == "failed"
    assert errored_request.retry_route == "individual"
    assert errored_request.error_message == "Model overloaded"
    assert errored_request.batch_id is None
    invalid_request = fetch_request(database, invalid)
    assert invalid_request.status == "failed"
    assert invalid_request.retry_route == "individual"
    assert "full_analysis" in invalid_request.error_message
    assert fetch_session(database, invalid_request.session_id).sentiment is None


@pytest.mark.asyncio
async def test_missing_and_unknown_lines(processor, reconciler, database, clock, mock_provider):
    tenant_id = add_tenant(database)
    answered, missing = add_requests(database, tenant_id, 2)
    batch_job = await submit(processor, tenant_id)
    mock_provider.set_output(
        batch_job.provider_batch_id,
        "\n".join([mock_success_line(answered), mock_success_line("stranger"), ""]),
    )
    batch_job = await complete(processor, database, clock, batch_job)

    report = await reconciler.reconcile(batch_job)

    assert report.completed == 1
    assert report.unmatched_lines == 1
    assert report.released == 1
    assert fetch_request(database, missing).status == "pending"


@pytest.mark.asyncio
async def test_duplicate_lines_apply_once(processor, reconciler, database, clock, mock_provider):
    tenant_id = add_tenant(database)
    (request_id,) = add_requests(database, tenant_id, 1)
    batch_job = await submit(processor, tenant_id)
    mock_provider.set_output(
        batch_job.provider_batch_id,
        "\n".join([mock_success_line(request_id), mock_error_line(request_id, "late duplicate")]),
    )
    batch_job = await complete(processor, database, clock, batch_job)

    report = await reconciler.reconcile(batch_job)

    assert (report.completed, report.failed, report.unmatched_lines) == (1, 0, 1)
    assert fetch_request(database, request_id).status == "complete"


@pytest.mark.asyncio
async def test_download_failure_fails_batch_and_releases_requests(
    processor, reconciler, database, clock, mock_provider
):
    tenant_id = add_tenant(database)
    request_ids = add_requests(database, tenant_id, 6)
    batch_job = await complete(processor, database, clock, await submit(processor, tenant_id))
    mock_provider.fail_next("download_file", RetryableError("503 Service Unavailable"), times=4)

    report = await reconciler.reconcile(batch_job)

    assert report.batch_failed
    assert report.released == 6
    assert mock_provider.calls["download_file"] == 4
    stored = fetch_batch(database, batch_job.id)
    assert stored.status == "failed"
    assert "Output download failed" in stored.error_message
    for request in fetch_requests(database, request_ids):
        assert request.status == "pending"
        assert request.batch_id is None


@pytest.mark.asyncio
async def test_open_download_breaker_leaves_batch_completed(
    processor, reconciler, database, clock, mock_provider
):
    tenant_id = add_tenant(database)
    add_requests(database, tenant_id, 2)
    first = await submit(processor, tenant_id)
    add_requests(database, tenant_id, 2)
    second = await submit(processor, tenant_id)
    first = await complete(processor, database, clock, first)
    assert await processor.check_batch_status(second) == "completed"
    second = fetch_batch(database, second.id)
    mock_provider.fail_next("download_file", RetryableError("503"), times=5)

    assert (await reconciler.reconcile(first)).batch_failed
    with pytest.raises(CircuitBreakerOpenError):
        await reconciler.reconcile(second)
    assert fetch_batch(database, second.id).status == "completed"


@pytest.mark.asyncio
async def test_rejects_batches_that_are_not_completed(processor, reconciler, database):
    tenant_id = add_tenant(database)
    add_requests(database, tenant_id, 1)
    batch_job = await submit(processor, tenant_id)
    with pytest.raises(ValueError):
        await reconciler.reconcile(batch_job)
