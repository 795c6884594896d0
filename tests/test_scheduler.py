import asyncio
from datetime import timedelta

import pytest

from batchkeeper.exceptions import NonRetryableError
from batchkeeper.providers.mock import mock_error_line, mock_success_line
from batchkeeper.scheduler import Cadence
from tests.mocks.store import START, add_requests, add_tenant, fetch_batch, fetch_requests


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def break_batch_creation(database, mock_provider) -> None:
    tenant_id = add_tenant(database)
    add_requests(database, tenant_id, 10)
    mock_provider.fail_next("upload_file", NonRetryableError("Bad request"), times=50)


@pytest.mark.asyncio
async def test_consecutive_failures_pause_every_cadence(scheduler, database, mock_provider):
    break_batch_creation(database, mock_provider)

    for _ in range(5):
        assert not await scheduler.run_cadence(Cadence.CREATE_BATCHES)

    status = scheduler.get_status()
    assert status["is_paused"]
    assert status["consecutive_errors"] == 5
    assert status["paused_until"] == START + timedelta(minutes=15)
    assert "create_batches failed for all 1 tenant(s)" in status["last_error"]
    assert status["cadences"]["create_batches"]["failures"] == 5

    assert not await scheduler.run_cadence(Cadence.PROCESS_RESULTS)
    assert not await scheduler.run_cadence("check_status")
    status = scheduler.get_status()
    assert status["cadences"]["process_results"]["skipped"] == 1
    assert status["cadences"]["process_results"]["runs"] == 0
    assert status["cadences"]["check_status"]["skipped"] == 1


@pytest.mark.asyncio
async def test_success_resets_the_error_streak(scheduler, database, mock_provider):
    break_batch_creation(database, mock_provider)

    for _ in range(4):
        await scheduler.run_cadence(Cadence.CREATE_BATCHES)
    assert scheduler.context.consecutive_errors == 4
    assert await scheduler.run_cadence(Cadence.CHECK_STATUS)
    assert scheduler.context.consecutive_errors == 0
    assert not scheduler.context.is_paused


@pytest.mark.asyncio
async def test_pause_lifts_after_timeout(scheduler, database, mock_provider, clock):
    break_batch_creation(database, mock_provider)
    for _ in range(5):
        await scheduler.run_cadence(Cadence.CREATE_BATCHES)

    clock.advance(15 * 60 - 1)
    assert not await scheduler.run_cadence(Cadence.CHECK_STATUS)
    clock.advance(1)
    assert await scheduler.run_cadence(Cadence.CHECK_STATUS)
    assert not scheduler.context.is_paused
    assert scheduler.context.consecutive_errors == 0


@pytest.mark.asyncio
async def test_force_resume(scheduler, database, mock_provider):
    break_batch_creation(database, mock_provider)
    for _ in range(5):
        await scheduler.run_cadence(Cadence.CREATE_BATCHES)

    scheduler.force_resume()

    status = scheduler.get_status()
    assert not status["is_paused"]
    assert status["paused_until"] is None
    assert status["consecutive_errors"] == 0
    assert status["last_error"] is None
    assert await scheduler.run_cadence(Cadence.RETRY_FAILED)


@pytest.mark.asyncio
async def test_status_report(scheduler, database, clock):
    tenant_id = add_tenant(database)
    add_requests(database, tenant_id, 1)
    await scheduler.force_batch_creation(tenant_id)
    await scheduler.run_cadence(Cadence.CHECK_STATUS)

    status = scheduler.get_status()

    assert not status["is_running"]
    assert set(status["cadences"]) == {cadence.value for cadence in Cadence}
    check_status = status["cadences"]["check_status"]
    assert check_status["runs"] == 1
    assert check_status["interval_seconds"] == 120
    assert check_status["last_run_at"] == START
    assert not check_status["scheduled"]
    assert set(status["circuit_breakers"]) == {
        "file_upload",
        "batch_creation",
        "batch_status",
        "file_download",
    }
    assert status["circuit_breakers"]["batch_status"]["state"] == "closed"
    assert status["stale_batches"] == 0
    assert status["performance"]["total_operations"] == 1

    clock.advance(25 * 3600)
    assert scheduler.get_status()["stale_batches"] == 1

    scheduler.reset_performance_metrics()
    assert scheduler.get_status()["performance"]["total_operations"] == 0


@pytest.mark.asyncio
async def test_force_batch_creation_ignores_policy(scheduler, database, mock_provider):
    tenant_id = add_tenant(database)
    request_ids = add_requests(database, tenant_id, 2)

    assert await scheduler.run_cadence(Cadence.CREATE_BATCHES)
    assert mock_provider.calls["create_batch"] == 0

    batch_job = await scheduler.force_batch_creation(tenant_id)
    assert batch_job is not None
    assert {r.batch_id for r in fetch_requests(database, request_ids)} == {batch_job.id}


@pytest.mark.asyncio
async def test_tickers_follow_the_clock(scheduler, database, clock):
    scheduler.start()
    scheduler.start()
    await settle()
    assert scheduler.is_running
    assert clock.sleeper_count == 4

    clock.advance(60)
    await settle()
    status = scheduler.get_status()
    assert status["cadences"]["process_results"]["runs"] == 1
    assert status["cadences"]["check_status"]["runs"] == 0
    assert status["cadences"]["check_status"]["scheduled"]

    clock.advance(60)
    await settle()
    status = scheduler.get_status()
    assert status["cadences"]["process_results"]["runs"] == 2
    assert status["cadences"]["check_status"]["runs"] == 1

    await scheduler.stop()
    assert not scheduler.is_running
    assert clock.sleeper_count == 0


@pytest.mark.asyncio
async def test_end_to_end_lifecycle(scheduler, database, mock_provider, clock):
    tenant_id = add_tenant(database)
    request_ids = add_requests(database, tenant_id, 10)
    flaky = request_ids[4]

    assert await scheduler.run_cadence(Cadence.CREATE_BATCHES)
    (batch_id,) = {r.batch_id for r in fetch_requests(database, request_ids)}
    batch_job = fetch_batch(database, batch_id)
    mock_provider.set_output(
        batch_job.provider_batch_id,
        "\n".join(
            mock_error_line(request_id, "Temporary failure")
            if request_id == flaky
            else mock_success_line(request_id)
            for request_id in request_ids
        ),
    )

    assert await scheduler.run_cadence(Cadence.CHECK_STATUS)
    assert fetch_batch(database, batch_id).status == "validating"
    clock.advance(180)
    assert await scheduler.run_cadence(Cadence.CHECK_STATUS)
    assert fetch_batch(database, batch_id).status == "completed"

    assert await scheduler.run_cadence(Cadence.PROCESS_RESULTS)
    assert fetch_batch(database, batch_id).status == "processed"
    statuses = {r.id: r.status for r in fetch_requests(database, request_ids)}
    assert statuses.pop(flaky) == "failed"
    assert set(statuses.values()) == {"complete"}

    assert await scheduler.run_cadence(Cadence.RETRY_FAILED)
    requests = fetch_requests(database, request_ids)
    assert {r.status for r in requests} == {"complete"}
    assert {r.retry_route for r in requests} == {"none"}
    assert mock_provider.calls["complete_chat"] == 1
    assert all(r.session.summary == "Mock AI analysis result" for r in requests)


@pytest.mark.asyncio
async def test_stop_lets_a_running_cadence_finish(
    scheduler, database, mock_provider, clock, monkeypatch
):
    tenant_id = add_tenant(database)
    request_ids = add_requests(database, tenant_id, 10)
    release = asyncio.Event()
    create_batch = mock_provider.create_batch

    async def held_create_batch(input_file_id):
        provider_batch = await create_batch(input_file_id)
        await release.wait()
        return provider_batch

    monkeypatch.setattr(mock_provider, "create_batch", held_create_batch)
    scheduler.start()
    await settle()
    for _ in range(5):
        clock.advance(60)
        await settle()
    assert scheduler.get_status()["cadences"]["create_batches"]["in_progress"]

    stopping = asyncio.create_task(scheduler.stop())
    await settle()
    assert not stopping.done()

    release.set()
    await stopping

    assert not scheduler.is_running
    assert clock.sleeper_count == 0
    assert mock_provider.calls["create_batch"] == 1
    (batch_id,) = {r.batch_id for r in fetch_requests(database, request_ids)}
    assert fetch_batch(database, batch_id).status == "validating"
    assert scheduler.get_status()["cadences"]["create_batches"]["runs"] == 1


@pytest.mark.asyncio
async def test_status_reports_tenant_metrics(scheduler, database, clock):
    tenant_id = add_tenant(database)
    add_requests(database, tenant_id, 4)
    await scheduler.force_batch_creation(tenant_id)
    clock.advance(180)
    assert await scheduler.run_cadence(Cadence.CHECK_STATUS)
    assert await scheduler.run_cadence(Cadence.PROCESS_RESULTS)

    metrics = scheduler.get_status()["tenant_metrics"][tenant_id]

    assert metrics["batches_created"] == 1
    assert metrics["request_count"] == 4
    assert metrics["success_count"] == 4
    assert metrics["failure_count"] == 0
    assert metrics["operation_count"] == 3
    assert metrics["completion_tokens"] == 120
    assert metrics["total_cost"] == pytest.approx(4 * 0.0000255)
    assert set(metrics["performance"]) == {"p50", "p95", "p99"}

    scheduler.reset_performance_metrics()
    assert scheduler.get_status()["tenant_metrics"] == {}
