import json
import re

import pytest
from typer.testing import CliRunner

from batchkeeper.cli.main import app
from batchkeeper.db.crud import (
    bulk_update_request_status,
    create_session,
    get_processing_requests,
    mark_request_complete,
)
from batchkeeper.db.session import Database
from batchkeeper.models import TokenUsage

runner = CliRunner()


@pytest.fixture
def database_url(tmp_path, monkeypatch) -> str:
    url = f"sqlite:///{tmp_path / 'batchkeeper.db'}"
    monkeypatch.setenv("BATCHKEEPER_DATABASE_URL", url)
    monkeypatch.setenv("BATCHKEEPER_MOCK_MODE", "1")
    return url


@pytest.fixture
def tenant_id(database_url) -> str:
    result = runner.invoke(app, ["add-tenant", "acme"])
    assert result.exit_code == 0
    return re.search(r"id ([0-9a-f]{32})", result.output).group(1)


@pytest.fixture
def session_id(database_url, tenant_id) -> str:
    database = Database(database_url)
    with database.session() as db:
        chat_session = create_session(
            db, tenant_id, [("user", "Can I swap my shift?"), ("assistant", "Ask your lead.")]
        )
    database.dispose()
    return chat_session.id


def test_init_db(database_url):
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0
    assert "Database ready" in result.output


def test_enqueue(session_id):
    result = runner.invoke(app, ["enqueue", session_id, "--type", "summary"])
    assert result.exit_code == 0
    assert "is pending" in result.output


def test_enqueue_unknown_session(database_url):
    result = runner.invoke(app, ["enqueue", "missing-session"])
    assert result.exit_code == 1
    assert "does not exist" in result.output


def test_enqueue_rejects_unknown_processing_type(session_id):
    result = runner.invoke(app, ["enqueue", session_id, "-t", "translation"])
    assert result.exit_code == 2


def test_stats_json(session_id):
    runner.invoke(app, ["enqueue", session_id])
    result = runner.invoke(app, ["stats", "--json"])
    assert result.exit_code == 0
    assert json.loads(result.output) == {
        "batches": {},
        "requests": {"pending": 1},
        "pending_requests": 1,
        "usage": {},
    }


def test_stats_prices_token_usage(database_url, tenant_id, session_id):
    runner.invoke(app, ["enqueue", session_id, "-m", "gpt-4o"])
    database = Database(database_url)
    with database.session() as db:
        (request,) = get_processing_requests(db, tenant_id=tenant_id)
        bulk_update_request_status(db, [request.id], status="failed", retry_route="individual")
        mark_request_complete(
            db,
            request.id,
            usage=TokenUsage(prompt_tokens=1000, completion_tokens=500, total_tokens=1500),
            session_updates={"summary": "Shift swap"},
        )
    database.dispose()

    result = runner.invoke(app, ["stats", "--json"])

    assert result.exit_code == 0
    usage = json.loads(result.output)["usage"][tenant_id]
    assert usage["request_count"] == 1
    assert (usage["prompt_tokens"], usage["completion_tokens"]) == (1000, 500)
    assert usage["cost"] == pytest.approx(0.0075)

    result = runner.invoke(app, ["stats"])
    assert "Token usage" in result.output


def test_stats_table(session_id):
    runner.invoke(app, ["enqueue", session_id])
    result = runner.invoke(app, ["stats"])
    assert result.exit_code == 0
    assert "Batch processing" in result.output


def test_force_batch(tenant_id, session_id):
    runner.invoke(app, ["enqueue", session_id])
    result = runner.invoke(app, ["force-batch", tenant_id])
    assert result.exit_code == 0
    assert "Provider Batch ID" in result.output

    result = runner.invoke(app, ["force-batch", tenant_id])
    assert result.exit_code == 0
    assert "No pending requests" in result.output


def test_tick(database_url):
    result = runner.invoke(app, ["tick", "process_results"])
    assert result.exit_code == 0
    assert "done" in result.output


def test_requeue(database_url, tenant_id, session_id):
    runner.invoke(app, ["enqueue", session_id])
    runner.invoke(app, ["enqueue", session_id, "-t", "summary"])
    database = Database(database_url)
    with database.session() as db:
        first, second = get_processing_requests(db, tenant_id=tenant_id)
        bulk_update_request_status(db, [first.id], status="failed", retry_route="none")
        bulk_update_request_status(db, [second.id], status="failed", retry_route="individual")
    database.dispose()

    result = runner.invoke(app, ["requeue", tenant_id])

    assert result.exit_code == 0
    assert "Requeued 1 request(s)" in result.output
