import structlog

from batchkeeper.logging import logging_context


def test_logging_context_binds_and_restores_ids():
    structlog.contextvars.clear_contextvars()

    with logging_context(tenant_id="acme", batch_id=None):
        assert structlog.contextvars.get_contextvars() == {"tenant_id": "acme"}
        with logging_context(tenant_id="acme", batch_id="batch-1"):
            assert structlog.contextvars.get_contextvars() == {
                "tenant_id": "acme",
                "batch_id": "batch-1",
            }
        with logging_context(batch_id="batch-2"):
            assert structlog.contextvars.get_contextvars()["batch_id"] == "batch-2"
        assert structlog.contextvars.get_contextvars() == {"tenant_id": "acme"}

    assert structlog.contextvars.get_contextvars() == {}
