import logging
from collections.abc import Iterator
from contextlib import contextmanager

import structlog


def setup_logging(level: int | str = logging.INFO, *, colors: bool = True) -> None:
    logging.basicConfig(format="%(message)s", level=level)
    logging.getLogger("batchkeeper").setLevel(level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def logging_context(**ids: str | None) -> Iterator[None]:
    """
    Bind tenant, batch or request ids to every log line emitted inside the block.

    ``None`` values are ignored and ids already bound to the same value are left
    alone, so nested blocks only add what changed.
    """
    current = structlog.contextvars.get_contextvars()
    changed = {
        key: value
        for key, value in ids.items()
        if value is not None and current.get(key) != value
    }
    if not changed:
        yield
        return
    with structlog.contextvars.bound_contextvars(**changed):
        yield
