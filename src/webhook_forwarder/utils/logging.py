"""
Logging utilities for the webhook forwarder.

Log lines emitted while a delivery lineage runs carry the event,
destination and lineage ids through structlog context variables, so
executor and client logs can be correlated without threading the ids
through every call.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

# Standard library loggers that drown out delivery logs below WARNING
NOISY_LOGGERS = ("aiohttp.access", "aiohttp.client", "aiohttp.internal", "asyncio")


def setup_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    webhook_id: Optional[str] = None,
) -> None:
    """
    Set up structured logging for the forwarder.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: Render JSON lines instead of the console format
        webhook_id: Bound to every log line when given
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level, force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.contextvars.clear_contextvars()
    if webhook_id:
        structlog.contextvars.bind_contextvars(webhook_id=webhook_id)


@contextmanager
def delivery_context(
    event_id: str, destination: str, lineage_id: Optional[str] = None
) -> Iterator[None]:
    """Bind delivery identifiers to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(
        event_id=event_id, destination=destination, lineage_id=lineage_id
    ):
        yield
