"""Structured logging for workers, beat and producers.

Every line carries the process identity (``service``, ``hostname``,
``pid``) so output from a fleet of workers can be told apart. While a
delivery is being traced the tracer binds its fields (``queue``,
``task_id``, ``task_name``, ``retries``) with `reset_context()`; each
delivery runs in its own asyncio task, so those fields never leak
between concurrent deliveries.

Environment Variables:
    BRISK_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR or CRITICAL (default INFO)
    BRISK_LOG_FORMAT: "json" (default) or "console"
"""

from __future__ import annotations

import logging
import os
import socket
import sys
from typing import Any

import structlog

_identity: dict[str, Any] = {}

# Broker client libraries that log every channel event at INFO
_CHATTY_LOGGERS = ("aio_pika", "aiormq")


def _add_identity(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    """Structlog processor that stamps the process identity on each entry."""
    for key, value in _identity.items():
        event_dict.setdefault(key, value)
    return event_dict


def configure(service_name: str, hostname: str | None = None) -> None:
    """Configure structlog and stdlib logging for a brisk process.

    Args:
        service_name: Process role, e.g. "brisk-worker" or "brisk-beat".
        hostname: Defaults to the machine's hostname.
    """
    log_level_name = os.environ.get("BRISK_LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_name, logging.INFO)
    log_format = os.environ.get("BRISK_LOG_FORMAT", "json").lower()

    _identity.clear()
    _identity.update(
        service=service_name,
        hostname=hostname or socket.gethostname(),
        pid=os.getpid(),
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_identity,
    ]

    if log_format == "console":
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Route redis / aio-pika records through the same renderer
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                *shared_processors,
                structlog.processors.format_exc_info,
                renderer,
            ],
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def reset_context(
    queue: str | None = None,
    task_id: str | None = None,
    task_name: str | None = None,
    retries: int | None = None,
) -> None:
    """Replace the bound delivery fields. Fields left as None are unbound."""
    structlog.contextvars.clear_contextvars()
    fields = {
        "queue": queue,
        "task_id": task_id,
        "task_name": task_name,
        "retries": retries,
    }
    structlog.contextvars.bind_contextvars(
        **{key: value for key, value in fields.items() if value is not None}
    )
