"""structlog setup shared by the API, the MCP tools, the cron sweeps and simulation.py.

Events are named ``<entity>.<what happened>`` (``quote.accepted``,
``escrow.released``, ``payout.expired``) and carry the ids needed to follow
one job from posting to payout. The API middleware binds ``request_id`` and
the identity dependency binds the acting subject (see ``bind_actor``) into
contextvars, so service code never passes them.
Money and UUID values are rendered as strings to keep JSON output exact.

Development runs get a coloured console; every other environment gets one
JSON object per line on stdout.
"""

from __future__ import annotations

import logging
import sys
import uuid
from decimal import Decimal
from typing import Any

import structlog


def _stringify_identifiers(
    logger: Any, method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Render money and ids as plain strings so JSON logs stay exact."""
    for key, value in event_dict.items():
        if isinstance(value, (Decimal, uuid.UUID)):
            event_dict[key] = str(value)
    return event_dict


def setup_logging(log_level: str = "DEBUG", json_logs: bool = False) -> None:
    """Route structlog and stdlib logging through one stdout handler.

    Args:
        log_level: Root level name, e.g. "INFO"; unknown names fall back to DEBUG.
        json_logs: JSON lines when True, the coloured console renderer otherwise.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        _stringify_identifiers,
    ]

    if json_logs:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.DEBUG))

    for noisy_logger in (
        "uvicorn.access",
        "sqlalchemy.engine",
        "aiosqlite",
        "httpx",
        "httpcore",
    ):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def bind_actor(subject_id: str, role: str) -> None:
    """Attach the authenticated subject to every log line of the current request."""
    structlog.contextvars.bind_contextvars(subject_id=subject_id, role=role)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Module loggers are created as ``logger = get_logger(__name__)``."""
    return structlog.get_logger(name)
