"""
Structured logging configuration using structlog.
JSON output for production, coloured console for dev.
Batch runs bind session_id through contextvars so every line carries it.
"""

import logging
import sys
from contextlib import contextmanager

import structlog

from app.config import settings


def setup_logging() -> None:
    """Configure structlog for the service."""

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.DEBUG:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

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
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    # pdfminer logs every font fallback at INFO; the HTTP client logs every request
    for noisy in ("uvicorn.access", "pdfminer", "httpx", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.DB_ECHO else logging.WARNING
    )


@contextmanager
def bound_session(session_id: str, user_id: int):
    """Bind session and user ids to every log line emitted inside the block."""
    tokens = structlog.contextvars.bind_contextvars(session_id=session_id, user_id=user_id)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
