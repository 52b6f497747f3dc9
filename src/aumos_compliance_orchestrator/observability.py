"""Structured logging setup.

Every module obtains its logger through ``get_logger(__name__)`` and logs
events in keyword style::

    logger.info("Workflow execution completed", execution_id=execution_id)

``configure_logging`` wires structlog on top of the stdlib logging module so
that third-party libraries (httpx, sqlalchemy, uvicorn) flow through the same
renderer. Production deployments use JSON lines; development uses the
coloured console renderer.
"""

import logging
import sys
from typing import Any

import structlog


def configure_logging(level: str = "info", json_output: bool = True) -> None:
    """Configure structlog with stdlib logging integration.

    Args:
        level: Log level name (debug, info, warning, error, critical).
        json_output: Render JSON lines when True, console output otherwise.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer: Any
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the given module name.

    Args:
        name: Usually ``__name__`` of the calling module.

    Returns:
        A structlog bound logger.
    """
    return structlog.get_logger(name)
