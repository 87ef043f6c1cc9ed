"""Structured logging setup built on structlog.

Every module obtains its logger through :func:`get_logger` and logs an event
name followed by key/value pairs::

    logger = get_logger("engine.pipeline")
    logger.info("pipeline_start", pipeline="build", run_id=run_id)

Values bound with :func:`bind_run` (e.g. ``run_id``) are attached to every
event emitted from the current asyncio task and the tasks it spawns.
"""

from __future__ import annotations

import logging
import sys

import structlog


def setup_logging(debug: bool = False, json_output: bool = False) -> None:
    """Configure stdlib logging and structlog for the process.

    Parameters
    ----------
    debug:
        Lower the threshold to ``DEBUG`` when ``True``.
    json_output:
        Render events as JSON lines instead of the coloured console format.
    """
    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger tagged with *name*."""
    return structlog.get_logger(name)


def bind_run(**values: object) -> None:
    """Bind *values* to every log event of the current context."""
    structlog.contextvars.bind_contextvars(**values)


def unbind_run(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)
