"""Structured logging singleton.

Reads os.environ directly so logging is available before Settings loads.
``LOG_LEVEL`` picks the level; ``LOG_FORMAT=json`` switches to JSON lines
for running under a supervisor that ships logs elsewhere. A ``[logging] level``
in config.toml replaces the level once settings load.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog


def _renderer() -> structlog.types.Processor:
    if os.environ.get("LOG_FORMAT", "").lower() == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    # stdlib root logger first, so structlog's filter_by_level sees the level
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            _renderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


logger = _setup_logging()


def set_level(level_name: str) -> None:
    """Change the level after startup (e.g. from ``[logging] level``)."""
    logging.getLogger().setLevel(getattr(logging, level_name.upper(), logging.INFO))


def scoped(component: str) -> structlog.stdlib.BoundLogger:
    """Return the shared logger bound to a component name (e.g. ``telegram``)."""
    return logger.bind(component=component)


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _uncaught_exception_handler
