"""Logging utilities for the tenant store.

Components log dotted event names (``tenant.created``, ``row_store.retry``)
through :func:`log_event`. The event name is the log message and also lands on
the record as ``event``; structured fields travel under ``context`` so they
never collide with ``LogRecord`` attributes such as ``name`` or ``message``.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from fastmcp.utilities.logging import configure_logging as _fastmcp_configure_logging

_PACKAGE_LOGGER_NAME = "tenant_store"
_CONFIGURED = False

LevelName = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _qualify(name: str | None) -> str:
    if not name:
        return _PACKAGE_LOGGER_NAME
    if name.startswith(_PACKAGE_LOGGER_NAME):
        return name
    return f"{_PACKAGE_LOGGER_NAME}.{name}"


def configure_logging(level: LevelName | int = "INFO", **rich_kwargs: Any) -> logging.Logger:
    """Route package logs through FastMCP's rich stderr handler.

    Only the ``tenant_store`` logger is configured; an embedding application
    keeps control of the root logger and of stdout.
    """

    global _CONFIGURED

    logger = logging.getLogger(_PACKAGE_LOGGER_NAME)
    _fastmcp_configure_logging(level=level, logger=logger, **rich_kwargs)

    _CONFIGURED = True
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a logger scoped to the package namespace."""

    if not _CONFIGURED:
        configure_logging()

    return logging.getLogger(_qualify(name))


def log_event(
    logger: logging.Logger,
    event: str,
    *,
    level: int = logging.INFO,
    exc_info: Any = None,
    **fields: Any,
) -> None:
    """Emit ``event`` with ``fields`` as its structured context."""

    if not logger.isEnabledFor(level):
        return
    logger.log(level, event, exc_info=exc_info, extra={"event": event, "context": fields})
