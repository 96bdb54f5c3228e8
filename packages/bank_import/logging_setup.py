"""Logging configuration for the ``bank_import`` package.

Entry points (the ``bank-import`` CLI and ``ofx-dump``) call
``configure_logging()`` once at startup; it attaches a single
``StreamHandler`` to the package root logger (``"bank_import"``).

Library modules never attach handlers. They obtain a logger with
``get_logger("bank_import.<module>")`` and emit concise, structured messages
of the form ``"<operation>:<event> key=value ..."`` so log processors can key
on them. Until an application configures logging, the package root carries a
``NullHandler`` and stays silent.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

_PKG_LOGGER_NAME = "bank_import"
_LEVEL_ENV = "BANK_IMPORT_LOG_LEVEL"
_DEFAULT_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"

_handler: logging.Handler | None = None


def _coerce_level(value: int | str | None) -> int | None:
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip():
        name = value.strip().upper()
        if name.isdigit():
            return int(name)
        numeric = logging.getLevelName(name)
        if isinstance(numeric, int):
            return numeric
    return None


def resolve_level(level: int | str | None = None) -> int:
    """Return the effective level: explicit value, then env override, then INFO."""

    explicit = _coerce_level(level)
    if explicit is not None:
        return explicit
    from_env = _coerce_level(os.getenv(_LEVEL_ENV))
    return from_env if from_env is not None else logging.INFO


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] = sys.stderr,
) -> None:
    """Attach the package handler once; later calls are no-ops.

    ``level`` accepts an ``int`` or a level name; when omitted the
    ``BANK_IMPORT_LOG_LEVEL`` environment variable is consulted.
    """

    global _handler
    if _handler is not None:
        return

    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    for existing in list(pkg_logger.handlers):
        if isinstance(existing, logging.NullHandler):
            pkg_logger.removeHandler(existing)

    effective = resolve_level(level)
    handler = logging.StreamHandler(stream)
    handler.setLevel(effective)
    handler.setFormatter(logging.Formatter(fmt or _DEFAULT_FORMAT))

    pkg_logger.setLevel(effective)
    pkg_logger.addHandler(handler)
    # Avoid double emission via the root logger.
    pkg_logger.propagate = False
    _handler = handler


def reset_logging() -> None:
    """Detach the package handler so a later ``configure_logging`` applies again."""

    global _handler
    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if _handler is not None:
        pkg_logger.removeHandler(_handler)
        _handler = None
    pkg_logger.propagate = True
    pkg_logger.setLevel(logging.NOTSET)


def get_logger(name: str) -> logging.Logger:
    """Return a logger by name; the package root gets a ``NullHandler`` if unconfigured."""

    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if _handler is None and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)


__all__ = [
    "configure_logging",
    "get_logger",
    "reset_logging",
    "resolve_level",
]
