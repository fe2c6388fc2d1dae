"""Logging utilities for newtoncg.

Solver progress (per-iteration gradient norms, safeguard retries, line-search
exhaustion) is reported through loggers created here.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

_DEFAULT_LEVEL = logging.WARNING
_BASE_FORMAT = "[%(levelname)s] %(name)s: %(message)s"
_DEFAULT_FORMAT = _BASE_FORMAT
# None resolves to sys.stderr when a handler is built
_DEFAULT_STREAM: Optional[object] = None

_loggers: dict[str, logging.Logger] = {}


def _coerce_level(level: int | str) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.WARNING)
    return level


def _make_handler() -> logging.Handler:
    handler = logging.StreamHandler(
        _DEFAULT_STREAM if _DEFAULT_STREAM is not None else sys.stderr
    )
    handler.setLevel(_DEFAULT_LEVEL)
    handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT))
    return handler


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get or create a logger under the ``newtoncg`` namespace.

    Loggers are cached so that repeated calls never stack handlers.

    Args:
        name: Logger name (typically ``__name__``). If None, returns the
            package logger.

    Returns:
        Configured logger instance.

    Example:
        >>> from newtoncg.logging import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.debug("Newton-CG iter: 1")
    """
    if name is None:
        name = "newtoncg"

    logger_name = name if name.startswith("newtoncg") else f"newtoncg.{name}"

    if logger_name in _loggers:
        return _loggers[logger_name]

    logger = logging.getLogger(logger_name)

    if not logger.handlers:
        logger.setLevel(_DEFAULT_LEVEL)
        logger.addHandler(_make_handler())
        logger.propagate = False

    _loggers[logger_name] = logger
    return logger


def set_log_level(level: int | str) -> None:
    """Set the level of every newtoncg logger.

    Args:
        level: Logging level (``logging.DEBUG`` etc.) or its name.
    """
    global _DEFAULT_LEVEL
    level = _coerce_level(level)

    for logger in _loggers.values():
        logger.setLevel(level)
        for handler in logger.handlers:
            handler.setLevel(level)

    _DEFAULT_LEVEL = level


def configure_logging(
    level: int | str = logging.WARNING,
    format_string: Optional[str] = None,
    stream: Optional[object] = None,
) -> None:
    """Reconfigure level, format and stream of all newtoncg loggers.

    The settings also apply to loggers created afterwards by :func:`get_logger`.

    Args:
        level: Logging level (default: WARNING).
        format_string: Custom format string. If None, uses the default
            ``[LEVEL] name: message`` layout.
        stream: Output stream (default: sys.stderr).
    """
    global _DEFAULT_LEVEL, _DEFAULT_FORMAT, _DEFAULT_STREAM
    _DEFAULT_LEVEL = _coerce_level(level)
    _DEFAULT_FORMAT = format_string or _BASE_FORMAT
    _DEFAULT_STREAM = stream

    for logger in _loggers.values():
        logger.setLevel(_DEFAULT_LEVEL)
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
        logger.addHandler(_make_handler())


__all__ = ["configure_logging", "get_logger", "set_log_level"]
