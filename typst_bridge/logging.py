"""Logging helpers. All loggers live under the ``typst_bridge`` namespace."""

from __future__ import annotations

import logging
import sys
from typing import Optional, Union

from typst_bridge.env import get_log_level

_ROOT_LOGGER_NAME = "typst_bridge"
_DEFAULT_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Get a logger scoped under the package namespace.

    Parameters
    ----------
    name : str
        Component name, e.g. ``"Resolver"``.

    Returns
    -------
    logging.Logger
        The logger ``typst_bridge.<name>``.
    """
    if name == _ROOT_LOGGER_NAME or name.startswith(_ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT_LOGGER_NAME}.{name}")


def configure_logging(
    level: Optional[Union[int, str]] = None, fmt: str = _DEFAULT_FORMAT
) -> logging.Logger:
    """Attach a stream handler to the package root logger.

    Calling it again replaces the handler instead of stacking a new one.

    Parameters
    ----------
    level : Optional[Union[int, str]]
        Log level. Defaults to ``TYPST_BRIDGE_LOG_LEVEL`` (``WARNING`` if unset).
    fmt : str
        Format string for the handler.

    Returns
    -------
    logging.Logger
        The configured package root logger.
    """
    logger = logging.getLogger(_ROOT_LOGGER_NAME)
    if level is None:
        level = get_log_level()
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if getattr(handler, "_typst_bridge_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt))
    handler._typst_bridge_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.propagate = False
    return logger
