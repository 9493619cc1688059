"""
Logging helpers.

All modules log through ``logging.getLogger(__name__)`` below the
``h2csmuggler`` namespace. Messages are short verbs ("success", "failed",
"results differ") followed by ``key=value`` pairs built with :func:`fields`,
so a line reads like::

    INFO  success status=200 body=50 target='http://victim/admin'

A ``TRACE`` level sits below ``DEBUG`` for per-item scheduling chatter.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

ROOT_LOGGER = "h2csmuggler"

_LEVELS = {0: logging.INFO, 1: logging.DEBUG}


def fields(**kv: Any) -> str:
    """Render keyword arguments as sorted ``key=value`` pairs.

    Keys use dashes instead of underscores (``normal_status_code`` becomes
    ``normal-status-code``). Strings are repr-quoted so empty values and
    whitespace stay visible.
    """
    parts = []
    for key in sorted(kv):
        value = kv[key]
        if isinstance(value, (str, bytes)):
            value = repr(value)
        parts.append(f"{key.replace('_', '-')}={value}")
    return " ".join(parts)


def trace(logger: logging.Logger, msg: str, *args: Any) -> None:
    if logger.isEnabledFor(TRACE):
        logger.log(TRACE, msg, *args)


def level_for(verbosity: int) -> int:
    return _LEVELS.get(verbosity, TRACE if verbosity > 1 else logging.INFO)


def configure(verbosity: int = 0) -> None:
    """Attach a stderr handler to the package logger at the given verbosity.

    Calling it again replaces the handler, so it always writes to the current
    ``sys.stderr``.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level_for(verbosity))
    for old in list(logger.handlers):
        logger.removeHandler(old)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)-5s %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
