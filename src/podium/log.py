"""Logging setup for the CLI and the HTTP server.

Library modules only call logging.getLogger(__name__); handlers are
installed here, once, by the process entry point.
"""

from __future__ import annotations

import logging
import sys

from podium.errors import ValidationError

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

# Package logger
logger = logging.getLogger("podium")


def configure_logging(level: str = "INFO") -> None:
    """Install a single stderr handler on the package logger.

    Calling it again replaces the handler instead of stacking a second one.
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValidationError(f"Unknown log level: {level}")

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(numeric)
    logger.propagate = False
