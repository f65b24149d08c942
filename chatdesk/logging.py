"""Logging setup shared by the API, websocket layer and widget client.

Log lines are ``event_name key=value`` strings so they stay grep-able in
aggregated output.
"""

from __future__ import annotations

import logging
import sys

from chatdesk.config import settings

_ROOT_LOGGER = "chatdesk"
_configured = False


def configure_logging(level: str | None = None) -> None:
    """Install a stream handler on the package logger (idempotent)."""
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(settings.log_format))

    root = logging.getLogger(_ROOT_LOGGER)
    root.setLevel((level or settings.log_level).upper())
    root.addHandler(handler)
    root.propagate = False

    # Uvicorn access lines are noisy next to structured events.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
