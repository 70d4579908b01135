"""Logging helpers for reqkit."""

from __future__ import annotations

import logging
import os

DEFAULT_LOG_LEVEL = os.getenv("REQKIT_LOG_LEVEL", "WARNING").upper()

# httpx/httpcore log every request line at INFO
_CHATTY_LOGGERS = ("httpx", "httpcore")


def setup_logging(level: str | None = None) -> None:
    """Configure standard logging for CLI/library use."""
    effective_level = getattr(logging, (level or DEFAULT_LOG_LEVEL).upper(), logging.WARNING)
    logging.basicConfig(
        level=effective_level,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if effective_level > logging.DEBUG:
        for name in _CHATTY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


__all__ = ["setup_logging"]
