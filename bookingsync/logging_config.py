"""
Logging setup for the CLI and embedding services.

Modules log through ``logging.getLogger(__name__)``; this installs a
rich handler on the root logger.

Usage:
    from bookingsync.logging_config import setup_logging
    setup_logging()
"""

from __future__ import annotations

import logging
import os

from rich.console import Console
from rich.logging import RichHandler

LOG_LEVEL_ENV = "BOOKINGSYNC_LOG_LEVEL"

# Chatty third-party loggers kept at WARNING unless we run at DEBUG
_NOISY_LOGGERS = ("msal", "urllib3")


def setup_logging(level: str | None = None, console: Console | None = None) -> None:
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, "WARNING")

    numeric_level = getattr(logging, level.upper(), logging.WARNING)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


__all__ = ["LOG_LEVEL_ENV", "setup_logging"]
