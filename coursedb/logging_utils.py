"""Root logger setup shared by the CLI commands and the web server."""

from __future__ import annotations

import logging
from logging import Logger
from pathlib import Path
from typing import Iterable, Optional


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILE_NAME = "coursedb.log"
EVENT_LOGGER_NAME = "coursedb.events"

# Set on handlers installed here so that a second call replaces them.
_OWNED_HANDLER_ATTR = "_coursedb_owned"


def configure_logging(
    level: int = logging.INFO,
    *,
    handlers: Iterable[logging.Handler] | None = None,
    event_level: Optional[int] = None,
) -> Logger:
    """Install *handlers* (a stderr stream handler by default) on the root logger.

    Handlers installed by an earlier call are closed and removed first.
    ``event_level`` tunes the structured event logger independently, e.g. to
    surface per-query ``DB_QUERY`` timings at DEBUG.
    """

    root = logging.getLogger()
    root.setLevel(level)

    for existing in list(root.handlers):
        if getattr(existing, _OWNED_HANDLER_ATTR, False):
            root.removeHandler(existing)
            existing.close()

    if handlers is None:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        handlers = [stream_handler]

    for handler in handlers:
        setattr(handler, _OWNED_HANDLER_ATTR, True)
        root.addHandler(handler)

    if event_level is not None:
        logging.getLogger(EVENT_LOGGER_NAME).setLevel(event_level)
    return root


def get_log_file_path(storage_root: Path) -> Path:
    """Return the log file location under *storage_root*, creating the directory."""

    storage_root.mkdir(parents=True, exist_ok=True)
    return storage_root / LOG_FILE_NAME


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "EVENT_LOGGER_NAME",
    "LOG_FILE_NAME",
    "configure_logging",
    "get_log_file_path",
]
