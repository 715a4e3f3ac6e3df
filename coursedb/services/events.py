"""Structured event helpers shared by the repository and the services."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional


DEFAULT_EVENT_LOGGER = logging.getLogger("coursedb.events")

_MAX_VALUE_LENGTH = 200


def sanitize_context_value(value: Any) -> Any:
    """Return a log-friendly representation for *value*."""

    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"<{len(value)} bytes>"
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return normalize_context(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else value
        joined = ", ".join(str(item) for item in items)
    else:
        joined = str(value)
    trimmed = joined.strip()
    if not trimmed:
        return None
    if len(trimmed) > _MAX_VALUE_LENGTH:
        return trimmed[:_MAX_VALUE_LENGTH] + "…"
    return trimmed


def normalize_context(values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop empty entries and sanitise the rest."""

    if not values:
        return {}
    cleaned: Dict[str, Any] = {}
    for key, raw_value in values.items():
        if not key:
            continue
        value = sanitize_context_value(raw_value)
        if value in (None, "", {}):
            continue
        cleaned[str(key)] = value
    return cleaned


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
) -> None:
    """Log ``[event_type] message (key=value, ...)`` with the details attached as extras."""

    base_message = str(message).strip()
    details = normalize_context(payload)
    if duration_ms is not None:
        details["duration_ms"] = round(float(duration_ms), 2)
    details_text = ", ".join(f"{key}={value}" for key, value in details.items())
    display_message = f"[{event_type}] {base_message}" if event_type else base_message
    log_message = f"{display_message} ({details_text})" if details_text else display_message
    extra: Dict[str, Any] = {
        "event": base_message,
        "event_type": event_type or "",
        "event_payload": details,
    }
    logger.log(level, log_message, extra=extra)


def emit_db_event(action: str, **kwargs: Any) -> None:
    """Emit a ``DB_QUERY`` event."""

    emit_structured_event("DB_QUERY", action, **kwargs)


def emit_file_event(operation: str, **kwargs: Any) -> None:
    """Emit a ``FILE_OP`` event."""

    emit_structured_event("FILE_OP", operation, **kwargs)


def emit_task_event(message: str, **kwargs: Any) -> None:
    """Emit a ``TASK_STATE`` event for ingestion batches and index rebuilds."""

    emit_structured_event("TASK_STATE", message, **kwargs)


__all__ = [
    "DEFAULT_EVENT_LOGGER",
    "emit_db_event",
    "emit_file_event",
    "emit_structured_event",
    "emit_task_event",
    "normalize_context",
    "sanitize_context_value",
]
