"""Structured log events for media delivery, processing runs and queries.

Each event is written as one line, ``[CATEGORY] message (media=..., key=value)``,
and carries machine-readable attributes on the log record:

* ``event_category`` and ``event_message``
* ``media_id`` / ``owner_id`` when the event concerns one record
* ``event_fields`` with the remaining values (``None`` and empty values dropped)
* ``correlation`` with request and job identifiers, when supplied
* ``duration_ms`` for timed operations
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union


EVENT_LOGGER = logging.getLogger("mediahub.events")

EventLogger = Union[logging.Logger, logging.LoggerAdapter]

APP = "APP"
QUERY = "DB"
STREAM = "STREAM"
RUN = "RUN"
NOTIFY = "NOTIFY"

_MAX_TEXT_LENGTH = 200


def _clean_fields(fields: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, value in (fields or {}).items():
        if value is None or value == "":
            continue
        if isinstance(value, Path):
            value = str(value)
        elif isinstance(value, str) and len(value) > _MAX_TEXT_LENGTH:
            value = value[:_MAX_TEXT_LENGTH] + "..."
        cleaned[str(key)] = value
    return cleaned


def _emit(
    category: str,
    message: str,
    *,
    media_id: Optional[str] = None,
    owner_id: Optional[str] = None,
    fields: Optional[Mapping[str, Any]] = None,
    correlation: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: EventLogger = EVENT_LOGGER,
) -> None:
    values = _clean_fields(fields)
    linked = _clean_fields(correlation)

    parts = []
    if media_id is not None:
        parts.append(f"media={media_id}")
    if owner_id is not None:
        parts.append(f"owner={owner_id}")
    parts.extend(f"{key}={value}" for key, value in {**linked, **values}.items())
    if duration_ms is not None:
        parts.append(f"took={duration_ms:.1f}ms")
    line = f"[{category}] {message}"
    if parts:
        line = f"{line} ({', '.join(parts)})"

    extra: Dict[str, Any] = {
        "event_category": category,
        "event_message": message,
        "event_fields": values,
    }
    if media_id is not None:
        extra["media_id"] = str(media_id)
    if owner_id is not None:
        extra["owner_id"] = str(owner_id)
    if linked:
        extra["correlation"] = linked
    if duration_ms is not None:
        extra["duration_ms"] = float(duration_ms)
    logger.log(level, line, extra=extra)


def log_app_event(
    message: str,
    *,
    media_id: Optional[str] = None,
    owner_id: Optional[str] = None,
    fields: Optional[Mapping[str, Any]] = None,
    correlation: Optional[Mapping[str, Any]] = None,
    logger: EventLogger = EVENT_LOGGER,
) -> None:
    """Record a web-facing lifecycle event (channel opened, run requested, ...)."""

    _emit(
        APP,
        message,
        media_id=media_id,
        owner_id=owner_id,
        fields=fields,
        correlation=correlation,
        logger=logger,
    )


def log_query(
    action: str,
    *,
    fields: Optional[Mapping[str, Any]] = None,
    correlation: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.DEBUG,
    logger: EventLogger = EVENT_LOGGER,
) -> None:
    """Record one repository statement, e.g. ``media.claim``."""

    _emit(
        QUERY,
        action,
        fields=fields,
        correlation=correlation,
        duration_ms=duration_ms,
        level=level,
        logger=logger,
    )


def log_stream(
    message: str,
    media_id: str,
    *,
    byte_range: Optional[Tuple[int, int]] = None,
    size_bytes: Optional[int] = None,
    fields: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: EventLogger = EVENT_LOGGER,
) -> None:
    """Record a delivery event; *byte_range* is the inclusive slice served."""

    values: Dict[str, Any] = {}
    if byte_range is not None:
        start, end = byte_range
        total = "*" if size_bytes is None else size_bytes
        values["range"] = f"{start}-{end}/{total}"
    elif size_bytes is not None:
        values["size"] = size_bytes
    values.update(fields or {})
    _emit(
        STREAM,
        message,
        media_id=media_id,
        fields=values,
        duration_ms=duration_ms,
        level=level,
        logger=logger,
    )


def log_run(
    message: str,
    media_id: str,
    *,
    owner_id: Optional[str] = None,
    step: Optional[int] = None,
    total_steps: Optional[int] = None,
    fields: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: EventLogger = EVENT_LOGGER,
) -> None:
    """Record a processing-run transition for *media_id*."""

    values: Dict[str, Any] = {}
    if step is not None:
        values["step"] = f"{step}/{total_steps}" if total_steps else step
    elif total_steps is not None:
        values["steps"] = total_steps
    values.update(fields or {})
    _emit(
        RUN,
        message,
        media_id=media_id,
        owner_id=owner_id,
        fields=values,
        duration_ms=duration_ms,
        level=level,
        logger=logger,
    )


def log_notification(
    kind: str,
    media_id: str,
    owner_id: str,
    *,
    subscribers: int,
    level: int = logging.DEBUG,
    logger: EventLogger = EVENT_LOGGER,
) -> None:
    """Record a published push event and how many connections it reached."""

    _emit(
        NOTIFY,
        f"Published {kind} event",
        media_id=media_id,
        owner_id=owner_id,
        fields={"kind": kind, "subscribers": subscribers},
        level=level,
        logger=logger,
    )


__all__ = [
    "EVENT_LOGGER",
    "log_app_event",
    "log_notification",
    "log_query",
    "log_run",
    "log_stream",
]
