from __future__ import annotations

import logging
import sys
from collections import deque
from datetime import datetime, timezone
from threading import Lock
from typing import Any

logger = logging.getLogger("proxysync")

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
MAX_RECENT_EVENTS = 500

_LEVELS = {"WARN": logging.WARNING, "WARNING": logging.WARNING}

_recent: deque[dict[str, Any]] = deque(maxlen=MAX_RECENT_EVENTS)
_recent_lock = Lock()


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def configure_logging(level: str = "INFO") -> None:
    """Send proxysync logs to stdout; safe to call more than once."""
    root = logging.getLogger()
    if not any(getattr(h, "_proxysync", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._proxysync = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    logger.setLevel(level.upper())


def log_event(level: str, message: str, service_id: str | None = None) -> None:
    """Log an operational event and keep it for the status API.

    Recent events live in memory only; nothing survives a restart.
    """
    name = level.upper()
    levelno = _LEVELS.get(name) or logging.getLevelName(name)
    if not isinstance(levelno, int):
        levelno = logging.INFO
    if service_id:
        logger.log(levelno, "[%s] %s", service_id, message)
    else:
        logger.log(levelno, "%s", message)
    with _recent_lock:
        _recent.append(
            {
                "ts": utc_now(),
                "level": logging.getLevelName(levelno),
                "service_id": service_id,
                "message": message,
            }
        )


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with _recent_lock:
        items = list(_recent)
    items.reverse()
    return items[: max(0, limit)]


def clear_events() -> None:
    with _recent_lock:
        _recent.clear()
