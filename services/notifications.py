# services/notifications.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict

from flask import flash, has_request_context

logger = logging.getLogger(__name__)

SUCCESS = "success"
WARNING = "warning"
ERROR = "error"

_LOG_LEVELS = {
    SUCCESS: logging.INFO,
    WARNING: logging.WARNING,
    ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class Notification:
    """User-facing outcome of an import or save."""
    level: str
    title: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"level": self.level, "title": self.title, "message": self.message}


def notify(level: str, title: str, message: str) -> Notification:
    """Build a notification, log it, and flash it when called inside a request."""
    note = Notification(level=level, title=title, message=message)
    logger.log(_LOG_LEVELS.get(level, logging.INFO), f"{title}: {message}")
    if has_request_context():
        flash(message, level)
    return note


def success(title: str, message: str) -> Notification:
    return notify(SUCCESS, title, message)


def warning(title: str, message: str) -> Notification:
    return notify(WARNING, title, message)


def error(title: str, message: str) -> Notification:
    return notify(ERROR, title, message)
