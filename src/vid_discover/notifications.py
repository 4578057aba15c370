"""User-facing notifications for the suggestion pipeline."""

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class Notification(BaseModel):
    level: str  # info | success | warning | error | quota_limit
    message: str
    created_at: datetime


class Notifier:
    """Default notification sink: logs each message and keeps the most recent ones for the UI."""

    def __init__(self, max_messages: int = 100):
        self._messages: deque[Notification] = deque(maxlen=max_messages)

    def _push(self, level: str, message: str):
        self._messages.append(
            Notification(level=level, message=message, created_at=datetime.now(timezone.utc))
        )

    def notify_quota_limit(self, resource_name: str, reset_time: datetime):
        message = f"{resource_name} limit reached. Resets at {reset_time:%Y-%m-%d %H:%M} UTC."
        logger.warning(message)
        self._push("quota_limit", message)

    def notify_warning(self, text: str):
        logger.warning(text)
        self._push("warning", text)

    def notify_info(self, text: str):
        logger.info(text)
        self._push("info", text)

    def notify_success(self, text: str):
        logger.info(text)
        self._push("success", text)

    def notify_error(self, text: str):
        logger.error(text)
        self._push("error", text)

    def recent(self, limit: int = 20) -> list[Notification]:
        """Most recent notifications, newest first."""
        return list(reversed(self._messages))[:limit]


def send(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Deliver a notification; a failing sink is logged and never propagates."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception as e:
        logger.warning(f"Notification delivery failed: {e}", exc_info=True)
