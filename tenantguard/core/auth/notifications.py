from __future__ import annotations

from enum import Enum
from typing import Protocol


class NotificationLevel(str, Enum):
    info = "info"
    success = "success"
    warning = "warning"
    error = "error"


class NotificationSink(Protocol):
    def notify(self, level: NotificationLevel, title: str, detail: str) -> None: ...


class LoggingNotificationSink:
    """Fallback sink for headless hosts: user-facing notices go to the log."""

    def __init__(self, logger=None):
        self.logger = logger

    def notify(self, level: NotificationLevel, title: str, detail: str) -> None:
        if self.logger is None:
            return
        msg = f"[{NotificationLevel(level).value}] {title}: {detail}"
        if level == NotificationLevel.error:
            self.logger.error(msg)
        elif level == NotificationLevel.warning:
            self.logger.warning(msg)
        else:
            self.logger.info(msg)


def safe_notify(sink, level: NotificationLevel, title: str, detail: str, *, logger=None) -> None:
    if sink is None:
        return
    try:
        sink.notify(level, title, detail)
    except Exception as e:  # noqa: BLE001
        if logger is not None:
            logger.warning(f"notification sink failed: {e}")
