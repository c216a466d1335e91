from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


class NotificationSink:
    """Fan-out target for workflow events (officials' inbox, SMS, ...)."""

    def send(self, event: str, title: str, message: str, **data: Any) -> None:
        raise NotImplementedError


class LoggingNotificationSink(NotificationSink):
    def send(self, event: str, title: str, message: str, **data: Any) -> None:
        logger.info("notify event=%s title=%s message=%s data=%s", event, title, message, data)


def notify(sink: NotificationSink | None, event: str, title: str, message: str, **data: Any) -> None:
    """
    Fire-and-forget. A failing sink is logged and never fails the workflow step
    that triggered it.
    """
    if sink is None:
        return
    try:
        sink.send(event, title, message, **data)
    except Exception:
        logger.warning("Notification delivery failed (event=%s)", event, exc_info=True)
