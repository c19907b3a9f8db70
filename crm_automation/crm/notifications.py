from __future__ import annotations

import logging
from typing import Protocol

from crm_automation.core.celery_app import SEND_BULK_EMAIL_TASK, celery_app
from crm_automation.core.config import Settings, get_settings
from crm_automation.crm.errors import DependencyFailure
from crm_automation.crm.schemas import EmailNotification, SendResult


logger = logging.getLogger("crm_automation.crm.notifications")


class NotificationSink(Protocol):
    def send_bulk(self, notifications: list[EmailNotification]) -> list[SendResult]: ...


class InMemoryNotificationSink:
    def __init__(self) -> None:
        self.sent: list[EmailNotification] = []

    def send_bulk(self, notifications: list[EmailNotification]) -> list[SendResult]:
        self.sent.extend(notifications)
        return [SendResult(to=notification.to, success=True) for notification in notifications]

    def clear(self) -> None:
        self.sent.clear()


class CeleryNotificationSink:
    """Hands the whole batch to one background delivery task."""

    def __init__(self, from_email: str) -> None:
        self.from_email = from_email

    def send_bulk(self, notifications: list[EmailNotification]) -> list[SendResult]:
        if not notifications:
            return []
        try:
            async_result = celery_app.send_task(
                SEND_BULK_EMAIL_TASK,
                kwargs={
                    "from_email": self.from_email,
                    "notifications": [notification.model_dump(mode="json") for notification in notifications],
                },
            )
        except Exception as exc:
            raise DependencyFailure("notification_enqueue", str(exc)) from exc
        logger.info(
            "notification.enqueued",
            extra={"task_id": async_result.id, "record_count": len(notifications)},
        )
        return [
            SendResult(to=notification.to, success=True, message_id=async_result.id)
            for notification in notifications
        ]


_default_sink: InMemoryNotificationSink | None = None


def get_notification_sink(settings: Settings | None = None) -> NotificationSink:
    global _default_sink

    resolved = settings or get_settings()
    backend = resolved.notification_backend.lower()
    if backend == "celery":
        return CeleryNotificationSink(from_email=resolved.notification_from_email)
    if backend != "inmemory":
        raise ValueError(f"unknown notification backend: {resolved.notification_backend}")
    if _default_sink is None:
        _default_sink = InMemoryNotificationSink()
    return _default_sink
