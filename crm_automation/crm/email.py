"""Email delivery through Amazon SES.

Used by the background delivery task; the lifecycle handler never talks to
SES directly.
"""

from __future__ import annotations

import logging
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from crm_automation.crm.schemas import EmailNotification, SendResult


logger = logging.getLogger("crm_automation.crm.email")


class SesEmailSender:
    def __init__(self, region_name: str, from_email: str, client: Any | None = None) -> None:
        self.region_name = region_name
        self.from_email = from_email
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("ses", region_name=self.region_name)
        return self._client

    def send(self, notification: EmailNotification) -> SendResult:
        try:
            response = self.client.send_email(
                Source=self.from_email,
                Destination={"ToAddresses": [notification.to]},
                Message={
                    "Subject": {"Data": notification.subject, "Charset": "UTF-8"},
                    "Body": {"Text": {"Data": notification.body, "Charset": "UTF-8"}},
                },
            )
        except (ClientError, BotoCoreError) as exc:
            logger.warning("email.send_failed", extra={"error": str(exc)})
            return SendResult(to=notification.to, success=False, error=str(exc))
        return SendResult(to=notification.to, success=True, message_id=response.get("MessageId"))

    def send_bulk(self, notifications: list[EmailNotification]) -> list[SendResult]:
        return [self.send(notification) for notification in notifications]
