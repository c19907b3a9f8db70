from typing import Any

from celery import Celery

from crm_automation.core.config import get_settings

SEND_BULK_EMAIL_TASK = "crm_automation.tasks.send_bulk_email"

settings = get_settings()

celery_app = Celery("crm_automation", broker=settings.redis_url, backend=settings.redis_url)


@celery_app.task(name=SEND_BULK_EMAIL_TASK)
def send_bulk_email_task(from_email: str, notifications: list[dict[str, Any]]) -> list[dict[str, Any]]:
    from crm_automation.crm.email import SesEmailSender
    from crm_automation.crm.schemas import EmailNotification

    sender = SesEmailSender(region_name=get_settings().aws_region, from_email=from_email)
    results = sender.send_bulk([EmailNotification.model_validate(item) for item in notifications])
    return [result.model_dump(mode="json") for result in results]
