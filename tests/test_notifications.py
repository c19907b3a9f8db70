from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest
from botocore.exceptions import ClientError

from crm_automation.core import celery_app as celery_module
from crm_automation.core.celery_app import SEND_BULK_EMAIL_TASK, send_bulk_email_task
from crm_automation.core.config import Settings, get_settings
from crm_automation.crm.email import SesEmailSender
from crm_automation.crm.errors import DependencyFailure
from crm_automation.crm.notifications import (
    CeleryNotificationSink,
    InMemoryNotificationSink,
    get_notification_sink,
)
from crm_automation.crm.schemas import EmailNotification


class FakeSesClient:
    def __init__(self, rejected: set[str] | None = None) -> None:
        self.rejected = rejected or set()
        self.calls: list[dict[str, Any]] = []

    def send_email(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(kwargs)
        recipient = kwargs["Destination"]["ToAddresses"][0]
        if recipient in self.rejected:
            raise ClientError(
                {"Error": {"Code": "MessageRejected", "Message": "Email address is not verified."}},
                "SendEmail",
            )
        return {"MessageId": f"msg-{len(self.calls)}"}


def _notifications() -> list[EmailNotification]:
    return [
        EmailNotification(to="a@example.com", subject="Opportunity Deleted : A", body="Your Opportunity: A has been deleted."),
        EmailNotification(to="b@example.com", subject="Opportunity Deleted : B", body="Your Opportunity: B has been deleted."),
    ]


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_in_memory_sink_keeps_sent_notifications() -> None:
    sink = InMemoryNotificationSink()

    results = sink.send_bulk(_notifications())

    assert [result.success for result in results] == [True, True]
    assert [notification.to for notification in sink.sent] == ["a@example.com", "b@example.com"]
    sink.clear()
    assert sink.sent == []


def test_celery_sink_enqueues_one_task_per_batch(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, dict[str, Any]]] = []

    def fake_send_task(name: str, kwargs: dict[str, Any]) -> SimpleNamespace:
        calls.append((name, kwargs))
        return SimpleNamespace(id="task-123")

    monkeypatch.setattr(celery_module.celery_app, "send_task", fake_send_task)
    sink = CeleryNotificationSink(from_email="crm@example.com")

    results = sink.send_bulk(_notifications())

    assert len(calls) == 1
    name, kwargs = calls[0]
    assert name == SEND_BULK_EMAIL_TASK
    assert kwargs["from_email"] == "crm@example.com"
    assert [item["to"] for item in kwargs["notifications"]] == ["a@example.com", "b@example.com"]
    assert {result.message_id for result in results} == {"task-123"}


def test_celery_sink_skips_empty_batches(monkeypatch: pytest.MonkeyPatch) -> None:
    def fail_send_task(name: str, kwargs: dict[str, Any]) -> None:
        raise AssertionError("send_task should not be called")

    monkeypatch.setattr(celery_module.celery_app, "send_task", fail_send_task)

    assert CeleryNotificationSink(from_email="crm@example.com").send_bulk([]) == []


def test_celery_sink_wraps_broker_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_send_task(name: str, kwargs: dict[str, Any]) -> None:
        raise ConnectionError("broker unreachable")

    monkeypatch.setattr(celery_module.celery_app, "send_task", broken_send_task)

    with pytest.raises(DependencyFailure) as exc_info:
        CeleryNotificationSink(from_email="crm@example.com").send_bulk(_notifications())

    assert exc_info.value.operation == "notification_enqueue"


def test_ses_sender_reports_per_message_outcome() -> None:
    client = FakeSesClient(rejected={"b@example.com"})
    sender = SesEmailSender(region_name="us-east-1", from_email="crm@example.com", client=client)

    results = sender.send_bulk(_notifications())

    assert results[0].success is True
    assert results[0].message_id == "msg-1"
    assert results[1].success is False
    assert "not verified" in (results[1].error or "")
    assert client.calls[0]["Source"] == "crm@example.com"
    assert client.calls[0]["Message"]["Subject"]["Data"] == "Opportunity Deleted : A"


def test_bulk_email_task_delivers_through_ses(monkeypatch: pytest.MonkeyPatch) -> None:
    client = FakeSesClient()
    regions: list[str] = []

    def fake_client(service_name: str, region_name: str) -> FakeSesClient:
        assert service_name == "ses"
        regions.append(region_name)
        return client

    monkeypatch.setenv("AWS_REGION", "eu-west-1")
    monkeypatch.setattr("crm_automation.crm.email.boto3.client", fake_client)

    results = send_bulk_email_task(
        from_email="crm@example.com",
        notifications=[notification.model_dump() for notification in _notifications()],
    )

    assert regions == ["eu-west-1"]
    assert [result["success"] for result in results] == [True, True]
    assert [call["Destination"]["ToAddresses"] for call in client.calls] == [["a@example.com"], ["b@example.com"]]


def test_get_notification_sink_selects_backend() -> None:
    assert isinstance(get_notification_sink(Settings(notification_backend="inmemory")), InMemoryNotificationSink)
    assert get_notification_sink(Settings(notification_backend="inmemory")) is get_notification_sink(
        Settings(notification_backend="InMemory")
    )

    celery_sink = get_notification_sink(
        Settings(notification_backend="celery", notification_from_email="ops@example.com")
    )
    assert isinstance(celery_sink, CeleryNotificationSink)
    assert celery_sink.from_email == "ops@example.com"


def test_get_notification_sink_rejects_unknown_backend() -> None:
    with pytest.raises(ValueError):
        get_notification_sink(Settings(notification_backend="carrier-pigeon"))
