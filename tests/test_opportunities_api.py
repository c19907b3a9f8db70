from __future__ import annotations

import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_automation.core.config import get_settings
from crm_automation.core.database import Base, get_db
from crm_automation.crm.api import opportunity_service
from crm_automation.crm.errors import DependencyFailure
from crm_automation.crm.models import CRMAccount, CRMActivity, CRMContact, CRMUser
from crm_automation.crm.notifications import get_notification_sink
from crm_automation.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    get_notification_sink().clear()
    yield
    get_settings.cache_clear()
    get_notification_sink().clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def account(db_session: Session) -> CRMAccount:
    account = CRMAccount(name="Acme")
    db_session.add(account)
    db_session.commit()
    return account


@pytest.fixture()
def owner(db_session: Session) -> CRMUser:
    user = CRMUser(email="owner@example.com", full_name="Olive Owner")
    db_session.add(user)
    db_session.commit()
    return user


def _insert(client: TestClient, account: CRMAccount, **overrides: object) -> dict:
    record: dict[str, object] = {
        "account_id": str(account.id),
        "name": "API Deal",
        "amount": 10000,
        "stage": "Prospecting",
    }
    record.update(overrides)
    response = client.post("/api/crm/opportunities/bulk", json={"records": [record]})
    assert response.status_code == 200
    body = response.json()
    assert body[0]["success"] is True
    return body[0]


def test_bulk_insert_applies_defaults_and_creates_tasks(
    client: TestClient, db_session: Session, account: CRMAccount
) -> None:
    response = client.post(
        "/api/crm/opportunities/bulk",
        json={
            "records": [
                {"account_id": str(account.id), "name": "One", "amount": 6000, "stage": "Prospecting"},
                {"account_id": str(account.id), "name": "Two", "amount": 7000, "stage": "Qualification"},
            ]
        },
    )

    assert response.status_code == 200
    results = response.json()
    assert [result["success"] for result in results] == [True, True]

    fetched = client.get(f"/api/crm/opportunities/{results[0]['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["type"] == "New Customer"
    assert fetched.json()["is_closed"] is False
    assert Decimal(str(fetched.json()["amount"])) == Decimal("6000")

    tasks = db_session.scalars(select(CRMActivity)).all()
    assert len(tasks) == 2
    assert {str(task.entity_id) for task in tasks} == {result["id"] for result in results}


def test_bulk_update_returns_per_record_results(
    client: TestClient, db_session: Session, account: CRMAccount
) -> None:
    ceo = CRMContact(account_id=account.id, first_name="Carla", title="CEO")
    db_session.add(ceo)
    db_session.commit()
    good = _insert(client, account, name="Good")
    low = _insert(client, account, name="Low")

    response = client.patch(
        "/api/crm/opportunities/bulk",
        json={
            "records": [
                {"id": good["id"], "amount": 8000, "stage": "Negotiation"},
                {"id": low["id"], "amount": 4000},
            ]
        },
    )

    assert response.status_code == 200
    results = response.json()
    assert results[0] == {"id": good["id"], "success": True, "errors": []}
    assert results[1]["success"] is False
    assert results[1]["errors"] == ["Opportunity amount must be greater than 5000"]

    updated = client.get(f"/api/crm/opportunities/{good['id']}").json()
    assert updated["primary_contact_id"] == str(ceo.id)
    assert updated["stage"] == "Negotiation"
    assert updated["description"].startswith("Stage Change:Negotiation:")
    assert updated["row_version"] == 2


def test_all_or_none_update_returns_error_envelope(client: TestClient, account: CRMAccount) -> None:
    created = _insert(client, account)

    response = client.patch(
        "/api/crm/opportunities/bulk",
        json={"records": [{"id": created["id"], "amount": 10}], "all_or_none": True},
        headers={"X-Correlation-Id": "corr-dml-1"},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "crm_opportunity_update_failed"
    assert body["correlation_id"] == "corr-dml-1"
    assert body["details"][0]["id"] == created["id"]
    assert body["details"][0]["success"] is False
    assert response.headers["x-correlation-id"] == "corr-dml-1"


def test_bulk_delete_and_undelete_round_trip(
    client: TestClient, db_session: Session, account: CRMAccount, owner: CRMUser
) -> None:
    vp = CRMContact(account_id=account.id, first_name="Vera", title="VP Sales")
    db_session.add(vp)
    db_session.commit()
    open_deal = _insert(client, account, name="Open", owner_user_id=str(owner.id))
    won_deal = _insert(client, account, name="Won", stage="Closed Won", owner_user_id=str(owner.id))

    deleted = client.post(
        "/api/crm/opportunities/bulk-delete",
        json={"ids": [open_deal["id"], won_deal["id"]]},
    )

    assert deleted.status_code == 200
    assert [result["success"] for result in deleted.json()] == [True, False]
    assert deleted.json()[1]["errors"] == ["Cannot delete a closed opportunity"]
    assert client.get(f"/api/crm/opportunities/{open_deal['id']}").status_code == 404
    recycled = client.get(f"/api/crm/opportunities/{open_deal['id']}", params={"include_deleted": "true"})
    assert recycled.status_code == 200
    assert recycled.json()["deleted_at"] is not None
    assert [notification.subject for notification in get_notification_sink().sent] == ["Opportunity Deleted : Open"]

    restored = client.post("/api/crm/opportunities/bulk-undelete", json={"ids": [open_deal["id"]]})

    assert restored.status_code == 200
    assert restored.json()[0]["success"] is True
    fetched = client.get(f"/api/crm/opportunities/{open_deal['id']}").json()
    assert fetched["deleted_at"] is None
    assert fetched["primary_contact_id"] == str(vp.id)


def test_get_unknown_opportunity_returns_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/opportunities/{uuid.uuid4()}", headers={"X-Correlation-Id": "corr-404"})

    assert response.status_code == 404
    assert response.json() == {
        "code": "crm_opportunity_get_failed",
        "message": "opportunity not found",
        "details": "opportunity not found",
        "correlation_id": "corr-404",
    }


def test_health_and_metrics(client: TestClient, account: CRMAccount) -> None:
    assert client.get("/health").json() == {"status": "ok"}
    _insert(client, account)

    metrics = client.get("/metrics")

    assert metrics.status_code == 200
    body = metrics.text
    assert 'path="/api/crm/opportunities/bulk"' in body
    assert 'crm_trigger_dispatch_total{operation="insert",phase="before"}' in body
    assert "crm_followup_tasks_created_total" in body


def test_metrics_disabled_returns_404(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    assert client.get("/metrics").status_code == 404


def test_bulk_delete_store_failure_returns_failed_dependency(
    client: TestClient, account: CRMAccount, owner: CRMUser, monkeypatch: pytest.MonkeyPatch
) -> None:
    created = _insert(client, account, owner_user_id=str(owner.id))

    def failing_owner_emails(session, opportunity_ids):  # type: ignore[no-untyped-def]
        raise DependencyFailure("owner_email_lookup", "database is locked")

    monkeypatch.setattr(opportunity_service.store, "owner_emails", failing_owner_emails)

    response = client.post("/api/crm/opportunities/bulk-delete", json={"ids": [created["id"]]})

    assert response.status_code == 424
    assert response.json()["code"] == "crm_opportunity_delete_failed"
    assert response.json()["details"] == {"operation": "owner_email_lookup"}
    assert client.get(f"/api/crm/opportunities/{created['id']}").status_code == 200


def test_bulk_update_with_null_amount_rejects_only_that_record(client: TestClient, account: CRMAccount) -> None:
    good = _insert(client, account, name="Good")
    bad = _insert(client, account, name="Bad")

    response = client.patch(
        "/api/crm/opportunities/bulk",
        json={"records": [{"id": good["id"], "amount": 9000}, {"id": bad["id"], "amount": None}]},
    )

    assert response.status_code == 200
    assert [result["success"] for result in response.json()] == [True, False]
    assert response.json()[1]["errors"] == ["amount cannot be null"]
