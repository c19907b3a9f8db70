from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_automation.context import reset_correlation_id, reset_trigger_depth, set_correlation_id, set_trigger_depth
from crm_automation.core.database import Base, get_db
from crm_automation.crm.models import CRMAccount
from crm_automation.crm.notifications import InMemoryNotificationSink
from crm_automation.crm.schemas import OpportunityCreate
from crm_automation.crm.service import OpportunityService
from crm_automation.logging import JsonLogFormatter
from crm_automation.main import app


class FixedClock:
    def now(self) -> datetime:
        return datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


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


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.LogRecord(
        name="crm_automation.crm.triggers",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="trigger_guardrail_blocked",
        args=(),
        exc_info=None,
    )
    record.correlation_id = "corr-1"
    record.trigger_depth = 2
    record.reason = "MAX_DEPTH"
    record.depth = 3
    record.secret_token = "do-not-log"
    record.error = "x" * 600

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["level"] == "WARNING"
    assert payload["logger"] == "crm_automation.crm.triggers"
    assert payload["msg"] == "trigger_guardrail_blocked"
    assert payload["correlation_id"] == "corr-1"
    assert payload["trigger_depth"] == 2
    assert payload["fields"]["reason"] == "MAX_DEPTH"
    assert payload["fields"]["depth"] == 3
    assert "secret_token" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500


def test_log_records_pick_up_context_variables(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    correlation_token = set_correlation_id("corr-ctx")
    depth_token = set_trigger_depth(2)
    try:
        logging.getLogger("crm_automation.test").info("context.check")
    finally:
        reset_trigger_depth(depth_token)
        reset_correlation_id(correlation_token)

    record = next(record for record in caplog.records if record.getMessage() == "context.check")
    assert getattr(record, "correlation_id", None) == "corr-ctx"
    assert getattr(record, "trigger_depth", None) == 2


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/api/crm/opportunities/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record
        for record in caplog.records
        if record.name == "crm_automation.request" and record.getMessage() == "http.request"
    ]
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/opportunities/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_dispatch_logs_carry_operation_context(db_session: Session, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    account = CRMAccount(name="Log Account")
    db_session.add(account)
    db_session.commit()
    service = OpportunityService(notification_sink=InMemoryNotificationSink(), clock=FixedClock())

    token = set_correlation_id("corr-dml")
    try:
        service.insert_opportunities(
            db_session,
            [OpportunityCreate(account_id=account.id, name="Logged", amount=Decimal("6000"), stage="Prospecting")],
        )
    finally:
        reset_correlation_id(token)

    dispatch_records = [
        record
        for record in caplog.records
        if record.name == "crm_automation.crm.triggers" and record.getMessage() == "trigger.dispatch"
    ]
    assert [(record.operation, record.phase) for record in dispatch_records] == [
        ("insert", "before"),
        ("insert", "after"),
    ]
    assert {getattr(record, "correlation_id", None) for record in dispatch_records} == {"corr-dml"}
    assert dispatch_records[0].operation_id == dispatch_records[1].operation_id
    assert dispatch_records[0].record_count == 1
