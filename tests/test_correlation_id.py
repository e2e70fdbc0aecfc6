from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMApprovalProcess, CRMBlueprintStage, CRMBlueprintTransition, CRMModule, CRMRecord
from app.crm.service import ActorUser
from app.main import app


ALL_PERMISSIONS = {
    "crm.blueprints.manage",
    "crm.blueprints.read",
    "crm.records.read",
    "crm.records.write",
    "crm.records.transition",
    "crm.approvals.read",
    "crm.approvals.decide",
}


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
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed_record(session: Session, *, requires_approval: bool = False) -> CRMRecord:
    module = CRMModule(key="deals", name="Deals")
    session.add(module)
    session.flush()
    process = CRMApprovalProcess(module_id=module.id, name="Sign-off", steps=[{"type": "user", "user_id": "user-1"}])
    session.add(process)
    session.flush()
    session.add_all(
        [
            CRMBlueprintStage(module_id=module.id, key="open", label="Open", position=0),
            CRMBlueprintStage(module_id=module.id, key="won", label="Won", position=1),
            CRMBlueprintTransition(
                module_id=module.id,
                from_stage="open",
                to_stage="won",
                required_fields=[],
                requires_approval=requires_approval,
                approval_process_id=process.id if requires_approval else None,
            ),
        ]
    )
    record = CRMRecord(module_id=module.id, title="Corr deal", stage="open", data={})
    session.add(record)
    session.commit()
    return record


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/records/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/records/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_malformed_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get(f"/api/crm/records/{uuid.uuid4()}", headers={"X-Correlation-Id": "bad id; with spaces"})

    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert header_value != "bad id; with spaces"
    assert response.json()["correlation_id"] == header_value


def test_stage_change_audit_and_event_use_request_correlation_id(client: TestClient, db_session: Session) -> None:
    record = _seed_record(db_session)

    response = client.post(
        f"/api/crm/records/{record.id}/transitions/execute",
        json={"to_stage": "won"},
        headers={"X-Correlation-Id": "corr-audit-1"},
    )
    assert response.status_code == 200

    stage_audits = [entry for entry in audit.audit_entries if entry.get("action") == "stage_changed"]
    assert stage_audits
    assert stage_audits[-1]["correlation_id"] == "corr-audit-1"

    stage_events = [item for item in events.published_events if item.get("event_type") == "crm.record.stage_changed"]
    assert stage_events
    assert stage_events[-1]["correlation_id"] == "corr-audit-1"


def test_approval_events_use_request_correlation_id(client: TestClient, db_session: Session) -> None:
    record = _seed_record(db_session, requires_approval=True)

    created = client.post(
        f"/api/crm/records/{record.id}/transitions/execute",
        json={"to_stage": "won"},
        headers={"X-Correlation-Id": "corr-approval-1"},
    )
    assert created.json()["status"] == "approval_created"

    decided = client.post(
        f"/api/crm/approvals/{created.json()['approval_request_id']}/decide",
        json={"action": "approve"},
        headers={"X-Correlation-Id": "corr-approval-2"},
    )
    assert decided.json()["status"] == "approved"

    by_type = {item["event_type"]: item for item in events.published_events}
    assert by_type["crm.approval.created"]["correlation_id"] == "corr-approval-1"
    assert by_type["crm.approval.resolved"]["correlation_id"] == "corr-approval-2"
    assert by_type["crm.record.stage_changed"]["correlation_id"] == "corr-approval-2"
