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
from app.crm.service import ActorUser
from app.main import app


ALL_PERMISSIONS = {
    "crm.blueprints.read",
    "crm.blueprints.manage",
    "crm.validation_rules.manage",
    "crm.approval_processes.manage",
    "crm.records.read",
    "crm.records.write",
    "crm.records.transition",
    "crm.approvals.read",
    "crm.approvals.decide",
    "crm.users.manage",
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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def acting_as() -> dict[str, str]:
    return {"user_id": "admin-1"}


@pytest.fixture()
def client(db_session: Session, acting_as: dict[str, str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id=acting_as["user_id"],
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _setup_deals(client: TestClient) -> dict:
    module = client.post("/api/crm/modules", json={"key": "deals", "name": "Deals"})
    assert module.status_code == 201
    module_id = module.json()["id"]

    for key, label in [("budget", "Budget"), ("discount", "Discount")]:
        response = client.post(
            f"/api/crm/modules/{module_id}/fields",
            json={"key": key, "label": label, "field_type": "number"},
        )
        assert response.status_code == 201

    for key in ["proposal", "negotiation", "won"]:
        response = client.post(f"/api/crm/modules/{module_id}/blueprint/stages", json={"key": key, "label": key.title()})
        assert response.status_code == 201

    process = client.post(
        f"/api/crm/modules/{module_id}/approval-processes",
        json={"name": "Manager sign-off", "steps": [{"type": "record_owner_manager"}]},
    )
    assert process.status_code == 201

    to_negotiation = client.post(
        f"/api/crm/modules/{module_id}/blueprint/transitions",
        json={
            "from_stage": "proposal",
            "to_stage": "negotiation",
            "requires_approval": True,
            "approval_process_id": process.json()["id"],
        },
    )
    assert to_negotiation.status_code == 201

    to_won = client.post(
        f"/api/crm/modules/{module_id}/blueprint/transitions",
        json={"from_stage": "negotiation", "to_stage": "won", "required_fields": [{"key": "budget", "type": "number"}]},
    )
    assert to_won.status_code == 201
    assert to_won.json()["required_fields"][0]["label"] == "Budget"

    rule = client.post(
        f"/api/crm/modules/{module_id}/validation-rules",
        json={
            "name": "Discount cap",
            "target_field": "discount",
            "rule_type": "range",
            "config": {"max": 30},
            "error_message": "Discount cannot exceed 30%",
            "applies_on": ["update", "stage_change"],
        },
    )
    assert rule.status_code == 201

    profile = client.put("/api/crm/users/rep-1/profile", json={"manager_user_id": "manager-1"})
    assert profile.status_code == 200

    record = client.post(
        f"/api/crm/modules/{module_id}/records",
        json={"title": "Acme renewal", "owner_user_id": "rep-1", "data": {"budget": 5000}},
    )
    assert record.status_code == 201
    assert record.json()["stage"] == "proposal"
    return record.json()


def test_transition_with_approval_end_to_end(client: TestClient, acting_as: dict[str, str]) -> None:
    record = _setup_deals(client)
    record_id = record["id"]
    acting_as["user_id"] = "rep-1"

    rejected_update = client.patch(
        f"/api/crm/records/{record_id}",
        json={"row_version": record["row_version"], "data": {"discount": 50}},
    )
    assert rejected_update.status_code == 422
    body = rejected_update.json()
    assert body["code"] == "crm_record_update_failed"
    assert body["message"] == "record failed validation"
    assert body["details"]["errors"][0]["message"] == "Discount cannot exceed 30%"

    available = client.get(f"/api/crm/records/{record_id}/transitions")
    assert available.status_code == 200
    assert [item["to_stage"] for item in available.json()["transitions"]] == ["negotiation"]
    assert available.json()["transitions"][0]["requires_approval"] is True

    preview = client.post(f"/api/crm/records/{record_id}/transitions/check", json={"to_stage": "negotiation"})
    assert preview.status_code == 200
    assert preview.json()["status"] == "approval_required"

    executed = client.post(
        f"/api/crm/records/{record_id}/transitions/execute",
        json={"to_stage": "negotiation", "payload": {"discount": 20}},
    )
    assert executed.status_code == 200
    assert executed.json()["status"] == "approval_created"
    approval_id = executed.json()["approval_request_id"]

    acting_as["user_id"] = "manager-1"
    inbox = client.get("/api/crm/approvals", params={"assigned_to_me": "true"})
    assert inbox.status_code == 200
    assert [item["id"] for item in inbox.json()] == [approval_id]
    assert inbox.json()[0]["assigned_approver_id"] == "manager-1"

    decided = client.post(f"/api/crm/approvals/{approval_id}/decide", json={"action": "approve"})
    assert decided.status_code == 200
    assert decided.json()["status"] == "approved"
    assert decided.json()["transition"]["status"] == "committed"

    stored = client.get(f"/api/crm/records/{record_id}")
    assert stored.json()["stage"] == "negotiation"
    assert stored.json()["data"]["discount"] == 20

    next_step = client.get(f"/api/crm/records/{record_id}/transitions").json()["transitions"]
    assert next_step[0]["to_stage"] == "won"
    assert next_step[0]["required_fields"][0] == {"key": "budget", "label": "Budget", "type": "number", "value": 5000}

    detail = client.get(f"/api/crm/approvals/{approval_id}")
    assert detail.status_code == 200
    assert [item["action"] for item in detail.json()["decisions"]] == ["approve"]
    assert detail.json()["request"]["status"] == "approved"


def test_bulk_decide_reports_per_item(client: TestClient, acting_as: dict[str, str]) -> None:
    record = _setup_deals(client)
    acting_as["user_id"] = "rep-1"
    executed = client.post(f"/api/crm/records/{record['id']}/transitions/execute", json={"to_stage": "negotiation"})
    approval_id = executed.json()["approval_request_id"]
    missing_id = str(uuid.uuid4())

    acting_as["user_id"] = "manager-1"
    response = client.post(
        "/api/crm/approvals/bulk-decide",
        json={"approval_ids": [approval_id, missing_id], "action": "request_changes", "comment": "Split the deal"},
    )

    assert response.status_code == 200
    assert [(item["approval_id"], item["status"]) for item in response.json()] == [
        (approval_id, "changes_requested"),
        (missing_id, "not_found"),
    ]

    acting_as["user_id"] = "rep-1"
    resubmitted = client.post(f"/api/crm/approvals/{approval_id}/resubmit", json={"reason": "Split into two deals"})
    assert resubmitted.status_code == 200
    assert resubmitted.json()["status"] == "approval_created"

    history = client.get("/api/crm/approvals", params={"status": "all", "requested_by_me": "true"})
    assert {item["status"] for item in history.json()} == {"changes_requested", "pending"}


def test_blueprint_admin_errors_use_envelope(client: TestClient) -> None:
    module = client.post("/api/crm/modules", json={"key": "tickets", "name": "Tickets"}).json()

    duplicate = client.post("/api/crm/modules", json={"key": "tickets", "name": "Tickets again"})
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "crm_module_create_failed"

    unknown_stage = client.post(
        f"/api/crm/modules/{module['id']}/blueprint/transitions",
        json={"from_stage": "open", "to_stage": "closed"},
    )
    assert unknown_stage.status_code == 422
    assert unknown_stage.json()["code"] == "crm_blueprint_transition_create_failed"

    reserved = client.post(
        f"/api/crm/modules/{module['id']}/fields",
        json={"key": "stage", "label": "Stage"},
    )
    assert reserved.status_code == 409


def test_missing_record_returns_error_envelope_with_correlation_id(client: TestClient) -> None:
    response = client.post(
        f"/api/crm/records/{uuid.uuid4()}/transitions/check",
        json={"to_stage": "won"},
        headers={"X-Correlation-Id": "gate-corr-1"},
    )

    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "gate-corr-1"
    body = response.json()
    assert body["code"] == "crm_transition_check_failed"
    assert body["correlation_id"] == "gate-corr-1"


def test_inbox_rejects_unknown_status(client: TestClient) -> None:
    response = client.get("/api/crm/approvals", params={"status": "archived"})

    assert response.status_code == 422
