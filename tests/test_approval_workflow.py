from __future__ import annotations

import uuid
from collections.abc import Generator
from dataclasses import dataclass
from typing import Any

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base
from app.crm.gate import TransitionGate
from app.crm.models import (
    CRMApprovalDecision,
    CRMApprovalProcess,
    CRMApprovalRequest,
    CRMBlueprintStage,
    CRMBlueprintTransition,
    CRMModule,
    CRMModuleField,
    CRMRecord,
    CRMUserProfile,
    CRMValidationRule,
)
from app.crm.schemas import ApprovalInboxQuery, ResubmitRequest, TransitionRequest
from app.crm.service import ActorUser


PERMISSIONS = {
    "crm.records.read",
    "crm.records.transition",
    "crm.approvals.read",
    "crm.approvals.decide",
}

TWO_STEPS = [
    {"type": "record_owner_manager", "name": "Manager"},
    {"type": "role", "role": "finance", "name": "Finance"},
]
MANAGER_ONLY = [{"type": "user", "user_id": "manager-1"}]


def _actor(user_id: str, *, roles: set[str] | None = None, extra: set[str] | None = None) -> ActorUser:
    return ActorUser(user_id=user_id, permissions=PERMISSIONS | (extra or set()), roles=roles or set())


REP = _actor("rep-1")
MANAGER = _actor("manager-1")
FINANCE = _actor("fin-1", roles={"finance"})
OUTSIDER = _actor("outsider-1")


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
def gate() -> TransitionGate:
    return TransitionGate()


@dataclass
class Deals:
    module: CRMModule
    process: CRMApprovalProcess


def _seed(session: Session, steps: list[dict[str, Any]]) -> Deals:
    module = CRMModule(key="deals", name="Deals")
    session.add(module)
    session.flush()
    session.add(CRMModuleField(module_id=module.id, key="budget", label="Budget", field_type="number"))
    for position, key in enumerate(["proposal", "negotiation", "won"]):
        session.add(CRMBlueprintStage(module_id=module.id, key=key, label=key.title(), position=position))
    process = CRMApprovalProcess(module_id=module.id, name="Discount approval", steps=steps)
    session.add(process)
    session.flush()
    session.add_all(
        [
            CRMBlueprintTransition(
                module_id=module.id,
                from_stage="proposal",
                to_stage="negotiation",
                required_fields=[],
                requires_approval=True,
                approval_process_id=process.id,
            ),
            CRMBlueprintTransition(module_id=module.id, from_stage="negotiation", to_stage="won", required_fields=[]),
            CRMUserProfile(user_id="rep-1", manager_user_id="manager-1"),
        ]
    )
    session.commit()
    return Deals(module=module, process=process)


def _record(session: Session, module: CRMModule, *, owner: str = "rep-1", budget: int = 5000) -> CRMRecord:
    record = CRMRecord(
        module_id=module.id,
        title="Acme renewal",
        stage="proposal",
        owner_user_id=owner,
        data={"budget": budget},
    )
    session.add(record)
    session.commit()
    return record


def _submit(session: Session, gate: TransitionGate, record: CRMRecord, **payload: Any) -> uuid.UUID:
    outcome = gate.execute_transition(
        session,
        REP,
        record.id,
        TransitionRequest(to_stage="negotiation", payload=payload),
    )
    assert outcome.status == "approval_created"
    return outcome.approval_request_id


def _stage(session: Session, record_id: uuid.UUID) -> str | None:
    return session.scalar(select(CRMRecord.stage).where(CRMRecord.id == record_id))


def test_two_step_approval_commits_transition(db_session: Session, gate: TransitionGate) -> None:
    deals = _seed(db_session, TWO_STEPS)
    record = _record(db_session, deals.module)
    request_id = _submit(db_session, gate, record)
    engine = gate.approval_engine

    assert engine.act(db_session, OUTSIDER, request_id, "approve").status == "authorization_denied"

    first = engine.act(db_session, MANAGER, request_id, "approve", "Looks fine")
    assert first.status == "advanced"
    assert first.request_status == "pending"
    assert first.current_step == 1
    assert _stage(db_session, record.id) == "proposal"

    # The manager is not the approver of the finance step.
    assert engine.act(db_session, MANAGER, request_id, "approve").status == "authorization_denied"

    final = engine.act(db_session, FINANCE, request_id, "approve")
    assert final.status == "approved"
    assert final.request_status == "approved"
    assert final.transition.status == "committed"
    assert _stage(db_session, record.id) == "negotiation"

    decisions = db_session.scalars(
        select(CRMApprovalDecision)
        .where(CRMApprovalDecision.approval_request_id == request_id)
        .order_by(CRMApprovalDecision.step_index.asc())
    ).all()
    assert [(item.step_index, item.actor_id, item.action) for item in decisions] == [
        (0, "manager-1", "approve"),
        (1, "fin-1", "approve"),
    ]
    assert decisions[0].comment == "Looks fine"

    stage_audit = [entry for entry in audit.audit_entries if entry["action"] == "stage_changed"]
    assert stage_audit[-1]["after"]["approval_request_id"] == str(request_id)
    assert stage_audit[-1]["after"]["requested_by"] == "rep-1"
    event_types = [item["event_type"] for item in events.published_events]
    assert event_types == [
        "crm.approval.created",
        "crm.approval.advanced",
        "crm.record.stage_changed",
        "crm.approval.resolved",
    ]


def test_approved_request_applies_captured_payload(db_session: Session, gate: TransitionGate) -> None:
    deals = _seed(db_session, MANAGER_ONLY)
    record = _record(db_session, deals.module)
    request_id = _submit(db_session, gate, record, budget=7500)

    outcome = gate.approval_engine.act(db_session, MANAGER, request_id, "approve")

    assert outcome.status == "approved"
    db_session.expire_all()
    stored = db_session.get(CRMRecord, record.id)
    assert stored.stage == "negotiation"
    assert stored.data["budget"] == 7500
    assert stored.row_version == 2


def test_final_approval_revalidates_record(db_session: Session, gate: TransitionGate) -> None:
    deals = _seed(db_session, MANAGER_ONLY)
    record = _record(db_session, deals.module, budget=500)
    request_id = _submit(db_session, gate, record)
    db_session.add(
        CRMValidationRule(
            module_id=deals.module.id,
            name="Minimum budget",
            target_field="budget",
            rule_type="range",
            config={"min": 1000},
            error_message="Budget must be at least 1000",
            applies_on=["stage_change"],
        )
    )
    db_session.commit()

    outcome = gate.approval_engine.act(db_session, MANAGER, request_id, "approve")

    assert outcome.status == "changes_requested"
    assert outcome.transition.status == "validation_failed"
    assert [item.message for item in outcome.validation_errors] == ["Budget must be at least 1000"]
    request = db_session.get(CRMApprovalRequest, request_id)
    assert request.status == "changes_requested"
    assert request.validation_errors[0]["field"] == "budget"
    assert _stage(db_session, record.id) == "proposal"


def test_final_approval_after_record_moved(db_session: Session, gate: TransitionGate) -> None:
    deals = _seed(db_session, MANAGER_ONLY)
    record = _record(db_session, deals.module)
    request_id = _submit(db_session, gate, record)
    db_session.execute(
        update(CRMRecord)
        .where(CRMRecord.id == record.id)
        .values(stage="won", row_version=CRMRecord.row_version + 1)
    )
    db_session.commit()

    outcome = gate.approval_engine.act(db_session, MANAGER, request_id, "approve")

    assert outcome.status == "changes_requested"
    assert outcome.transition.status == "denied"
    assert outcome.validation_errors[-1].field == "stage"
    assert _stage(db_session, record.id) == "won"


def test_steps_are_snapshotted_at_request_time(db_session: Session, gate: TransitionGate) -> None:
    deals = _seed(db_session, MANAGER_ONLY)
    record = _record(db_session, deals.module)
    request_id = _submit(db_session, gate, record)

    deals.process.steps = [{"type": "user", "user_id": "someone-else"}]
    db_session.commit()

    outcome = gate.approval_engine.act(db_session, MANAGER, request_id, "approve")

    assert outcome.status == "approved"
    request = db_session.get(CRMApprovalRequest, request_id)
    assert request.steps_snapshot == MANAGER_ONLY


def test_reject_requires_comment_and_is_final(db_session: Session, gate: TransitionGate) -> None:
    deals = _seed(db_session, MANAGER_ONLY)
    record = _record(db_session, deals.module)
    request_id = _submit(db_session, gate, record)
    engine = gate.approval_engine

    assert engine.act(db_session, MANAGER, request_id, "reject").status == "comment_required"

    rejected = engine.act(db_session, MANAGER, request_id, "reject", "Discount too deep")
    assert rejected.status == "rejected"
    assert rejected.request_status == "rejected"

    assert engine.act(db_session, MANAGER, request_id, "approve").status == "not_pending"
    assert _stage(db_session, record.id) == "proposal"
    request = db_session.get(CRMApprovalRequest, request_id)
    assert request.resolved_by == "manager-1"
    assert request.resolved_at is not None


def test_step_can_require_comment_on_approve(db_session: Session, gate: TransitionGate) -> None:
    deals = _seed(db_session, [{"type": "user", "user_id": "manager-1", "require_comment": True}])
    record = _record(db_session, deals.module)
    request_id = _submit(db_session, gate, record)
    engine = gate.approval_engine

    assert engine.act(db_session, MANAGER, request_id, "approve", " ").status == "comment_required"
    assert engine.act(db_session, MANAGER, request_id, "approve", "Margin confirmed").status == "approved"


def test_request_changes_then_resubmit(db_session: Session, gate: TransitionGate) -> None:
    deals = _seed(db_session, MANAGER_ONLY)
    record = _record(db_session, deals.module)
    request_id = _submit(db_session, gate, record)
    engine = gate.approval_engine

    changes = engine.act(db_session, MANAGER, request_id, "request_changes", "Raise the budget")
    assert changes.status == "changes_requested"

    with pytest.raises(HTTPException) as not_requester:
        engine.resubmit(db_session, OUTSIDER, request_id, ResubmitRequest())
    assert not_requester.value.status_code == 403

    outcome = engine.resubmit(db_session, REP, request_id, ResubmitRequest(payload={"budget": 9000}))
    assert outcome.status == "approval_created"

    new_request = db_session.get(CRMApprovalRequest, outcome.approval_request_id)
    assert new_request.supersedes_request_id == request_id
    assert new_request.context["payload"] == {"budget": 9000}
    assert new_request.status == "pending"

    with pytest.raises(HTTPException) as again:
        engine.resubmit(db_session, REP, request_id, ResubmitRequest())
    assert again.value.status_code == 409


def test_resubmit_rejects_pending_request(db_session: Session, gate: TransitionGate) -> None:
    deals = _seed(db_session, MANAGER_ONLY)
    request_id = _submit(db_session, gate, _record(db_session, deals.module))

    with pytest.raises(HTTPException) as exc_info:
        gate.approval_engine.resubmit(db_session, REP, request_id, ResubmitRequest())

    assert exc_info.value.status_code == 409


def test_cancel_and_expire(db_session: Session, gate: TransitionGate) -> None:
    deals = _seed(db_session, MANAGER_ONLY)
    record = _record(db_session, deals.module)
    request_id = _submit(db_session, gate, record)
    engine = gate.approval_engine

    assert engine.cancel(db_session, OUTSIDER, request_id).status == "authorization_denied"
    assert engine.expire(db_session, MANAGER, request_id).status == "authorization_denied"

    cancelled = engine.cancel(db_session, REP, request_id, "No longer needed")
    assert cancelled.status == "cancelled"
    assert cancelled.request_status == "cancelled"
    decision = db_session.scalar(
        select(CRMApprovalDecision).where(CRMApprovalDecision.approval_request_id == request_id)
    )
    assert decision.action == "cancel"

    # The record is free for a new request once the old one is closed.
    second_id = _submit(db_session, gate, record)
    timer = _actor("scheduler", extra={"crm.approvals.expire"})
    expired = engine.expire(db_session, timer, second_id)
    assert expired.status == "expired"
    assert engine.cancel(db_session, REP, second_id).status == "not_pending"


def test_admins_can_cancel_and_expire_without_explicit_grants(db_session: Session, gate: TransitionGate) -> None:
    deals = _seed(db_session, MANAGER_ONLY)
    first = _submit(db_session, gate, _record(db_session, deals.module))
    second = _submit(db_session, gate, _record(db_session, deals.module))
    admin = ActorUser(user_id="admin-1", permissions=set(), roles={"admin"}, is_super_admin=True)

    assert gate.approval_engine.cancel(db_session, admin, first).status == "cancelled"
    assert gate.approval_engine.expire(db_session, admin, second).status == "expired"


def test_bulk_decisions_report_each_item(db_session: Session, gate: TransitionGate) -> None:
    deals = _seed(db_session, MANAGER_ONLY)
    first = _submit(db_session, gate, _record(db_session, deals.module))
    second = _submit(db_session, gate, _record(db_session, deals.module))
    missing = uuid.uuid4()

    results = gate.approval_engine.bulk_act(
        db_session,
        MANAGER,
        [first, second, first, missing],
        "reject",
        "Quarter is closed",
    )

    assert [(item.approval_id, item.status) for item in results] == [
        (first, "rejected"),
        (second, "rejected"),
        (missing, "not_found"),
    ]


def test_bulk_decisions_are_capped(
    db_session: Session,
    gate: TransitionGate,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("APPROVALS_BULK_MAX", "1")
    get_settings.cache_clear()

    with pytest.raises(HTTPException) as exc_info:
        gate.approval_engine.bulk_act(db_session, MANAGER, [uuid.uuid4(), uuid.uuid4()], "approve")

    assert exc_info.value.status_code == 422


def test_inbox_assignment_and_unresolved_manager(db_session: Session, gate: TransitionGate) -> None:
    deals = _seed(db_session, [{"type": "record_owner_manager"}])
    assigned = _submit(db_session, gate, _record(db_session, deals.module))
    orphan = _submit(db_session, gate, _record(db_session, deals.module, owner="rep-2"))
    engine = gate.approval_engine

    mine = engine.list_inbox(db_session, MANAGER, ApprovalInboxQuery(assigned_to_me=True))
    assert [item.id for item in mine] == [assigned]

    everything = {item.id: item for item in engine.list_inbox(db_session, MANAGER, ApprovalInboxQuery())}
    assert everything[assigned].assigned_approver_id == "manager-1"
    assert everything[assigned].current_step_definition == {"type": "record_owner_manager"}
    assert everything[orphan].assigned_approver_id is None

    # Nobody can decide a step whose approver cannot be resolved.
    assert engine.act(db_session, MANAGER, orphan, "approve").status == "authorization_denied"

    requested = engine.list_inbox(db_session, REP, ApprovalInboxQuery(requested_by_me=True))
    assert {item.id for item in requested} == {assigned, orphan}
    assert engine.list_inbox(db_session, OUTSIDER, ApprovalInboxQuery(assigned_to_me=True)) == []


def test_inbox_filters_by_status(db_session: Session, gate: TransitionGate) -> None:
    deals = _seed(db_session, MANAGER_ONLY)
    open_id = _submit(db_session, gate, _record(db_session, deals.module))
    closed_id = _submit(db_session, gate, _record(db_session, deals.module))
    gate.approval_engine.act(db_session, MANAGER, closed_id, "reject", "No")

    pending = gate.approval_engine.list_inbox(db_session, MANAGER, ApprovalInboxQuery())
    rejected = gate.approval_engine.list_inbox(db_session, MANAGER, ApprovalInboxQuery(status="rejected"))
    every = gate.approval_engine.list_inbox(db_session, MANAGER, ApprovalInboxQuery(status=None))

    assert [item.id for item in pending] == [open_id]
    assert [item.id for item in rejected] == [closed_id]
    assert {item.id for item in every} == {open_id, closed_id}


def test_detail_includes_decisions_and_record(db_session: Session, gate: TransitionGate) -> None:
    deals = _seed(db_session, TWO_STEPS)
    record = _record(db_session, deals.module)
    request_id = _submit(db_session, gate, record)
    gate.approval_engine.act(db_session, MANAGER, request_id, "approve")

    detail = gate.approval_engine.get_detail(db_session, FINANCE, request_id)

    assert detail.request.current_step == 1
    assert detail.request.current_step_definition["role"] == "finance"
    assert [item.actor_id for item in detail.decisions] == ["manager-1"]
    assert detail.record.id == record.id
    assert detail.record.title == "Acme renewal"

    with pytest.raises(HTTPException) as exc_info:
        gate.approval_engine.get_detail(db_session, FINANCE, uuid.uuid4())
    assert exc_info.value.status_code == 404


def test_decisions_require_permission(db_session: Session, gate: TransitionGate) -> None:
    deals = _seed(db_session, MANAGER_ONLY)
    request_id = _submit(db_session, gate, _record(db_session, deals.module))
    viewer = ActorUser(user_id="manager-1", permissions={"crm.approvals.read"})

    with pytest.raises(HTTPException) as exc_info:
        gate.approval_engine.act(db_session, viewer, request_id, "approve")

    assert exc_info.value.status_code == 403
