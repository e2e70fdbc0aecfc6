from __future__ import annotations

import uuid
from collections.abc import Generator, Mapping
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
from app.crm.approvals import ApprovalWorkflowEngine
from app.crm.gate import TransitionGate
from app.crm.models import (
    CRMApprovalProcess,
    CRMApprovalRequest,
    CRMBlueprintStage,
    CRMBlueprintTransition,
    CRMModule,
    CRMModuleField,
    CRMRecord,
    CRMValidationRule,
)
from app.crm.repositories import SqlRecordStore
from app.crm.schemas import TransitionRequest
from app.crm.service import ActorUser


REP = ActorUser(user_id="rep-1", permissions={"crm.records.read", "crm.records.transition"})


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


@dataclass
class Deals:
    module: CRMModule
    process: CRMApprovalProcess


@pytest.fixture()
def deals(db_session: Session) -> Deals:
    module = CRMModule(key="deals", name="Deals")
    db_session.add(module)
    db_session.flush()
    db_session.add(CRMModuleField(module_id=module.id, key="budget", label="Budget", field_type="number"))
    for position, key in enumerate(["qualification", "proposal", "negotiation", "won", "lost"]):
        db_session.add(CRMBlueprintStage(module_id=module.id, key=key, label=key.title(), position=position))
    process = CRMApprovalProcess(
        module_id=module.id,
        name="Discount approval",
        steps=[{"type": "user", "user_id": "manager-1"}],
    )
    db_session.add(process)
    db_session.flush()
    db_session.add_all(
        [
            CRMBlueprintTransition(
                module_id=module.id,
                from_stage="qualification",
                to_stage="proposal",
                required_fields=[{"key": "budget", "label": "", "type": "number"}],
            ),
            CRMBlueprintTransition(
                module_id=module.id,
                from_stage="proposal",
                to_stage="negotiation",
                required_fields=[],
                requires_approval=True,
                approval_process_id=process.id,
            ),
            CRMBlueprintTransition(
                module_id=module.id,
                from_stage="proposal",
                to_stage="lost",
                required_fields=[],
                require_reason=True,
            ),
            CRMBlueprintTransition(module_id=module.id, from_stage="negotiation", to_stage="won", required_fields=[]),
        ]
    )
    db_session.commit()
    return Deals(module=module, process=process)


@pytest.fixture()
def gate() -> TransitionGate:
    return TransitionGate()


def _record(session: Session, module: CRMModule, stage: str, **data: Any) -> CRMRecord:
    record = CRMRecord(module_id=module.id, title="Acme renewal", stage=stage, owner_user_id="rep-1", data=data)
    session.add(record)
    session.commit()
    return record


def test_required_fields_are_collected_then_committed(db_session: Session, deals: Deals, gate: TransitionGate) -> None:
    record = _record(db_session, deals.module, "qualification")

    preview = gate.check_transition(db_session, REP, record.id, TransitionRequest(to_stage="proposal"))
    assert preview.status == "fields_missing"
    assert not preview.allowed
    assert preview.missing_fields == ["budget"]
    assert preview.required_fields[0].label == "Budget"
    assert preview.required_fields[0].value is None

    outcome = gate.execute_transition(
        db_session,
        REP,
        record.id,
        TransitionRequest(to_stage="proposal", payload={"budget": 5000}),
    )
    assert outcome.status == "committed"
    assert outcome.row_version == 2

    db_session.expire_all()
    stored = db_session.get(CRMRecord, record.id)
    assert stored.stage == "proposal"
    assert stored.data["budget"] == 5000
    assert stored.row_version == 2

    stage_audit = [entry for entry in audit.audit_entries if entry["action"] == "stage_changed"]
    assert len(stage_audit) == 1
    assert stage_audit[0]["before"] == {"stage": "qualification", "row_version": 1}
    assert stage_audit[0]["after"]["fields"] == {"budget": 5000}
    assert [item["event_type"] for item in events.published_events] == ["crm.record.stage_changed"]


def test_same_stage_is_noop(db_session: Session, deals: Deals, gate: TransitionGate) -> None:
    record = _record(db_session, deals.module, "proposal")

    outcome = gate.execute_transition(db_session, REP, record.id, TransitionRequest(to_stage="proposal"))

    assert outcome.status == "noop"
    assert outcome.allowed
    assert audit.audit_entries == []


@pytest.mark.parametrize(
    ("stage", "to_stage", "error"),
    [
        ("qualification", "won", "no transition from 'qualification' to 'won'"),
        ("proposal", "archived", "stage 'archived' does not exist"),
        ("won", "lost", "stage 'won' is terminal"),
    ],
)
def test_blueprint_denials(
    db_session: Session,
    deals: Deals,
    gate: TransitionGate,
    stage: str,
    to_stage: str,
    error: str,
) -> None:
    record = _record(db_session, deals.module, stage)

    outcome = gate.execute_transition(db_session, REP, record.id, TransitionRequest(to_stage=to_stage))

    assert outcome.status == "denied"
    assert outcome.blueprint_error == error
    assert db_session.get(CRMRecord, record.id).stage == stage


def test_validation_failure_blocks_before_required_fields(
    db_session: Session,
    deals: Deals,
    gate: TransitionGate,
) -> None:
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
    record = _record(db_session, deals.module, "qualification")

    outcome = gate.execute_transition(
        db_session,
        REP,
        record.id,
        TransitionRequest(to_stage="proposal", payload={"budget": 10}),
    )

    assert outcome.status == "validation_failed"
    assert [item.message for item in outcome.validation_errors] == ["Budget must be at least 1000"]
    db_session.expire_all()
    assert db_session.get(CRMRecord, record.id).data == {}


def test_preview_has_no_side_effects(db_session: Session, deals: Deals, gate: TransitionGate) -> None:
    record = _record(db_session, deals.module, "qualification", budget=5000)
    dto = TransitionRequest(to_stage="proposal")

    first = gate.check_transition(db_session, REP, record.id, dto)
    second = gate.check_transition(db_session, REP, record.id, dto)

    assert first.status == "allowed"
    assert first == second
    assert audit.audit_entries == []
    assert events.published_events == []
    db_session.expire_all()
    stored = db_session.get(CRMRecord, record.id)
    assert stored.stage == "qualification"
    assert stored.row_version == 1


def test_reason_required(db_session: Session, deals: Deals, gate: TransitionGate) -> None:
    record = _record(db_session, deals.module, "proposal")

    missing = gate.execute_transition(db_session, REP, record.id, TransitionRequest(to_stage="lost", reason="  "))
    assert missing.status == "reason_required"
    assert missing.requires_reason

    outcome = gate.execute_transition(
        db_session,
        REP,
        record.id,
        TransitionRequest(to_stage="lost", reason="Went with a competitor"),
    )
    assert outcome.status == "committed"
    assert audit.audit_entries[-1]["after"]["reason"] == "Went with a competitor"


def test_approval_required_transition_creates_one_request(
    db_session: Session,
    deals: Deals,
    gate: TransitionGate,
) -> None:
    record = _record(db_session, deals.module, "proposal")
    dto = TransitionRequest(to_stage="negotiation", payload={"budget": 7000})

    preview = gate.check_transition(db_session, REP, record.id, dto)
    assert preview.status == "approval_required"
    assert preview.allowed
    assert preview.requires_approval

    created = gate.execute_transition(db_session, REP, record.id, dto)
    assert created.status == "approval_created"
    assert created.approval_request_id is not None

    db_session.expire_all()
    stored = db_session.get(CRMRecord, record.id)
    assert stored.stage == "proposal"
    assert "budget" not in stored.data

    again = gate.execute_transition(db_session, REP, record.id, dto)
    assert again.status == "approval_in_progress"
    assert again.approval_request_id == created.approval_request_id

    # A pending request blocks every other move of the record too.
    other = gate.execute_transition(db_session, REP, record.id, TransitionRequest(to_stage="lost", reason="Budget cut"))
    assert other.status == "approval_in_progress"


def test_transition_requiring_approval_without_process_is_denied(
    db_session: Session,
    deals: Deals,
    gate: TransitionGate,
) -> None:
    deals.process.is_enabled = False
    db_session.commit()
    record = _record(db_session, deals.module, "proposal")

    outcome = gate.execute_transition(db_session, REP, record.id, TransitionRequest(to_stage="negotiation"))

    assert outcome.status == "denied"
    assert outcome.blueprint_error == "transition requires approval but no enabled approval process is configured"


def test_triggered_process_makes_transition_require_approval(
    db_session: Session,
    deals: Deals,
    gate: TransitionGate,
) -> None:
    db_session.add(
        CRMApprovalProcess(
            module_id=deals.module.id,
            name="Closing approval",
            trigger_stage_from="*",
            trigger_stage_to="won",
            steps=[{"type": "role", "role": "sales_director"}],
        )
    )
    db_session.commit()
    record = _record(db_session, deals.module, "negotiation")

    outcome = gate.check_transition(db_session, REP, record.id, TransitionRequest(to_stage="won"))

    assert outcome.status == "approval_required"


class RacingRecordStore(SqlRecordStore):
    """Bumps the record version right before the guarded write."""

    def set_stage(
        self,
        record_id: uuid.UUID,
        stage: str,
        *,
        expected_version: int,
        fields: Mapping[str, Any] | None = None,
    ) -> int | None:
        self._session.execute(
            update(CRMRecord).where(CRMRecord.id == record_id).values(row_version=CRMRecord.row_version + 1)
        )
        return super().set_stage(record_id, stage, expected_version=expected_version, fields=fields)


def test_concurrent_write_is_reported_as_conflict(db_session: Session, deals: Deals) -> None:
    gate = TransitionGate(record_store_factory=RacingRecordStore)
    record = _record(db_session, deals.module, "qualification", budget=5000)

    outcome = gate.execute_transition(db_session, REP, record.id, TransitionRequest(to_stage="proposal"))

    assert outcome.status == "conflict"
    assert not outcome.allowed
    db_session.expire_all()
    stored = db_session.get(CRMRecord, record.id)
    assert stored.stage == "qualification"
    assert stored.row_version == 1
    assert audit.audit_entries == []


class BlindApprovalEngine(ApprovalWorkflowEngine):
    """Never sees a pending request, as when two submissions race."""

    def pending_request_id(self, session: Session, record_id: uuid.UUID) -> uuid.UUID | None:
        return None


def test_racing_submissions_leave_one_pending_request(db_session: Session, deals: Deals) -> None:
    gate = TransitionGate(approval_engine=BlindApprovalEngine())
    record = _record(db_session, deals.module, "proposal")
    dto = TransitionRequest(to_stage="negotiation")

    first = gate.execute_transition(db_session, REP, record.id, dto)
    second = gate.execute_transition(db_session, REP, record.id, dto)

    assert first.status == "approval_created"
    assert second.status == "approval_in_progress"
    assert second.approval_request_id is None
    requests = db_session.scalars(select(CRMApprovalRequest).where(CRMApprovalRequest.record_id == record.id)).all()
    assert [item.id for item in requests] == [first.approval_request_id]
    created_events = [item for item in events.published_events if item["event_type"] == "crm.approval.created"]
    assert len(created_events) == 1


def test_list_available_transitions(db_session: Session, deals: Deals, gate: TransitionGate) -> None:
    record = _record(db_session, deals.module, "proposal", budget=5000)

    available = gate.list_available(db_session, REP, record.id)

    assert available.current_stage == "proposal"
    by_stage = {item.to_stage: item for item in available.transitions}
    assert set(by_stage) == {"negotiation", "lost"}
    assert by_stage["negotiation"].requires_approval
    assert by_stage["lost"].require_reason
    assert by_stage["lost"].to_stage_label == "Lost"


def test_gate_requires_permissions(db_session: Session, deals: Deals, gate: TransitionGate) -> None:
    record = _record(db_session, deals.module, "qualification")
    reader = ActorUser(user_id="viewer-1", permissions={"crm.records.read"})

    with pytest.raises(HTTPException) as exc_info:
        gate.execute_transition(db_session, reader, record.id, TransitionRequest(to_stage="proposal"))
    assert exc_info.value.status_code == 403

    with pytest.raises(HTTPException) as missing:
        gate.check_transition(db_session, REP, uuid.uuid4(), TransitionRequest(to_stage="proposal"))
    assert missing.value.status_code == 404
