from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.audit import get_audit_sink
from app.crm.approvals import ApprovalWorkflowEngine
from app.crm.blueprint import BlueprintStateMachine, TransitionDef
from app.crm.models import CRMApprovalProcess, CRMApprovalRequest, utcnow
from app.crm.repositories import ModuleMetadata, RecordSnapshot, RecordStore, SqlModuleMetadata, SqlRecordStore
from app.crm.rules import is_empty
from app.crm.schemas import (
    AvailableTransitionRead,
    AvailableTransitionsRead,
    FieldRequirement,
    TransitionOutcome,
    TransitionRequest,
)
from app.crm.service import ActorUser, _require_permission
from app.crm.validation import ValidationRuleEngine
from app.metrics import observe_transition_outcome
from app.otel import get_tracer, set_span_attributes

logger = logging.getLogger("app.crm.gate")
tracer = get_tracer("app.crm.gate")

_ALLOWED_STATUSES = {"noop", "allowed", "approval_required", "approval_created", "committed"}


@dataclass
class _GateDecision:
    outcome: TransitionOutcome | None = None
    transition: TransitionDef | None = None
    process: CRMApprovalProcess | None = None
    requires_approval: bool = False
    required_fields: list[FieldRequirement] = field(default_factory=list)


class TransitionGate:
    """Decides whether a record may move to a target stage and applies the move.

    Checks run in a fixed order: no-op, blueprint edge, stage_change rules,
    required transition fields, reason, pending approval, approval policy.
    The first failing check decides the outcome. Preview and execute share the
    same checks; only execute writes.
    """

    def __init__(
        self,
        state_machine: BlueprintStateMachine | None = None,
        validation_engine: ValidationRuleEngine | None = None,
        approval_engine: ApprovalWorkflowEngine | None = None,
        record_store_factory: Callable[[Session], RecordStore] = SqlRecordStore,
        metadata_factory: Callable[[Session], ModuleMetadata] = SqlModuleMetadata,
    ) -> None:
        self.state_machine = state_machine or BlueprintStateMachine()
        self.validation_engine = validation_engine or ValidationRuleEngine(
            record_store_factory=record_store_factory,
        )
        self.approval_engine = approval_engine or ApprovalWorkflowEngine(record_store_factory=record_store_factory)
        self.approval_engine.bind_applier(self)
        self._record_store_factory = record_store_factory
        self._metadata_factory = metadata_factory

    def list_available(self, session: Session, actor: ActorUser, record_id: uuid.UUID) -> AvailableTransitionsRead:
        _require_permission(actor, "crm.records.read")
        record = self._load_record(session, record_id)
        blueprint = self.state_machine.load(session, record.module_id)
        labels = self._labels(session, record.module_id)
        values = record.values()

        items: list[AvailableTransitionRead] = []
        if blueprint.stage(record.stage) is not None:
            for transition in blueprint.outgoing(record.stage):
                target = blueprint.stage(transition.to_stage)
                requires_approval, _ = self.approval_engine.resolve_process(session, record.module_id, transition)
                items.append(
                    AvailableTransitionRead(
                        transition_id=transition.id,
                        to_stage=transition.to_stage,
                        to_stage_label=target.label if target is not None else transition.to_stage,
                        to_stage_color=target.color if target is not None else None,
                        required_fields=self._required_fields(transition, values, labels),
                        requires_approval=requires_approval,
                        require_reason=transition.require_reason,
                    )
                )
        return AvailableTransitionsRead(
            record_id=record.id,
            module_id=record.module_id,
            current_stage=record.stage,
            transitions=items,
        )

    def check_transition(
        self,
        session: Session,
        actor: ActorUser,
        record_id: uuid.UUID,
        dto: TransitionRequest,
    ) -> TransitionOutcome:
        """Run every check without writing anything."""
        _require_permission(actor, "crm.records.transition")
        with tracer.start_as_current_span("crm.transition.check") as span:
            set_span_attributes(span, record_id=record_id, to_stage=dto.to_stage)
            record = self._load_record(session, record_id)
            set_span_attributes(span, module_id=record.module_id, from_stage=record.stage)
            decision = self._evaluate(session, record, dto)
            if decision.outcome is not None:
                outcome = decision.outcome
            else:
                outcome = self._outcome(
                    record,
                    dto.to_stage,
                    "approval_required" if decision.requires_approval else "allowed",
                    required_fields=decision.required_fields,
                    requires_approval=decision.requires_approval,
                    requires_reason=decision.transition.require_reason,
                    row_version=record.row_version,
                )
            set_span_attributes(span, outcome=outcome.status, approval_request_id=outcome.approval_request_id)
        observe_transition_outcome("preview", outcome.status)
        return outcome

    def execute_transition(
        self,
        session: Session,
        actor: ActorUser,
        record_id: uuid.UUID,
        dto: TransitionRequest,
        *,
        supersedes_request_id: uuid.UUID | None = None,
    ) -> TransitionOutcome:
        _require_permission(actor, "crm.records.transition")
        with tracer.start_as_current_span("crm.transition.execute") as span:
            set_span_attributes(span, record_id=record_id, to_stage=dto.to_stage)
            record = self._load_record(session, record_id)
            set_span_attributes(span, module_id=record.module_id, from_stage=record.stage)
            decision = self._evaluate(session, record, dto)
            if decision.outcome is not None:
                outcome = decision.outcome
            elif decision.requires_approval:
                outcome = self._request_approval(session, actor, record, dto, decision, supersedes_request_id)
            else:
                outcome = self._commit(session, actor, record, dto, decision)
            set_span_attributes(span, outcome=outcome.status, approval_request_id=outcome.approval_request_id)

        observe_transition_outcome("execute", outcome.status)
        logger.info(
            "transition.executed",
            extra={
                "module_id": str(record.module_id),
                "record_id": str(record.id),
                "from_stage": record.stage,
                "to_stage": dto.to_stage,
                "outcome": outcome.status,
                "user_id": actor.user_id,
            },
        )
        return outcome

    def apply_approved_transition(
        self,
        session: Session,
        actor: ActorUser,
        request: CRMApprovalRequest,
    ) -> TransitionOutcome:
        """Commit the transition captured by a fully approved request.

        The record is re-read and re-validated; the move is applied only if
        the record is still in the source stage and every check passes.
        Nothing is committed here, the caller owns the unit of work.
        """
        transition = TransitionDef.from_snapshot(request.transition_snapshot)
        context = request.context or {}
        payload = dict(context.get("payload") or {})
        reason = context.get("reason")

        record = self._record_store_factory(session).get_record(request.record_id)
        if record is None:
            return TransitionOutcome(
                status="denied",
                allowed=False,
                record_id=request.record_id,
                from_stage=transition.from_stage,
                to_stage=transition.to_stage,
                blueprint_error="record no longer exists",
            )
        if record.stage != transition.from_stage:
            return self._outcome(
                record,
                transition.to_stage,
                "denied",
                blueprint_error=f"record moved to stage '{record.stage}' after the request was created",
            )

        required = self._required_fields(transition, record.merged_with(payload), self._labels(session, record.module_id))
        errors = self.validation_engine.validate(
            session,
            record.module_id,
            "stage_change",
            record.values(),
            payload,
            record_id=record.id,
            stage_from=record.stage,
            stage_to=transition.to_stage,
        )
        if errors:
            return self._outcome(
                record,
                transition.to_stage,
                "validation_failed",
                validation_errors=errors,
                required_fields=required,
            )
        missing = [item.key for item in required if is_empty(item.value)]
        if missing:
            return self._outcome(
                record,
                transition.to_stage,
                "fields_missing",
                missing_fields=missing,
                required_fields=required,
            )

        new_version = self.commit_stage_change(
            session,
            actor,
            record,
            transition.to_stage,
            payload,
            reason,
            approval_request_id=request.id,
            requested_by=request.requested_by,
        )
        if new_version is None:
            return self._outcome(
                record,
                transition.to_stage,
                "conflict",
                message="record was modified while the approval was being applied",
            )
        return self._outcome(
            record,
            transition.to_stage,
            "committed",
            approval_request_id=request.id,
            row_version=new_version,
        )

    def commit_stage_change(
        self,
        session: Session,
        actor: ActorUser,
        record: RecordSnapshot,
        to_stage: str,
        payload: Mapping[str, Any],
        reason: str | None,
        *,
        approval_request_id: uuid.UUID | None = None,
        requested_by: str | None = None,
    ) -> int | None:
        """Write fields and stage atomically; ``None`` means the version check lost."""
        new_version = self._record_store_factory(session).set_stage(
            record.id,
            to_stage,
            expected_version=record.row_version,
            fields=payload,
        )
        if new_version is None:
            return None

        audit.record(
            actor_user_id=actor.user_id,
            entity_type="crm.record",
            entity_id=str(record.id),
            action="stage_changed",
            before={"stage": record.stage, "row_version": record.row_version},
            after={
                "stage": to_stage,
                "row_version": new_version,
                "reason": reason,
                "fields": dict(payload),
                "approval_request_id": str(approval_request_id) if approval_request_id else None,
                "requested_by": requested_by or actor.user_id,
            },
            correlation_id=actor.correlation_id,
            sink=get_audit_sink(session),
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "crm.record.stage_changed",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor.user_id,
                "version": 1,
                "payload": {
                    "record_id": str(record.id),
                    "module_id": str(record.module_id),
                    "from_stage": record.stage,
                    "to_stage": to_stage,
                    "row_version": new_version,
                    "approval_request_id": str(approval_request_id) if approval_request_id else None,
                },
            }
        )
        return new_version

    def _evaluate(self, session: Session, record: RecordSnapshot, dto: TransitionRequest) -> _GateDecision:
        to_stage = dto.to_stage
        if record.stage == to_stage:
            return _GateDecision(
                outcome=self._outcome(record, to_stage, "noop", message="record is already in this stage")
            )

        check = self.state_machine.check_transition(session, record.module_id, record.stage, to_stage)
        if not check.allowed or check.transition is None:
            return _GateDecision(outcome=self._outcome(record, to_stage, "denied", blueprint_error=check.reason))
        transition = check.transition

        required = self._required_fields(
            transition,
            record.merged_with(dto.payload),
            self._labels(session, record.module_id),
        )
        requires_approval, process = self.approval_engine.resolve_process(session, record.module_id, transition)
        flags: dict[str, Any] = {
            "required_fields": required,
            "requires_approval": requires_approval,
            "requires_reason": transition.require_reason,
        }

        errors = self.validation_engine.validate(
            session,
            record.module_id,
            "stage_change",
            record.values(),
            dto.payload,
            record_id=record.id,
            stage_from=record.stage,
            stage_to=to_stage,
        )
        if errors:
            return _GateDecision(
                outcome=self._outcome(record, to_stage, "validation_failed", validation_errors=errors, **flags)
            )

        missing = [item.key for item in required if is_empty(item.value)]
        if missing:
            return _GateDecision(
                outcome=self._outcome(record, to_stage, "fields_missing", missing_fields=missing, **flags)
            )

        if transition.require_reason and is_empty(dto.reason):
            return _GateDecision(
                outcome=self._outcome(
                    record,
                    to_stage,
                    "reason_required",
                    message="a reason is required for this transition",
                    **flags,
                )
            )

        pending_id = self.approval_engine.pending_request_id(session, record.id)
        if pending_id is not None:
            return _GateDecision(
                outcome=self._outcome(
                    record,
                    to_stage,
                    "approval_in_progress",
                    approval_request_id=pending_id,
                    message="an approval request is already pending for this record",
                    **flags,
                )
            )

        if requires_approval and process is None:
            return _GateDecision(
                outcome=self._outcome(
                    record,
                    to_stage,
                    "denied",
                    blueprint_error="transition requires approval but no enabled approval process is configured",
                    **flags,
                )
            )

        return _GateDecision(
            transition=transition,
            process=process,
            requires_approval=requires_approval,
            required_fields=required,
        )

    def _request_approval(
        self,
        session: Session,
        actor: ActorUser,
        record: RecordSnapshot,
        dto: TransitionRequest,
        decision: _GateDecision,
        supersedes_request_id: uuid.UUID | None,
    ) -> TransitionOutcome:
        flags = {
            "required_fields": decision.required_fields,
            "requires_approval": True,
            "requires_reason": decision.transition.require_reason,
        }
        context = {
            "action_type": "stage_transition",
            "stage_from": record.stage,
            "stage_to": dto.to_stage,
            "payload": dict(dto.payload),
            "reason": dto.reason,
            "requested_by": actor.user_id,
            "record_version": record.row_version,
        }
        try:
            request = self.approval_engine.create_request(
                session,
                decision.process,
                record=record,
                transition=decision.transition,
                context=context,
                requested_by=actor.user_id,
                supersedes_request_id=supersedes_request_id,
                correlation_id=actor.correlation_id,
            )
            request_id = request.id
            session.commit()
        except IntegrityError:
            session.rollback()
            return self._outcome(
                record,
                dto.to_stage,
                "approval_in_progress",
                message="an approval request is already pending for this record",
                **flags,
            )
        return self._outcome(
            record,
            dto.to_stage,
            "approval_created",
            approval_request_id=request_id,
            row_version=record.row_version,
            **flags,
        )

    def _commit(
        self,
        session: Session,
        actor: ActorUser,
        record: RecordSnapshot,
        dto: TransitionRequest,
        decision: _GateDecision,
    ) -> TransitionOutcome:
        new_version = self.commit_stage_change(session, actor, record, dto.to_stage, dto.payload, dto.reason)
        if new_version is None:
            session.rollback()
            return self._outcome(
                record,
                dto.to_stage,
                "conflict",
                message="record was modified by another request",
                required_fields=decision.required_fields,
            )
        session.commit()
        return self._outcome(
            record,
            dto.to_stage,
            "committed",
            required_fields=decision.required_fields,
            requires_reason=decision.transition.require_reason,
            row_version=new_version,
        )

    def _load_record(self, session: Session, record_id: uuid.UUID) -> RecordSnapshot:
        record = self._record_store_factory(session).get_record(record_id)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Record not found")
        return record

    def _labels(self, session: Session, module_id: uuid.UUID) -> dict[str, str]:
        return {item.key: item.label for item in self._metadata_factory(session).fields(module_id)}

    @staticmethod
    def _required_fields(
        transition: TransitionDef,
        values: Mapping[str, Any],
        labels: Mapping[str, str],
    ) -> list[FieldRequirement]:
        return [
            item.model_copy(update={"label": item.label or labels.get(item.key, item.key), "value": values.get(item.key)})
            for item in transition.required_fields
        ]

    @staticmethod
    def _outcome(record: RecordSnapshot, to_stage: str, outcome_status: str, **fields: Any) -> TransitionOutcome:
        return TransitionOutcome(
            status=outcome_status,
            allowed=outcome_status in _ALLOWED_STATUSES,
            record_id=record.id,
            from_stage=record.stage,
            to_stage=to_stage,
            **fields,
        )


transition_gate = TransitionGate()
