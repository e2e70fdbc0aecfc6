from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Callable
from typing import Any, Protocol

from fastapi import HTTPException, status
from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit, events
from app.audit import get_audit_sink
from app.core.config import get_settings
from app.crm.approvers import ApproverContext, DefaultApproverResolver, RolePermissionResolver, SqlUserDirectory
from app.crm.blueprint import TransitionDef
from app.crm.models import CRMApprovalDecision, CRMApprovalProcess, CRMApprovalRequest, CRMRecord, utcnow
from app.crm.repositories import RecordSnapshot, RecordStore, SqlRecordStore
from app.crm.rules import is_empty
from app.crm.schemas import (
    ApprovalDecisionRead,
    ApprovalDetailRead,
    ApprovalInboxItem,
    ApprovalInboxQuery,
    ApprovalRequestRead,
    DecisionOutcome,
    FieldValidationError,
    RecordRead,
    ResubmitRequest,
    TransitionOutcome,
    TransitionRequest,
)
from app.crm.service import ActorUser, _require_permission, has_permission
from app.metrics import observe_approval_decision
from app.otel import get_tracer, set_span_attributes

logger = logging.getLogger("app.crm.approvals")
tracer = get_tracer("app.crm.approvals")


class TransitionApplier(Protocol):
    """The gate's commit path, as seen from the approval engine."""

    def apply_approved_transition(
        self,
        session: Session,
        actor: ActorUser,
        request: CRMApprovalRequest,
    ) -> TransitionOutcome:
        ...

    def execute_transition(
        self,
        session: Session,
        actor: ActorUser,
        record_id: uuid.UUID,
        dto: TransitionRequest,
        *,
        supersedes_request_id: uuid.UUID | None = None,
    ) -> TransitionOutcome:
        ...


def _stage_matches(pattern: str | None, stage: str) -> bool:
    return pattern in (None, "*") or pattern == stage


def _default_resolver(session: Session) -> RolePermissionResolver:
    return DefaultApproverResolver(SqlUserDirectory(session))


class ApprovalWorkflowEngine:
    """Owns the approval request lifecycle.

    pending -> approved | rejected | changes_requested | cancelled | expired.
    Only pending requests accept actions. Every action appends one
    ``CRMApprovalDecision`` row and bumps the request's ``row_version``
    through a guarded update, so concurrent deciders cannot both win.
    """

    def __init__(
        self,
        resolver_factory: Callable[[Session], RolePermissionResolver] = _default_resolver,
        record_store_factory: Callable[[Session], RecordStore] = SqlRecordStore,
        applier: TransitionApplier | None = None,
    ) -> None:
        self._resolver_factory = resolver_factory
        self._record_store_factory = record_store_factory
        self._applier = applier

    def bind_applier(self, applier: TransitionApplier) -> None:
        self._applier = applier

    @property
    def applier(self) -> TransitionApplier:
        if self._applier is None:
            raise RuntimeError("approval engine has no transition applier bound")
        return self._applier

    def resolve_process(
        self,
        session: Session,
        module_id: uuid.UUID,
        transition: TransitionDef,
    ) -> tuple[bool, CRMApprovalProcess | None]:
        """Return whether the transition needs approval and which process applies.

        An explicitly referenced process wins. Otherwise an enabled process of
        the module whose stage trigger matches the edge applies, and makes the
        transition require approval even when its own flag is off. A flagged
        transition with neither falls back to the module's untriggered
        process.
        """
        if transition.approval_process_id is not None:
            process = session.get(CRMApprovalProcess, transition.approval_process_id)
            if process is not None and process.is_enabled and process.module_id == module_id:
                return True, process

        processes = session.scalars(
            select(CRMApprovalProcess)
            .where(and_(CRMApprovalProcess.module_id == module_id, CRMApprovalProcess.is_enabled.is_(True)))
            .order_by(CRMApprovalProcess.created_at.asc())
        ).all()
        for process in processes:
            if process.trigger_stage_from is None and process.trigger_stage_to is None:
                continue
            if _stage_matches(process.trigger_stage_from, transition.from_stage) and _stage_matches(
                process.trigger_stage_to, transition.to_stage
            ):
                return True, process

        if not transition.requires_approval:
            return False, None
        for process in processes:
            if process.trigger_stage_from is None and process.trigger_stage_to is None:
                return True, process
        return True, None

    def pending_request_id(self, session: Session, record_id: uuid.UUID) -> uuid.UUID | None:
        return session.scalar(
            select(CRMApprovalRequest.id).where(
                and_(CRMApprovalRequest.record_id == record_id, CRMApprovalRequest.status == "pending")
            )
        )

    def create_request(
        self,
        session: Session,
        process: CRMApprovalProcess,
        *,
        record: RecordSnapshot,
        transition: TransitionDef,
        context: dict[str, Any],
        requested_by: str,
        supersedes_request_id: uuid.UUID | None = None,
        correlation_id: str | None = None,
    ) -> CRMApprovalRequest:
        """Create a pending request that owns a copy of the process steps.

        Flushes immediately; a second pending request for the same record
        raises ``IntegrityError`` from the partial unique index.
        """
        steps = copy.deepcopy(list(process.steps or []))
        if not steps:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="approval process has no steps")

        request = CRMApprovalRequest(
            record_id=record.id,
            module_id=record.module_id,
            process_id=process.id,
            status="pending",
            current_step=0,
            total_steps=len(steps),
            steps_snapshot=steps,
            transition_snapshot=transition.snapshot(),
            context=context,
            requested_by=requested_by,
            supersedes_request_id=supersedes_request_id,
        )
        session.add(request)
        session.flush()

        audit.record(
            actor_user_id=requested_by,
            entity_type="crm.approval_request",
            entity_id=str(request.id),
            action="approval.requested",
            before=None,
            after=ApprovalRequestRead.model_validate(request).model_dump(mode="json"),
            correlation_id=correlation_id,
            sink=get_audit_sink(session),
        )
        self._publish(request, requested_by, "crm.approval.created")
        return request

    def act(
        self,
        session: Session,
        actor: ActorUser,
        request_id: uuid.UUID,
        action: str,
        comment: str | None = None,
    ) -> DecisionOutcome:
        _require_permission(actor, "crm.approvals.decide")
        with tracer.start_as_current_span("crm.approval.act") as span:
            set_span_attributes(span, approval_id=request_id, action=action)
            outcome = self._act(session, actor, request_id, action, comment)
            set_span_attributes(span, outcome=outcome.status, request_status=outcome.request_status)
        observe_approval_decision(action, outcome.status)
        logger.info(
            "approval.decided",
            extra={
                "approval_id": str(request_id),
                "action": action,
                "outcome": outcome.status,
                "user_id": actor.user_id,
            },
        )
        return outcome

    def bulk_act(
        self,
        session: Session,
        actor: ActorUser,
        request_ids: list[uuid.UUID],
        action: str,
        comment: str | None = None,
    ) -> list[DecisionOutcome]:
        """Apply one action to many requests.

        Each item commits or rolls back on its own; a failing item is reported
        and the loop continues.
        """
        _require_permission(actor, "crm.approvals.decide")
        unique_ids = list(dict.fromkeys(request_ids))
        max_items = get_settings().approvals_bulk_max
        if len(unique_ids) > max_items:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"bulk decisions are limited to {max_items} requests",
            )

        results: list[DecisionOutcome] = []
        for request_id in unique_ids:
            try:
                results.append(self.act(session, actor, request_id, action, comment))
            except (HTTPException, SQLAlchemyError) as exc:
                session.rollback()
                logger.warning(
                    "approval.bulk_item_failed",
                    exc_info=True,
                    extra={"approval_id": str(request_id), "action": action, "error": str(exc)[:500]},
                )
                observe_approval_decision(action, "error")
                detail = exc.detail if isinstance(exc, HTTPException) else "decision failed"
                results.append(DecisionOutcome(approval_id=request_id, status="error", message=str(detail)))
        return results

    def cancel(
        self,
        session: Session,
        actor: ActorUser,
        request_id: uuid.UUID,
        comment: str | None = None,
    ) -> DecisionOutcome:
        request = self._get(session, request_id)
        if request is None:
            return DecisionOutcome(approval_id=request_id, status="not_found", message="approval request not found")
        if request.status != "pending":
            return self._outcome(request, "not_pending", message=f"approval request is {request.status}")
        if actor.user_id != request.requested_by and not has_permission(actor, "crm.approvals.admin"):
            return self._outcome(request, "authorization_denied", message="only the requester or an approvals admin can cancel")
        return self._close(session, actor, request, "cancelled", "cancel", comment)

    def expire(
        self,
        session: Session,
        actor: ActorUser,
        request_id: uuid.UUID,
        comment: str | None = None,
    ) -> DecisionOutcome:
        """Move a pending request to ``expired`` on behalf of an external timeout policy."""
        request = self._get(session, request_id)
        if request is None:
            return DecisionOutcome(approval_id=request_id, status="not_found", message="approval request not found")
        if not has_permission(actor, "crm.approvals.expire"):
            return self._outcome(request, "authorization_denied", message="Missing permission: crm.approvals.expire")
        if request.status != "pending":
            return self._outcome(request, "not_pending", message=f"approval request is {request.status}")
        return self._close(session, actor, request, "expired", "expire", comment)

    def resubmit(
        self,
        session: Session,
        actor: ActorUser,
        request_id: uuid.UUID,
        dto: ResubmitRequest,
    ) -> TransitionOutcome:
        request = self._get(session, request_id)
        if request is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="approval request not found")
        if request.status != "changes_requested":
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="only requests with changes requested can be resubmitted",
            )
        if request.requested_by != actor.user_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="only the requester can resubmit")
        superseded_by = session.scalar(
            select(CRMApprovalRequest.id).where(CRMApprovalRequest.supersedes_request_id == request.id)
        )
        if superseded_by is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="approval request was already resubmitted")

        context = request.context or {}
        payload = {**(context.get("payload") or {}), **dto.payload}
        reason = dto.reason if not is_empty(dto.reason) else context.get("reason")
        return self.applier.execute_transition(
            session,
            actor,
            request.record_id,
            TransitionRequest(to_stage=context["stage_to"], payload=payload, reason=reason),
            supersedes_request_id=request.id,
        )

    def list_inbox(self, session: Session, actor: ActorUser, query: ApprovalInboxQuery) -> list[ApprovalInboxItem]:
        _require_permission(actor, "crm.approvals.read")
        limit = min(query.limit, get_settings().approvals_inbox_max_limit)

        stmt = select(CRMApprovalRequest)
        if query.status is not None:
            stmt = stmt.where(CRMApprovalRequest.status == query.status)
        if query.module_id is not None:
            stmt = stmt.where(CRMApprovalRequest.module_id == query.module_id)
        if query.requested_by_me:
            stmt = stmt.where(CRMApprovalRequest.requested_by == actor.user_id)
        stmt = stmt.order_by(CRMApprovalRequest.created_at.desc(), CRMApprovalRequest.id.asc())

        resolver = self._resolver_factory(session)
        if not query.assigned_to_me:
            rows = session.scalars(stmt.offset(query.offset).limit(limit)).all()
            return [self._to_item(session, row, resolver) for row in rows]

        # Assignment depends on each request's current step policy, so it is
        # resolved per request and paginated afterwards.
        assigned: list[ApprovalInboxItem] = []
        for row in session.scalars(stmt.where(CRMApprovalRequest.status == "pending")).all():
            if self._is_assigned(session, row, actor, resolver):
                assigned.append(self._to_item(session, row, resolver))
        return assigned[query.offset : query.offset + limit]

    def get_detail(self, session: Session, actor: ActorUser, request_id: uuid.UUID) -> ApprovalDetailRead:
        _require_permission(actor, "crm.approvals.read")
        request = self._get(session, request_id)
        if request is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="approval request not found")
        decisions = session.scalars(
            select(CRMApprovalDecision)
            .where(CRMApprovalDecision.approval_request_id == request.id)
            .order_by(CRMApprovalDecision.decided_at.asc(), CRMApprovalDecision.step_index.asc())
        ).all()
        record = self._record_store_factory(session).get_record(request.record_id)
        return ApprovalDetailRead(
            request=self._to_item(session, request, self._resolver_factory(session)),
            decisions=[ApprovalDecisionRead.model_validate(item) for item in decisions],
            record=self._record_read(session, record),
        )

    def _act(
        self,
        session: Session,
        actor: ActorUser,
        request_id: uuid.UUID,
        action: str,
        comment: str | None,
    ) -> DecisionOutcome:
        request = self._get(session, request_id)
        if request is None:
            return DecisionOutcome(approval_id=request_id, status="not_found", message="approval request not found")
        if request.status != "pending":
            return self._outcome(request, "not_pending", message=f"approval request is {request.status}")

        step_index = request.current_step
        step = request.steps_snapshot[step_index]
        resolver = self._resolver_factory(session)
        if not resolver.can_act_on_step(actor, step, self._approver_context(session, request)):
            return self._outcome(request, "authorization_denied", message="actor is not an approver for the current step")
        if action in {"reject", "request_changes"} and is_empty(comment):
            return self._outcome(request, "comment_required", message=f"a comment is required to {action.replace('_', ' ')}")
        if action == "approve" and step.get("require_comment") and is_empty(comment):
            return self._outcome(request, "comment_required", message="this step requires a comment to approve")

        if not self._claim(session, request):
            session.rollback()
            return DecisionOutcome(approval_id=request_id, status="conflict", message="approval request changed concurrently")

        session.add(
            CRMApprovalDecision(
                approval_request_id=request.id,
                step_index=step_index,
                actor_id=actor.user_id,
                action=action,
                comment=comment.strip() if comment else None,
            )
        )

        transition_outcome: TransitionOutcome | None = None
        errors: list[FieldValidationError] = []
        if action == "approve" and step_index + 1 < request.total_steps:
            request.current_step = step_index + 1
            decision_status = "advanced"
        elif action == "approve":
            transition_outcome = self.applier.apply_approved_transition(session, actor, request)
            if transition_outcome.status == "conflict":
                session.rollback()
                return DecisionOutcome(
                    approval_id=request_id,
                    status="conflict",
                    transition=transition_outcome,
                    message=transition_outcome.message,
                )
            if transition_outcome.status == "committed":
                decision_status = "approved"
            else:
                errors = self._revalidation_errors(transition_outcome)
                request.validation_errors = [item.model_dump(mode="json") for item in errors]
                decision_status = "changes_requested"
            self._resolve(request, decision_status, actor)
        elif action == "reject":
            decision_status = "rejected"
            self._resolve(request, decision_status, actor)
        else:
            decision_status = "changes_requested"
            self._resolve(request, decision_status, actor)

        session.add(request)
        session.flush()
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="crm.approval_request",
            entity_id=str(request.id),
            action=f"approval.{action}",
            before={"status": "pending", "current_step": step_index},
            after={"status": request.status, "current_step": request.current_step, "comment": comment},
            correlation_id=actor.correlation_id,
            sink=get_audit_sink(session),
        )
        event_type = "crm.approval.advanced" if decision_status == "advanced" else "crm.approval.resolved"
        self._publish(request, actor.user_id, event_type)
        session.commit()
        return self._outcome(request, decision_status, transition=transition_outcome, validation_errors=errors)

    def _close(
        self,
        session: Session,
        actor: ActorUser,
        request: CRMApprovalRequest,
        final_status: str,
        action: str,
        comment: str | None,
    ) -> DecisionOutcome:
        step_index = request.current_step
        if not self._claim(session, request):
            session.rollback()
            observe_approval_decision(action, "conflict")
            return DecisionOutcome(approval_id=request.id, status="conflict", message="approval request changed concurrently")

        session.add(
            CRMApprovalDecision(
                approval_request_id=request.id,
                step_index=step_index,
                actor_id=actor.user_id,
                action=action,
                comment=comment.strip() if comment else None,
            )
        )
        self._resolve(request, final_status, actor)
        session.add(request)
        session.flush()
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="crm.approval_request",
            entity_id=str(request.id),
            action=f"approval.{action}",
            before={"status": "pending", "current_step": step_index},
            after={"status": final_status, "current_step": step_index, "comment": comment},
            correlation_id=actor.correlation_id,
            sink=get_audit_sink(session),
        )
        self._publish(request, actor.user_id, "crm.approval.resolved")
        session.commit()
        observe_approval_decision(action, final_status)
        return self._outcome(request, final_status)

    def _claim(self, session: Session, request: CRMApprovalRequest) -> bool:
        result = session.execute(
            update(CRMApprovalRequest)
            .where(
                and_(
                    CRMApprovalRequest.id == request.id,
                    CRMApprovalRequest.row_version == request.row_version,
                    CRMApprovalRequest.status == "pending",
                )
            )
            .values(row_version=CRMApprovalRequest.row_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    @staticmethod
    def _resolve(request: CRMApprovalRequest, final_status: str, actor: ActorUser) -> None:
        request.status = final_status
        request.resolved_by = actor.user_id
        request.resolved_at = utcnow()

    @staticmethod
    def _revalidation_errors(outcome: TransitionOutcome) -> list[FieldValidationError]:
        errors = list(outcome.validation_errors)
        for key in outcome.missing_fields:
            errors.append(FieldValidationError(field=key, message="This field is required"))
        if outcome.blueprint_error:
            errors.append(FieldValidationError(field="stage", message=outcome.blueprint_error))
        return errors

    def _get(self, session: Session, request_id: uuid.UUID) -> CRMApprovalRequest | None:
        return session.scalar(
            select(CRMApprovalRequest)
            .where(CRMApprovalRequest.id == request_id)
            .execution_options(populate_existing=True)
        )

    def _approver_context(self, session: Session, request: CRMApprovalRequest) -> ApproverContext:
        record = self._record_store_factory(session).get_record(request.record_id)
        return ApproverContext(
            record_id=request.record_id,
            module_id=request.module_id,
            owner_user_id=record.owner_user_id if record is not None else None,
            requested_by=request.requested_by,
        )

    def _is_assigned(
        self,
        session: Session,
        request: CRMApprovalRequest,
        actor: ActorUser,
        resolver: RolePermissionResolver,
    ) -> bool:
        try:
            step = request.steps_snapshot[request.current_step]
            return resolver.can_act_on_step(actor, step, self._approver_context(session, request))
        except (IndexError, ValueError) as exc:
            logger.warning(
                "approval.approver_unresolved",
                extra={"approval_id": str(request.id), "error": str(exc)[:500]},
            )
            return False

    def _to_item(
        self,
        session: Session,
        request: CRMApprovalRequest,
        resolver: RolePermissionResolver,
    ) -> ApprovalInboxItem:
        item = ApprovalInboxItem.model_validate(request)
        if request.status != "pending" or request.current_step >= len(request.steps_snapshot):
            return item
        step = request.steps_snapshot[request.current_step]
        try:
            assignment = resolver.assignment_for(step, self._approver_context(session, request))
        except ValueError as exc:
            logger.warning(
                "approval.approver_unresolved",
                extra={"approval_id": str(request.id), "error": str(exc)[:500]},
            )
            return item.model_copy(update={"current_step_definition": step})
        return item.model_copy(
            update={"current_step_definition": step, "assigned_approver_id": assignment.user_id}
        )

    @staticmethod
    def _record_read(session: Session, record: RecordSnapshot | None) -> RecordRead | None:
        if record is None:
            return None
        row = session.get(CRMRecord, record.id)
        return RecordRead.model_validate(row) if row is not None else None

    @staticmethod
    def _outcome(request: CRMApprovalRequest, decision_status: str, **fields: Any) -> DecisionOutcome:
        return DecisionOutcome(
            approval_id=request.id,
            status=decision_status,
            request_status=request.status,
            current_step=request.current_step,
            **fields,
        )

    @staticmethod
    def _publish(request: CRMApprovalRequest, actor_user_id: str, event_type: str) -> None:
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": event_type,
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor_user_id,
                "version": 1,
                "payload": {
                    "approval_id": str(request.id),
                    "record_id": str(request.record_id),
                    "module_id": str(request.module_id),
                    "status": request.status,
                    "current_step": request.current_step,
                    "requested_by": request.requested_by,
                },
            }
        )
