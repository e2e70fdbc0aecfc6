from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.crm.gate import transition_gate
from app.crm.schemas import (
    ApprovalCommentRequest,
    ApprovalDetailRead,
    ApprovalInboxItem,
    ApprovalInboxQuery,
    ApprovalProcessCreate,
    ApprovalProcessRead,
    ApprovalProcessUpdate,
    AvailableTransitionsRead,
    BlueprintRead,
    BulkDecisionRequest,
    DecisionOutcome,
    DecisionRequest,
    ModuleCreate,
    ModuleFieldCreate,
    ModuleFieldRead,
    ModuleRead,
    RecordCreate,
    RecordRead,
    RecordUpdate,
    ResubmitRequest,
    StageCreate,
    StageRead,
    TransitionCreate,
    TransitionOutcome,
    TransitionRead,
    TransitionRequest,
    TransitionUpdate,
    UserProfileRead,
    UserProfileUpsert,
    ValidationRuleCreate,
    ValidationRuleRead,
    ValidationRuleUpdate,
)
from app.crm.service import (
    ActorUser,
    approval_process_service,
    blueprint_service,
    module_service,
    record_service,
    user_directory_service,
    validation_rule_service,
)

modules_router = APIRouter(prefix="/api/crm", tags=["crm.modules"])
records_router = APIRouter(prefix="/api/crm", tags=["crm.records"])
transitions_router = APIRouter(prefix="/api/crm", tags=["crm.transitions"])
approvals_router = APIRouter(prefix="/api/crm", tags=["crm.approvals"])
users_router = APIRouter(prefix="/api/crm", tags=["crm.users"])

approval_engine = transition_gate.approval_engine


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=get_correlation_id(),
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    normalized_roles = {str(role).lower() for role in auth_user.roles}
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles) | set(auth_user.permissions),
        roles=normalized_roles,
        is_super_admin="admin" in normalized_roles or "system.admin" in normalized_roles,
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    detail = exc.detail
    message = detail.get("message", str(detail)) if isinstance(detail, dict) else str(detail)
    return error_response(request, status_code=exc.status_code, code=code, message=message, details=detail)


@modules_router.post("/modules", response_model=ModuleRead, status_code=status.HTTP_201_CREATED)
def create_module(
    request: Request,
    dto: ModuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ModuleRead | JSONResponse:
    try:
        return module_service.create_module(db, dto, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_module_create_failed")


@modules_router.get("/modules/{module_id}", response_model=ModuleRead)
def get_module(
    request: Request,
    module_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ModuleRead | JSONResponse:
    try:
        return module_service.get_module(db, module_id, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_module_get_failed")


@modules_router.post("/modules/{module_id}/fields", response_model=ModuleFieldRead, status_code=status.HTTP_201_CREATED)
def add_module_field(
    request: Request,
    module_id: uuid.UUID,
    dto: ModuleFieldCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ModuleFieldRead | JSONResponse:
    try:
        return module_service.add_field(db, module_id, dto, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_module_field_create_failed")


@modules_router.get("/modules/{module_id}/blueprint", response_model=BlueprintRead)
def get_blueprint(
    request: Request,
    module_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BlueprintRead | JSONResponse:
    try:
        return blueprint_service.get_blueprint(db, module_id, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_blueprint_get_failed")


@modules_router.post(
    "/modules/{module_id}/blueprint/stages",
    response_model=StageRead,
    status_code=status.HTTP_201_CREATED,
)
def add_stage(
    request: Request,
    module_id: uuid.UUID,
    dto: StageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageRead | JSONResponse:
    try:
        return blueprint_service.add_stage(db, module_id, dto, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_blueprint_stage_create_failed")


@modules_router.delete("/modules/{module_id}/blueprint/stages/{stage_key}", status_code=status.HTTP_200_OK, response_model=None)
def delete_stage(
    request: Request,
    module_id: uuid.UUID,
    stage_key: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        blueprint_service.delete_stage(db, module_id, stage_key, user)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "crm_blueprint_stage_delete_failed")


@modules_router.post(
    "/modules/{module_id}/blueprint/transitions",
    response_model=TransitionRead,
    status_code=status.HTTP_201_CREATED,
)
def add_transition(
    request: Request,
    module_id: uuid.UUID,
    dto: TransitionCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionRead | JSONResponse:
    try:
        return blueprint_service.add_transition(db, module_id, dto, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_blueprint_transition_create_failed")


@modules_router.patch("/modules/{module_id}/blueprint/transitions/{transition_id}", response_model=TransitionRead)
def update_transition(
    request: Request,
    module_id: uuid.UUID,
    transition_id: uuid.UUID,
    dto: TransitionUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionRead | JSONResponse:
    try:
        return blueprint_service.update_transition(db, module_id, transition_id, dto, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_blueprint_transition_update_failed")


@modules_router.delete(
    "/modules/{module_id}/blueprint/transitions/{transition_id}",
    status_code=status.HTTP_200_OK,
    response_model=None,
)
def delete_transition(
    request: Request,
    module_id: uuid.UUID,
    transition_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        blueprint_service.delete_transition(db, module_id, transition_id, user)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "crm_blueprint_transition_delete_failed")


@modules_router.get("/modules/{module_id}/validation-rules", response_model=list[ValidationRuleRead])
def list_validation_rules(
    request: Request,
    module_id: uuid.UUID,
    include_disabled: bool = Query(default=True),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ValidationRuleRead] | JSONResponse:
    try:
        return validation_rule_service.list_rules(db, module_id, user, include_disabled=include_disabled)
    except HTTPException as exc:
        return _failed(request, exc, "crm_validation_rule_list_failed")


@modules_router.post(
    "/modules/{module_id}/validation-rules",
    response_model=ValidationRuleRead,
    status_code=status.HTTP_201_CREATED,
)
def create_validation_rule(
    request: Request,
    module_id: uuid.UUID,
    dto: ValidationRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ValidationRuleRead | JSONResponse:
    try:
        return validation_rule_service.create_rule(db, module_id, dto, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_validation_rule_create_failed")


@modules_router.patch("/modules/{module_id}/validation-rules/{rule_id}", response_model=ValidationRuleRead)
def update_validation_rule(
    request: Request,
    module_id: uuid.UUID,
    rule_id: uuid.UUID,
    dto: ValidationRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ValidationRuleRead | JSONResponse:
    try:
        return validation_rule_service.update_rule(db, module_id, rule_id, dto, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_validation_rule_update_failed")


@modules_router.delete(
    "/modules/{module_id}/validation-rules/{rule_id}",
    status_code=status.HTTP_200_OK,
    response_model=None,
)
def delete_validation_rule(
    request: Request,
    module_id: uuid.UUID,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        validation_rule_service.delete_rule(db, module_id, rule_id, user)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "crm_validation_rule_delete_failed")


@modules_router.get("/modules/{module_id}/approval-processes", response_model=list[ApprovalProcessRead])
def list_approval_processes(
    request: Request,
    module_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ApprovalProcessRead] | JSONResponse:
    try:
        return approval_process_service.list_processes(db, module_id, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_approval_process_list_failed")


@modules_router.post(
    "/modules/{module_id}/approval-processes",
    response_model=ApprovalProcessRead,
    status_code=status.HTTP_201_CREATED,
)
def create_approval_process(
    request: Request,
    module_id: uuid.UUID,
    dto: ApprovalProcessCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ApprovalProcessRead | JSONResponse:
    try:
        return approval_process_service.create_process(db, module_id, dto, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_approval_process_create_failed")


@modules_router.patch("/modules/{module_id}/approval-processes/{process_id}", response_model=ApprovalProcessRead)
def update_approval_process(
    request: Request,
    module_id: uuid.UUID,
    process_id: uuid.UUID,
    dto: ApprovalProcessUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ApprovalProcessRead | JSONResponse:
    try:
        return approval_process_service.update_process(db, module_id, process_id, dto, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_approval_process_update_failed")


@records_router.post("/modules/{module_id}/records", response_model=RecordRead, status_code=status.HTTP_201_CREATED)
def create_record(
    request: Request,
    module_id: uuid.UUID,
    dto: RecordCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RecordRead | JSONResponse:
    try:
        return record_service.create_record(db, module_id, dto, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_record_create_failed")


@records_router.get("/records/{record_id}", response_model=RecordRead)
def get_record(
    request: Request,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RecordRead | JSONResponse:
    try:
        return record_service.get_record(db, record_id, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_record_get_failed")


@records_router.patch("/records/{record_id}", response_model=RecordRead)
def patch_record(
    request: Request,
    record_id: uuid.UUID,
    dto: RecordUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> RecordRead | JSONResponse:
    try:
        return record_service.update_record(db, record_id, dto, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_record_update_failed")


@transitions_router.get("/records/{record_id}/transitions", response_model=AvailableTransitionsRead)
def list_available_transitions(
    request: Request,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AvailableTransitionsRead | JSONResponse:
    try:
        return transition_gate.list_available(db, user, record_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_transition_list_failed")


@transitions_router.post("/records/{record_id}/transitions/check", response_model=TransitionOutcome)
def check_transition(
    request: Request,
    record_id: uuid.UUID,
    dto: TransitionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionOutcome | JSONResponse:
    try:
        return transition_gate.check_transition(db, user, record_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_transition_check_failed")


@transitions_router.post("/records/{record_id}/transitions/execute", response_model=TransitionOutcome)
def execute_transition(
    request: Request,
    record_id: uuid.UUID,
    dto: TransitionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionOutcome | JSONResponse:
    try:
        return transition_gate.execute_transition(db, user, record_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_transition_execute_failed")


@approvals_router.get("/approvals", response_model=list[ApprovalInboxItem])
def list_approvals(
    request: Request,
    status_filter: str = Query(
        default="pending",
        alias="status",
        pattern="^(pending|approved|rejected|changes_requested|cancelled|expired|all)$",
    ),
    module_id: uuid.UUID | None = Query(default=None),
    assigned_to_me: bool = Query(default=False),
    requested_by_me: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ApprovalInboxItem] | JSONResponse:
    query = ApprovalInboxQuery(
        status=None if status_filter == "all" else status_filter,
        module_id=module_id,
        assigned_to_me=assigned_to_me,
        requested_by_me=requested_by_me,
        limit=limit,
        offset=offset,
    )
    try:
        return approval_engine.list_inbox(db, user, query)
    except HTTPException as exc:
        return _failed(request, exc, "crm_approval_list_failed")


@approvals_router.post("/approvals/bulk-decide", response_model=list[DecisionOutcome])
def bulk_decide(
    request: Request,
    dto: BulkDecisionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DecisionOutcome] | JSONResponse:
    try:
        return approval_engine.bulk_act(db, user, dto.approval_ids, dto.action, dto.comment)
    except HTTPException as exc:
        return _failed(request, exc, "crm_approval_bulk_decide_failed")


@approvals_router.get("/approvals/{approval_id}", response_model=ApprovalDetailRead)
def get_approval(
    request: Request,
    approval_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ApprovalDetailRead | JSONResponse:
    try:
        return approval_engine.get_detail(db, user, approval_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_approval_get_failed")


@approvals_router.post("/approvals/{approval_id}/decide", response_model=DecisionOutcome)
def decide_approval(
    request: Request,
    approval_id: uuid.UUID,
    dto: DecisionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DecisionOutcome | JSONResponse:
    try:
        return approval_engine.act(db, user, approval_id, dto.action, dto.comment)
    except HTTPException as exc:
        return _failed(request, exc, "crm_approval_decide_failed")


@approvals_router.post("/approvals/{approval_id}/cancel", response_model=DecisionOutcome)
def cancel_approval(
    request: Request,
    approval_id: uuid.UUID,
    dto: ApprovalCommentRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DecisionOutcome | JSONResponse:
    try:
        return approval_engine.cancel(db, user, approval_id, dto.comment)
    except HTTPException as exc:
        return _failed(request, exc, "crm_approval_cancel_failed")


@approvals_router.post("/approvals/{approval_id}/expire", response_model=DecisionOutcome)
def expire_approval(
    request: Request,
    approval_id: uuid.UUID,
    dto: ApprovalCommentRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DecisionOutcome | JSONResponse:
    try:
        return approval_engine.expire(db, user, approval_id, dto.comment)
    except HTTPException as exc:
        return _failed(request, exc, "crm_approval_expire_failed")


@approvals_router.post("/approvals/{approval_id}/resubmit", response_model=TransitionOutcome)
def resubmit_approval(
    request: Request,
    approval_id: uuid.UUID,
    dto: ResubmitRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionOutcome | JSONResponse:
    try:
        return approval_engine.resubmit(db, user, approval_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_approval_resubmit_failed")


@users_router.put("/users/{user_id}/profile", response_model=UserProfileRead)
def upsert_user_profile(
    request: Request,
    user_id: str,
    dto: UserProfileUpsert,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserProfileRead | JSONResponse:
    try:
        return user_directory_service.upsert_profile(db, user_id, dto, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_user_profile_upsert_failed")
