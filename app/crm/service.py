from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.crm.models import (
    CRMApprovalProcess,
    CRMBlueprintStage,
    CRMBlueprintTransition,
    CRMModule,
    CRMModuleField,
    CRMRecord,
    CRMUserProfile,
    CRMValidationRule,
    utcnow,
)
from app.crm.repositories import SYSTEM_FIELDS, SqlModuleMetadata, SqlRecordStore, to_snapshot
from app.crm.schemas import (
    ApprovalProcessCreate,
    ApprovalProcessRead,
    ApprovalProcessUpdate,
    BlueprintRead,
    ModuleCreate,
    ModuleFieldCreate,
    ModuleFieldRead,
    ModuleRead,
    RecordCreate,
    RecordRead,
    RecordUpdate,
    StageCreate,
    StageRead,
    TransitionCreate,
    TransitionRead,
    TransitionUpdate,
    UserProfileRead,
    UserProfileUpsert,
    ValidationRuleCreate,
    ValidationRuleRead,
    ValidationRuleUpdate,
)
from app.crm.validation import ValidationRuleEngine


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str]
    roles: set[str] = field(default_factory=set)
    is_super_admin: bool = False
    correlation_id: str | None = None


def has_permission(actor_user: ActorUser, permission: str) -> bool:
    return actor_user.is_super_admin or permission in actor_user.permissions


def _require_permission(actor_user: ActorUser, permission: str) -> None:
    if not has_permission(actor_user, permission):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _not_found(entity: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{entity} not found")


def _publish(actor_user: ActorUser, event_type: str, payload: dict[str, Any]) -> None:
    events.publish(
        {
            "event_id": str(uuid.uuid4()),
            "event_type": event_type,
            "occurred_at": utcnow().isoformat(),
            "actor_user_id": actor_user.user_id,
            "version": 1,
            "payload": payload,
        }
    )


def _get_module(session: Session, module_id: uuid.UUID) -> CRMModule:
    module = session.scalar(
        select(CRMModule).where(CRMModule.id == module_id).options(selectinload(CRMModule.fields))
    )
    if module is None:
        raise _not_found("Module")
    return module


class ModuleService:
    entity_type = "crm.module"

    def create_module(self, session: Session, dto: ModuleCreate, actor_user: ActorUser) -> ModuleRead:
        _require_permission(actor_user, "crm.blueprints.manage")
        existing = session.scalar(select(CRMModule.id).where(CRMModule.key == dto.key))
        if existing is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"module '{dto.key}' already exists")

        module = CRMModule(key=dto.key, name=dto.name)
        session.add(module)
        session.flush()
        session.refresh(module)
        read_model = ModuleRead.model_validate(module)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(module.id),
            action="create",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            sink=audit.get_audit_sink(session),
        )
        session.commit()
        return read_model

    def get_module(self, session: Session, module_id: uuid.UUID, actor_user: ActorUser) -> ModuleRead:
        _require_permission(actor_user, "crm.blueprints.read")
        return ModuleRead.model_validate(_get_module(session, module_id))

    def add_field(
        self,
        session: Session,
        module_id: uuid.UUID,
        dto: ModuleFieldCreate,
        actor_user: ActorUser,
    ) -> ModuleFieldRead:
        _require_permission(actor_user, "crm.blueprints.manage")
        module = _get_module(session, module_id)
        if dto.key in SYSTEM_FIELDS:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"'{dto.key}' is a reserved field key")
        if any(item.key == dto.key for item in module.fields):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"field '{dto.key}' already exists")

        module_field = CRMModuleField(module_id=module.id, key=dto.key, label=dto.label, field_type=dto.field_type)
        session.add(module_field)
        session.flush()
        read_model = ModuleFieldRead.model_validate(module_field)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="crm.module_field",
            entity_id=str(module_field.id),
            action="create",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            sink=audit.get_audit_sink(session),
        )
        session.commit()
        return read_model


class BlueprintService:
    """Stage and transition administration for a module's blueprint."""

    entity_type = "crm.blueprint"

    def get_blueprint(self, session: Session, module_id: uuid.UUID, actor_user: ActorUser) -> BlueprintRead:
        _require_permission(actor_user, "crm.blueprints.read")
        _get_module(session, module_id)
        stages = session.scalars(
            select(CRMBlueprintStage)
            .where(CRMBlueprintStage.module_id == module_id)
            .order_by(CRMBlueprintStage.position.asc(), CRMBlueprintStage.created_at.asc())
        ).all()
        transitions = session.scalars(
            select(CRMBlueprintTransition)
            .where(CRMBlueprintTransition.module_id == module_id)
            .order_by(CRMBlueprintTransition.created_at.asc())
        ).all()
        return BlueprintRead(
            module_id=module_id,
            stages=[StageRead.model_validate(item) for item in stages],
            transitions=[TransitionRead.model_validate(item) for item in transitions],
        )

    def add_stage(self, session: Session, module_id: uuid.UUID, dto: StageCreate, actor_user: ActorUser) -> StageRead:
        _require_permission(actor_user, "crm.blueprints.manage")
        _get_module(session, module_id)
        if self._get_stage(session, module_id, dto.key) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"stage '{dto.key}' already exists")

        position = dto.position
        if position is None:
            current_max = session.scalar(
                select(func.max(CRMBlueprintStage.position)).where(CRMBlueprintStage.module_id == module_id)
            )
            position = 0 if current_max is None else current_max + 1

        stage = CRMBlueprintStage(module_id=module_id, key=dto.key, label=dto.label, color=dto.color, position=position)
        session.add(stage)
        session.flush()
        read_model = StageRead.model_validate(stage)
        self._audit(session, actor_user, str(stage.id), "stage.create", None, read_model.model_dump(mode="json"))
        session.commit()
        return read_model

    def delete_stage(self, session: Session, module_id: uuid.UUID, stage_key: str, actor_user: ActorUser) -> None:
        _require_permission(actor_user, "crm.blueprints.manage")
        stage = self._get_stage(session, module_id, stage_key)
        if stage is None:
            raise _not_found("Stage")

        referenced = session.scalar(
            select(CRMBlueprintTransition.id).where(
                and_(
                    CRMBlueprintTransition.module_id == module_id,
                    or_(CRMBlueprintTransition.from_stage == stage_key, CRMBlueprintTransition.to_stage == stage_key),
                )
            )
        )
        if referenced is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="stage is used by a transition")
        in_use = session.scalar(
            select(CRMRecord.id).where(and_(CRMRecord.module_id == module_id, CRMRecord.stage == stage_key)).limit(1)
        )
        if in_use is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="stage is used by records")

        before = StageRead.model_validate(stage).model_dump(mode="json")
        session.delete(stage)
        self._audit(session, actor_user, str(stage.id), "stage.delete", before, None)
        session.commit()

    def add_transition(
        self,
        session: Session,
        module_id: uuid.UUID,
        dto: TransitionCreate,
        actor_user: ActorUser,
    ) -> TransitionRead:
        _require_permission(actor_user, "crm.blueprints.manage")
        _get_module(session, module_id)
        for key in (dto.from_stage, dto.to_stage):
            if self._get_stage(session, module_id, key) is None:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"stage '{key}' does not exist",
                )
        self._check_process(session, module_id, dto.approval_process_id)
        required_fields = self._normalize_required_fields(session, module_id, dto.required_fields)

        transition = CRMBlueprintTransition(
            module_id=module_id,
            from_stage=dto.from_stage,
            to_stage=dto.to_stage,
            required_fields=required_fields,
            requires_approval=dto.requires_approval,
            require_reason=dto.require_reason,
            approval_process_id=dto.approval_process_id,
        )
        session.add(transition)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"transition from '{dto.from_stage}' to '{dto.to_stage}' already exists",
            ) from exc

        read_model = TransitionRead.model_validate(transition)
        self._audit(session, actor_user, str(transition.id), "transition.create", None, read_model.model_dump(mode="json"))
        session.commit()
        return read_model

    def update_transition(
        self,
        session: Session,
        module_id: uuid.UUID,
        transition_id: uuid.UUID,
        dto: TransitionUpdate,
        actor_user: ActorUser,
    ) -> TransitionRead:
        _require_permission(actor_user, "crm.blueprints.manage")
        transition = self._get_transition(session, module_id, transition_id)
        before = TransitionRead.model_validate(transition).model_dump(mode="json")

        changes = dto.model_dump(exclude_unset=True)
        if "approval_process_id" in changes:
            self._check_process(session, module_id, dto.approval_process_id)
            transition.approval_process_id = dto.approval_process_id
        if dto.required_fields is not None:
            transition.required_fields = self._normalize_required_fields(session, module_id, dto.required_fields)
        if dto.requires_approval is not None:
            transition.requires_approval = dto.requires_approval
        if dto.require_reason is not None:
            transition.require_reason = dto.require_reason

        session.add(transition)
        session.flush()
        read_model = TransitionRead.model_validate(transition)
        self._audit(session, actor_user, str(transition.id), "transition.update", before, read_model.model_dump(mode="json"))
        session.commit()
        return read_model

    def delete_transition(
        self,
        session: Session,
        module_id: uuid.UUID,
        transition_id: uuid.UUID,
        actor_user: ActorUser,
    ) -> None:
        _require_permission(actor_user, "crm.blueprints.manage")
        transition = self._get_transition(session, module_id, transition_id)
        before = TransitionRead.model_validate(transition).model_dump(mode="json")
        session.delete(transition)
        self._audit(session, actor_user, str(transition_id), "transition.delete", before, None)
        session.commit()

    @staticmethod
    def _get_stage(session: Session, module_id: uuid.UUID, key: str) -> CRMBlueprintStage | None:
        return session.scalar(
            select(CRMBlueprintStage).where(
                and_(CRMBlueprintStage.module_id == module_id, CRMBlueprintStage.key == key)
            )
        )

    @staticmethod
    def _get_transition(session: Session, module_id: uuid.UUID, transition_id: uuid.UUID) -> CRMBlueprintTransition:
        transition = session.scalar(
            select(CRMBlueprintTransition).where(
                and_(CRMBlueprintTransition.id == transition_id, CRMBlueprintTransition.module_id == module_id)
            )
        )
        if transition is None:
            raise _not_found("Transition")
        return transition

    @staticmethod
    def _check_process(session: Session, module_id: uuid.UUID, process_id: uuid.UUID | None) -> None:
        if process_id is None:
            return
        process = session.get(CRMApprovalProcess, process_id)
        if process is None or process.module_id != module_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="approval process does not belong to this module",
            )

    @staticmethod
    def _normalize_required_fields(session: Session, module_id: uuid.UUID, required_fields: list) -> list[dict[str, Any]]:
        labels = SqlModuleMetadata(session).labels(module_id)
        normalized: list[dict[str, Any]] = []
        for item in required_fields:
            if item.key not in labels:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"field '{item.key}' is not defined on the module",
                )
            normalized.append(
                {"key": item.key, "label": item.label or labels[item.key], "type": item.type}
            )
        return normalized

    def _audit(
        self,
        session: Session,
        actor_user: ActorUser,
        entity_id: str,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=entity_id,
            action=action,
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
            sink=audit.get_audit_sink(session),
        )


class ValidationRuleService:
    entity_type = "crm.validation_rule"

    def list_rules(
        self,
        session: Session,
        module_id: uuid.UUID,
        actor_user: ActorUser,
        *,
        include_disabled: bool = True,
    ) -> list[ValidationRuleRead]:
        _require_permission(actor_user, "crm.blueprints.read")
        stmt = select(CRMValidationRule).where(
            and_(CRMValidationRule.module_id == module_id, CRMValidationRule.deleted_at.is_(None))
        )
        if not include_disabled:
            stmt = stmt.where(CRMValidationRule.is_enabled.is_(True))
        rows = session.scalars(
            stmt.order_by(
                CRMValidationRule.priority.asc(),
                CRMValidationRule.sequence.asc(),
                CRMValidationRule.created_at.asc(),
            )
        ).all()
        return [ValidationRuleRead.model_validate(item) for item in rows]

    def create_rule(
        self,
        session: Session,
        module_id: uuid.UUID,
        dto: ValidationRuleCreate,
        actor_user: ActorUser,
    ) -> ValidationRuleRead:
        _require_permission(actor_user, "crm.validation_rules.manage")
        _get_module(session, module_id)
        self._check_fields(session, module_id, dto)

        current_max = session.scalar(
            select(func.max(CRMValidationRule.sequence)).where(CRMValidationRule.module_id == module_id)
        )
        rule = CRMValidationRule(
            module_id=module_id,
            name=dto.name,
            description=dto.description,
            target_field=dto.target_field,
            rule_type=dto.rule_type,
            config=dto.config,
            conditions=dto.conditions,
            stage_triggers=dto.stage_triggers.model_dump() if dto.stage_triggers else None,
            error_message=dto.error_message,
            applies_on=list(dto.applies_on),
            is_enabled=dto.is_enabled,
            priority=dto.priority,
            sequence=0 if current_max is None else current_max + 1,
            created_by=actor_user.user_id,
        )
        session.add(rule)
        session.flush()
        read_model = ValidationRuleRead.model_validate(rule)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="create",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            sink=audit.get_audit_sink(session),
        )
        session.commit()
        return read_model

    def update_rule(
        self,
        session: Session,
        module_id: uuid.UUID,
        rule_id: uuid.UUID,
        dto: ValidationRuleUpdate,
        actor_user: ActorUser,
    ) -> ValidationRuleRead:
        _require_permission(actor_user, "crm.validation_rules.manage")
        rule = self._get_rule(session, module_id, rule_id)
        before = ValidationRuleRead.model_validate(rule)

        merged = before.model_dump(
            include={
                "name",
                "description",
                "target_field",
                "rule_type",
                "config",
                "conditions",
                "stage_triggers",
                "error_message",
                "applies_on",
                "is_enabled",
                "priority",
            }
        )
        merged.update(dto.model_dump(exclude_unset=True))
        try:
            candidate = ValidationRuleCreate.model_validate(merged)
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=exc.errors(include_url=False, include_context=False),
            ) from exc
        self._check_fields(session, module_id, candidate)

        rule.name = candidate.name
        rule.description = candidate.description
        rule.target_field = candidate.target_field
        rule.rule_type = candidate.rule_type
        rule.config = candidate.config
        rule.conditions = candidate.conditions
        rule.stage_triggers = candidate.stage_triggers.model_dump() if candidate.stage_triggers else None
        rule.error_message = candidate.error_message
        rule.applies_on = list(candidate.applies_on)
        rule.is_enabled = candidate.is_enabled
        rule.priority = candidate.priority
        session.add(rule)
        session.flush()
        read_model = ValidationRuleRead.model_validate(rule)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="update",
            before=before.model_dump(mode="json"),
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            sink=audit.get_audit_sink(session),
        )
        session.commit()
        return read_model

    def delete_rule(self, session: Session, module_id: uuid.UUID, rule_id: uuid.UUID, actor_user: ActorUser) -> None:
        _require_permission(actor_user, "crm.validation_rules.manage")
        rule = self._get_rule(session, module_id, rule_id)
        rule.deleted_at = utcnow()
        session.add(rule)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(rule.id),
            action="soft_delete",
            before={"deleted_at": None},
            after={"deleted_at": rule.deleted_at.isoformat()},
            correlation_id=actor_user.correlation_id,
            sink=audit.get_audit_sink(session),
        )
        session.commit()

    @staticmethod
    def _get_rule(session: Session, module_id: uuid.UUID, rule_id: uuid.UUID) -> CRMValidationRule:
        rule = session.scalar(
            select(CRMValidationRule).where(
                and_(
                    CRMValidationRule.id == rule_id,
                    CRMValidationRule.module_id == module_id,
                    CRMValidationRule.deleted_at.is_(None),
                )
            )
        )
        if rule is None:
            raise _not_found("Validation rule")
        return rule

    @staticmethod
    def _check_fields(session: Session, module_id: uuid.UUID, dto: ValidationRuleCreate) -> None:
        known = SqlModuleMetadata(session).field_keys(module_id)
        referenced = [dto.target_field]
        for key in ("compare_field", "scope_field"):
            if dto.config.get(key):
                referenced.append(dto.config[key])
        for key in referenced:
            if key not in known:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"field '{key}' is not defined on the module",
                )


class ApprovalProcessService:
    entity_type = "crm.approval_process"

    def list_processes(self, session: Session, module_id: uuid.UUID, actor_user: ActorUser) -> list[ApprovalProcessRead]:
        _require_permission(actor_user, "crm.blueprints.read")
        rows = session.scalars(
            select(CRMApprovalProcess)
            .where(CRMApprovalProcess.module_id == module_id)
            .order_by(CRMApprovalProcess.created_at.asc())
        ).all()
        return [ApprovalProcessRead.model_validate(item) for item in rows]

    def create_process(
        self,
        session: Session,
        module_id: uuid.UUID,
        dto: ApprovalProcessCreate,
        actor_user: ActorUser,
    ) -> ApprovalProcessRead:
        _require_permission(actor_user, "crm.approval_processes.manage")
        _get_module(session, module_id)
        process = CRMApprovalProcess(module_id=module_id, **dto.model_dump())
        session.add(process)
        session.flush()
        read_model = ApprovalProcessRead.model_validate(process)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(process.id),
            action="create",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            sink=audit.get_audit_sink(session),
        )
        session.commit()
        return read_model

    def update_process(
        self,
        session: Session,
        module_id: uuid.UUID,
        process_id: uuid.UUID,
        dto: ApprovalProcessUpdate,
        actor_user: ActorUser,
    ) -> ApprovalProcessRead:
        """Update a process; pending requests keep the steps they were created with."""
        _require_permission(actor_user, "crm.approval_processes.manage")
        process = session.get(CRMApprovalProcess, process_id)
        if process is None or process.module_id != module_id:
            raise _not_found("Approval process")
        before = ApprovalProcessRead.model_validate(process).model_dump(mode="json")
        for key, value in dto.model_dump(exclude_unset=True).items():
            setattr(process, key, value)
        session.add(process)
        session.flush()
        read_model = ApprovalProcessRead.model_validate(process)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(process.id),
            action="update",
            before=before,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            sink=audit.get_audit_sink(session),
        )
        session.commit()
        return read_model


class RecordService:
    entity_type = "crm.record"

    def __init__(self, validation_engine: ValidationRuleEngine | None = None) -> None:
        self.validation_engine = validation_engine or ValidationRuleEngine()

    def create_record(
        self,
        session: Session,
        module_id: uuid.UUID,
        dto: RecordCreate,
        actor_user: ActorUser,
    ) -> RecordRead:
        _require_permission(actor_user, "crm.records.write")
        _get_module(session, module_id)

        stages = session.scalars(
            select(CRMBlueprintStage.key)
            .where(CRMBlueprintStage.module_id == module_id)
            .order_by(CRMBlueprintStage.position.asc(), CRMBlueprintStage.created_at.asc())
        ).all()
        stage = dto.stage
        if stage is None:
            stage = stages[0] if stages else None
        elif stage not in stages:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"stage '{stage}' does not exist",
            )

        values = {**dto.data, "title": dto.title, "stage": stage, "owner_user_id": dto.owner_user_id}
        errors = self.validation_engine.validate(session, module_id, "create", {}, values)
        if errors:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={"message": "record failed validation", "errors": [item.model_dump(mode="json") for item in errors]},
            )

        snapshot = SqlRecordStore(session).create_record(
            module_id,
            title=dto.title,
            stage=stage,
            owner_user_id=dto.owner_user_id,
            data={key: value for key, value in dto.data.items() if key not in SYSTEM_FIELDS},
            created_by=actor_user.user_id,
        )
        record = session.get(CRMRecord, snapshot.id)
        read_model = RecordRead.model_validate(record)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(snapshot.id),
            action="create",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            sink=audit.get_audit_sink(session),
        )
        _publish(
            actor_user,
            "crm.record.created",
            {"record_id": str(snapshot.id), "module_id": str(module_id), "stage": stage},
        )
        session.commit()
        return read_model

    def get_record(self, session: Session, record_id: uuid.UUID, actor_user: ActorUser) -> RecordRead:
        _require_permission(actor_user, "crm.records.read")
        record = session.get(CRMRecord, record_id)
        if record is None:
            raise _not_found("Record")
        return RecordRead.model_validate(record)

    def update_record(
        self,
        session: Session,
        record_id: uuid.UUID,
        dto: RecordUpdate,
        actor_user: ActorUser,
    ) -> RecordRead:
        _require_permission(actor_user, "crm.records.write")
        store = SqlRecordStore(session)
        current = store.get_record(record_id)
        if current is None:
            raise _not_found("Record")
        if current.row_version != dto.row_version:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Record was modified by another request")

        changes = {key: value for key, value in dto.data.items() if key not in SYSTEM_FIELDS}
        if dto.title is not None:
            changes["title"] = dto.title
        if "owner_user_id" in dto.model_fields_set:
            changes["owner_user_id"] = dto.owner_user_id

        errors = self.validation_engine.validate(
            session,
            current.module_id,
            "update",
            current.values(),
            changes,
            record_id=record_id,
        )
        if errors:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={"message": "record failed validation", "errors": [item.model_dump(mode="json") for item in errors]},
            )

        new_version = store.update_fields(record_id, changes, expected_version=dto.row_version)
        if new_version is None:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Record was modified by another request")

        record = session.get(CRMRecord, record_id)
        session.refresh(record)
        read_model = RecordRead.model_validate(record)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(record_id),
            action="update",
            before=current.values(),
            after=to_snapshot(record).values(),
            correlation_id=actor_user.correlation_id,
            sink=audit.get_audit_sink(session),
        )
        _publish(
            actor_user,
            "crm.record.updated",
            {"record_id": str(record_id), "row_version": new_version, "fields": sorted(changes)},
        )
        session.commit()
        return read_model


class UserDirectoryService:
    entity_type = "crm.user_profile"

    def upsert_profile(
        self,
        session: Session,
        user_id: str,
        dto: UserProfileUpsert,
        actor_user: ActorUser,
    ) -> UserProfileRead:
        _require_permission(actor_user, "crm.users.manage")
        if dto.manager_user_id == user_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="a user cannot be their own manager",
            )
        profile = session.get(CRMUserProfile, user_id)
        before = UserProfileRead.model_validate(profile).model_dump(mode="json") if profile is not None else None
        if profile is None:
            profile = CRMUserProfile(user_id=user_id)
        for key, value in dto.model_dump(exclude_unset=True).items():
            setattr(profile, key, value)
        session.add(profile)
        session.flush()
        read_model = UserProfileRead.model_validate(profile)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=user_id,
            action="upsert",
            before=before,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
            sink=audit.get_audit_sink(session),
        )
        session.commit()
        return read_model


module_service = ModuleService()
blueprint_service = BlueprintService()
validation_rule_service = ValidationRuleService()
approval_process_service = ApprovalProcessService()
record_service = RecordService()
user_directory_service = UserDirectoryService()
