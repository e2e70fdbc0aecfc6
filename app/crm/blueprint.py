from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.crm.models import CRMBlueprintStage, CRMBlueprintTransition
from app.crm.schemas import FieldRequirement


@dataclass(frozen=True, slots=True)
class StageDef:
    key: str
    label: str
    color: str | None
    position: int


@dataclass(frozen=True, slots=True)
class TransitionDef:
    id: uuid.UUID | None
    from_stage: str
    to_stage: str
    required_fields: tuple[FieldRequirement, ...]
    requires_approval: bool
    require_reason: bool
    approval_process_id: uuid.UUID | None

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": str(self.id) if self.id else None,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "required_fields": [item.model_dump(mode="json", exclude={"value"}) for item in self.required_fields],
            "requires_approval": self.requires_approval,
            "require_reason": self.require_reason,
            "approval_process_id": str(self.approval_process_id) if self.approval_process_id else None,
        }

    @classmethod
    def from_snapshot(cls, data: Mapping[str, Any]) -> TransitionDef:
        raw_id = data.get("id")
        raw_process_id = data.get("approval_process_id")
        return cls(
            id=uuid.UUID(raw_id) if raw_id else None,
            from_stage=data["from_stage"],
            to_stage=data["to_stage"],
            required_fields=tuple(FieldRequirement.model_validate(item) for item in data.get("required_fields") or []),
            requires_approval=bool(data.get("requires_approval")),
            require_reason=bool(data.get("require_reason")),
            approval_process_id=uuid.UUID(raw_process_id) if raw_process_id else None,
        )

    @classmethod
    def from_row(cls, row: CRMBlueprintTransition) -> TransitionDef:
        return cls(
            id=row.id,
            from_stage=row.from_stage,
            to_stage=row.to_stage,
            required_fields=tuple(FieldRequirement.model_validate(item) for item in row.required_fields or []),
            requires_approval=row.requires_approval,
            require_reason=row.require_reason,
            approval_process_id=row.approval_process_id,
        )


@dataclass(frozen=True, slots=True)
class Blueprint:
    module_id: uuid.UUID
    stages: tuple[StageDef, ...]
    transitions: tuple[TransitionDef, ...]

    def stage(self, key: str | None) -> StageDef | None:
        for stage in self.stages:
            if stage.key == key:
                return stage
        return None

    def outgoing(self, key: str | None) -> list[TransitionDef]:
        return [transition for transition in self.transitions if transition.from_stage == key]

    def is_terminal(self, key: str) -> bool:
        return not self.outgoing(key)

    def initial_stage(self) -> StageDef | None:
        return self.stages[0] if self.stages else None


@dataclass(frozen=True, slots=True)
class TransitionCheck:
    allowed: bool
    transition: TransitionDef | None = None
    reason: str | None = None


class BlueprintStateMachine:
    """Per-module stage graph.

    Only configured edges are legal. Stage order and labels never imply a
    transition.
    """

    def load(self, session: Session, module_id: uuid.UUID) -> Blueprint:
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
        return Blueprint(
            module_id=module_id,
            stages=tuple(
                StageDef(key=row.key, label=row.label, color=row.color, position=row.position) for row in stages
            ),
            transitions=tuple(TransitionDef.from_row(row) for row in transitions),
        )

    def available_transitions(self, session: Session, module_id: uuid.UUID, current_stage: str | None) -> list[TransitionDef]:
        blueprint = self.load(session, module_id)
        if blueprint.stage(current_stage) is None:
            return []
        return blueprint.outgoing(current_stage)

    def check_transition(
        self,
        session: Session,
        module_id: uuid.UUID,
        from_stage: str | None,
        to_stage: str,
    ) -> TransitionCheck:
        return self.check(self.load(session, module_id), from_stage, to_stage)

    @staticmethod
    def check(blueprint: Blueprint, from_stage: str | None, to_stage: str) -> TransitionCheck:
        if blueprint.stage(to_stage) is None:
            return TransitionCheck(allowed=False, reason=f"stage '{to_stage}' does not exist")
        if from_stage is None:
            return TransitionCheck(allowed=False, reason="record has no current stage")
        if blueprint.stage(from_stage) is None:
            return TransitionCheck(allowed=False, reason=f"stage '{from_stage}' does not exist")
        if blueprint.is_terminal(from_stage):
            return TransitionCheck(allowed=False, reason=f"stage '{from_stage}' is terminal")
        for transition in blueprint.outgoing(from_stage):
            if transition.to_stage == to_stage:
                return TransitionCheck(allowed=True, transition=transition)
        return TransitionCheck(allowed=False, reason=f"no transition from '{from_stage}' to '{to_stage}'")
