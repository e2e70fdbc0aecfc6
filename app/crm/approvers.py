from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy.orm import Session

from app.crm.models import CRMUserProfile
from app.crm.schemas import (
    RecordOwnerApprovalStep,
    RecordOwnerManagerApprovalStep,
    RoleApprovalStep,
    UserApprovalStep,
    approval_step_adapter,
)
from app.crm.service import ActorUser


@dataclass(frozen=True, slots=True)
class ApproverContext:
    record_id: uuid.UUID
    module_id: uuid.UUID
    owner_user_id: str | None
    requested_by: str | None = None


@dataclass(frozen=True, slots=True)
class ApproverAssignment:
    user_id: str | None = None
    role: str | None = None

    @property
    def resolved(self) -> bool:
        return bool(self.user_id or self.role)


class UserDirectory(Protocol):
    def get_manager_user_id(self, user_id: str) -> str | None:
        ...

    def get_role(self, user_id: str) -> str | None:
        ...


class SqlUserDirectory:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_manager_user_id(self, user_id: str) -> str | None:
        profile = self._session.get(CRMUserProfile, user_id)
        return profile.manager_user_id if profile is not None else None

    def get_role(self, user_id: str) -> str | None:
        profile = self._session.get(CRMUserProfile, user_id)
        return profile.role if profile is not None else None


class RolePermissionResolver(Protocol):
    def can_act_on_step(self, actor: ActorUser, step: Mapping[str, Any], context: ApproverContext) -> bool:
        ...

    def assignment_for(self, step: Mapping[str, Any], context: ApproverContext) -> ApproverAssignment:
        ...


def resolve_approver(step: Mapping[str, Any], context: ApproverContext, directory: UserDirectory) -> ApproverAssignment:
    """Resolve who may decide a step.

    Returns an empty assignment when the policy cannot be resolved, e.g. the
    record has no owner or the owner has no manager.
    """
    policy = approval_step_adapter.validate_python(dict(step))
    if isinstance(policy, UserApprovalStep):
        return ApproverAssignment(user_id=policy.user_id)
    if isinstance(policy, RoleApprovalStep):
        return ApproverAssignment(role=policy.role)
    if isinstance(policy, RecordOwnerApprovalStep):
        return ApproverAssignment(user_id=context.owner_user_id)
    if isinstance(policy, RecordOwnerManagerApprovalStep):
        if not context.owner_user_id:
            return ApproverAssignment()
        return ApproverAssignment(user_id=directory.get_manager_user_id(context.owner_user_id))
    return ApproverAssignment()


class DefaultApproverResolver:
    def __init__(self, directory: UserDirectory) -> None:
        self._directory = directory

    def assignment_for(self, step: Mapping[str, Any], context: ApproverContext) -> ApproverAssignment:
        return resolve_approver(step, context, self._directory)

    def can_act_on_step(self, actor: ActorUser, step: Mapping[str, Any], context: ApproverContext) -> bool:
        assignment = self.assignment_for(step, context)
        if not assignment.resolved:
            return False
        if assignment.user_id is not None:
            return assignment.user_id == actor.user_id
        if assignment.role in actor.roles:
            return True
        return self._directory.get_role(actor.user_id) == assignment.role
