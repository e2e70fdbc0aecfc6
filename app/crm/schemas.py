from __future__ import annotations

import re
from datetime import date, datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


ModuleFieldType = Literal["text", "number", "select", "textarea", "date", "bool"]
RequirementFieldType = Literal["text", "number", "select", "textarea"]
RuleType = Literal["required_if", "format", "range", "comparison", "unique"]
LifecycleTrigger = Literal["create", "update", "stage_change"]
ApprovalStatus = Literal["pending", "approved", "rejected", "changes_requested", "cancelled", "expired"]
DecisionAction = Literal["approve", "reject", "request_changes"]

TransitionStatus = Literal[
    "noop",
    "denied",
    "validation_failed",
    "fields_missing",
    "reason_required",
    "approval_in_progress",
    "approval_required",
    "allowed",
    "approval_created",
    "committed",
    "conflict",
]

DecisionStatus = Literal[
    "advanced",
    "approved",
    "changes_requested",
    "rejected",
    "cancelled",
    "expired",
    "authorization_denied",
    "not_pending",
    "comment_required",
    "conflict",
    "not_found",
    "error",
]

_KEY_PATTERN = r"^[a-z][a-z0-9_]*$"


class ModuleCreate(BaseModel):
    key: str = Field(min_length=1, max_length=64, pattern=_KEY_PATTERN)
    name: str = Field(min_length=1)


class ModuleFieldCreate(BaseModel):
    key: str = Field(min_length=1, max_length=64, pattern=_KEY_PATTERN)
    label: str = Field(min_length=1)
    field_type: ModuleFieldType = "text"


class ModuleFieldRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module_id: UUID
    key: str
    label: str
    field_type: str


class ModuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    key: str
    name: str
    fields: list[ModuleFieldRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class RecordCreate(BaseModel):
    title: str = Field(min_length=1)
    stage: str | None = None
    owner_user_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class RecordUpdate(BaseModel):
    row_version: int = Field(ge=1)
    title: str | None = Field(default=None, min_length=1)
    owner_user_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class RecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module_id: UUID
    title: str
    stage: str | None
    owner_user_id: str | None
    data: dict[str, Any]
    row_version: int
    created_at: datetime
    updated_at: datetime


class StageCreate(BaseModel):
    key: str = Field(min_length=1, max_length=64, pattern=_KEY_PATTERN)
    label: str = Field(min_length=1)
    color: str | None = None
    position: int | None = Field(default=None, ge=0)


class StageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module_id: UUID
    key: str
    label: str
    color: str | None
    position: int


class FieldRequirement(BaseModel):
    key: str = Field(min_length=1)
    label: str = ""
    type: RequirementFieldType = "text"
    value: Any = None


def _check_required_fields(required_fields: list[FieldRequirement]) -> None:
    keys = [item.key for item in required_fields]
    if len(keys) != len(set(keys)):
        raise ValueError("required_fields must not repeat a field key")


class TransitionCreate(BaseModel):
    from_stage: str = Field(min_length=1)
    to_stage: str = Field(min_length=1)
    required_fields: list[FieldRequirement] = Field(default_factory=list)
    requires_approval: bool = False
    require_reason: bool = False
    approval_process_id: UUID | None = None

    @model_validator(mode="after")
    def validate_edge(self) -> "TransitionCreate":
        if self.from_stage == self.to_stage:
            raise ValueError("from_stage and to_stage must differ")
        _check_required_fields(self.required_fields)
        return self


class TransitionUpdate(BaseModel):
    required_fields: list[FieldRequirement] | None = None
    requires_approval: bool | None = None
    require_reason: bool | None = None
    approval_process_id: UUID | None = None

    @model_validator(mode="after")
    def validate_required_fields(self) -> "TransitionUpdate":
        if self.required_fields is not None:
            _check_required_fields(self.required_fields)
        return self


class TransitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module_id: UUID
    from_stage: str
    to_stage: str
    required_fields: list[FieldRequirement]
    requires_approval: bool
    require_reason: bool
    approval_process_id: UUID | None


class BlueprintRead(BaseModel):
    module_id: UUID
    stages: list[StageRead]
    transitions: list[TransitionRead]


RuleConditionOp = Literal[
    "eq",
    "neq",
    "ne",
    "in",
    "not_in",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "gt",
    "gte",
    "lt",
    "lte",
    "exists",
    "is_empty",
    "not_empty",
    "is_not_empty",
]


class RuleConditionLeaf(BaseModel):
    path: str = Field(min_length=1)
    op: RuleConditionOp
    value: Any = None


class RuleConditionAll(BaseModel):
    all: list["RuleCondition"] = Field(min_length=1)


class RuleConditionAny(BaseModel):
    any: list["RuleCondition"] = Field(min_length=1)


class RuleConditionNot(BaseModel):
    not_: "RuleCondition" = Field(alias="not")

    model_config = ConfigDict(populate_by_name=True)


RuleCondition = RuleConditionLeaf | RuleConditionAll | RuleConditionAny | RuleConditionNot


def parse_rule_condition(value: Any) -> RuleCondition:
    """Parse a stored condition group.

    A bare list is an AND group, matching how conditions are authored in the
    rule editor.
    """
    if isinstance(value, list):
        if not value:
            raise ValueError("conditions list must not be empty")
        return RuleConditionAll(all=[parse_rule_condition(item) for item in value])

    if not isinstance(value, dict):
        raise ValueError("conditions must be an object or a list")

    if "all" in value:
        items = value.get("all")
        if not isinstance(items, list) or not items:
            raise ValueError("all must be a non-empty list")
        return RuleConditionAll(all=[parse_rule_condition(item) for item in items])

    if "any" in value:
        items = value.get("any")
        if not isinstance(items, list) or not items:
            raise ValueError("any must be a non-empty list")
        return RuleConditionAny(any=[parse_rule_condition(item) for item in items])

    if "not" in value:
        return RuleConditionNot.model_validate({"not": parse_rule_condition(value.get("not"))})

    return RuleConditionLeaf.model_validate(value)


FormatType = Literal["email", "phone", "url", "alphanumeric", "numeric", "regex"]


class FormatRuleConfig(BaseModel):
    format_type: FormatType
    pattern: str | None = None
    flags: str | None = None

    @model_validator(mode="after")
    def validate_pattern(self) -> "FormatRuleConfig":
        if self.format_type != "regex":
            return self
        if not self.pattern:
            raise ValueError("pattern is required when format_type is regex")
        if self.flags and set(self.flags) - set("ims"):
            raise ValueError("flags may only contain i, m and s")
        try:
            re.compile(self.pattern)
        except re.error as exc:
            raise ValueError(f"invalid pattern: {exc}") from exc
        return self


CompareFieldType = Literal["number", "date"]


class RangeRuleConfig(BaseModel):
    """Numeric bounds by default; ISO dates when ``field_type`` is ``date``."""

    field_type: CompareFieldType = "number"
    min: float | date | None = None
    max: float | date | None = None
    min_exclusive: bool = False
    max_exclusive: bool = False

    @model_validator(mode="after")
    def validate_bounds(self) -> "RangeRuleConfig":
        if self.min is None and self.max is None:
            raise ValueError("range requires min or max")
        expected = date if self.field_type == "date" else float
        for key in ("min", "max"):
            bound = getattr(self, key)
            if bound is None:
                continue
            if not isinstance(bound, expected) or (expected is date and isinstance(bound, datetime)):
                raise ValueError(f"{key} must be a {'date' if expected is date else 'number'} for a {self.field_type} range")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("min must not exceed max")
        return self


class ComparisonRuleConfig(BaseModel):
    compare_field: str = Field(min_length=1)
    operator: Literal["eq", "ne", "gt", "gte", "lt", "lte"]
    field_type: CompareFieldType | None = None


class UniqueRuleConfig(BaseModel):
    case_sensitive: bool = False
    scope_field: str | None = None


class RequiredIfRuleConfig(BaseModel):
    pass


RULE_CONFIG_MODELS: dict[str, type[BaseModel]] = {
    "required_if": RequiredIfRuleConfig,
    "format": FormatRuleConfig,
    "range": RangeRuleConfig,
    "comparison": ComparisonRuleConfig,
    "unique": UniqueRuleConfig,
}


class StageTriggers(BaseModel):
    from_stages: list[str] = Field(default_factory=list)
    to_stages: list[str] = Field(default_factory=list)


class ValidationRuleCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    target_field: str = Field(min_length=1)
    rule_type: RuleType
    config: dict[str, Any] = Field(default_factory=dict)
    conditions: dict[str, Any] | list[dict[str, Any]] | None = None
    stage_triggers: StageTriggers | None = None
    error_message: str = Field(min_length=1)
    applies_on: list[LifecycleTrigger] = Field(min_length=1)
    is_enabled: bool = True
    priority: int = Field(default=100, ge=1)

    @model_validator(mode="after")
    def validate_rule_structure(self) -> "ValidationRuleCreate":
        config_model = RULE_CONFIG_MODELS[self.rule_type]
        self.config = config_model.model_validate(self.config).model_dump(mode="json", exclude_none=True)
        if self.conditions is not None:
            self.conditions = parse_rule_condition(self.conditions).model_dump(by_alias=True)
        self.applies_on = list(dict.fromkeys(self.applies_on))
        return self


class ValidationRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    target_field: str | None = Field(default=None, min_length=1)
    rule_type: RuleType | None = None
    config: dict[str, Any] | None = None
    conditions: dict[str, Any] | list[dict[str, Any]] | None = None
    stage_triggers: StageTriggers | None = None
    error_message: str | None = Field(default=None, min_length=1)
    applies_on: list[LifecycleTrigger] | None = Field(default=None, min_length=1)
    is_enabled: bool | None = None
    priority: int | None = Field(default=None, ge=1)


class ValidationRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module_id: UUID
    name: str
    description: str | None
    target_field: str
    rule_type: str
    config: dict[str, Any]
    conditions: dict[str, Any] | None
    stage_triggers: dict[str, Any] | None
    error_message: str
    applies_on: list[str]
    is_enabled: bool
    priority: int
    sequence: int
    created_at: datetime
    updated_at: datetime


class FieldValidationError(BaseModel):
    field: str
    rule_id: UUID | None = None
    rule_name: str | None = None
    rule_type: str | None = None
    message: str
    value: Any = None


class _ApprovalStepBase(BaseModel):
    name: str | None = None
    require_comment: bool = False


class UserApprovalStep(_ApprovalStepBase):
    type: Literal["user"]
    user_id: str = Field(min_length=1)


class RoleApprovalStep(_ApprovalStepBase):
    type: Literal["role"]
    role: str = Field(min_length=1)


class RecordOwnerManagerApprovalStep(_ApprovalStepBase):
    type: Literal["record_owner_manager"]


class RecordOwnerApprovalStep(_ApprovalStepBase):
    type: Literal["record_owner"]


ApprovalStep = Annotated[
    UserApprovalStep | RoleApprovalStep | RecordOwnerManagerApprovalStep | RecordOwnerApprovalStep,
    Field(discriminator="type"),
]

approval_step_adapter = TypeAdapter(ApprovalStep)
_approval_step_list_adapter = TypeAdapter(list[ApprovalStep])


class ApprovalProcessCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    is_enabled: bool = True
    trigger_stage_from: str | None = None
    trigger_stage_to: str | None = None
    steps: list[dict[str, Any]] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_steps(self) -> "ApprovalProcessCreate":
        steps = _approval_step_list_adapter.validate_python(self.steps)
        self.steps = [step.model_dump(mode="json") for step in steps]
        return self


class ApprovalProcessUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    is_enabled: bool | None = None
    trigger_stage_from: str | None = None
    trigger_stage_to: str | None = None
    steps: list[dict[str, Any]] | None = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def validate_steps(self) -> "ApprovalProcessUpdate":
        if self.steps is not None:
            steps = _approval_step_list_adapter.validate_python(self.steps)
            self.steps = [step.model_dump(mode="json") for step in steps]
        return self


class ApprovalProcessRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module_id: UUID
    name: str
    description: str | None
    is_enabled: bool
    trigger_stage_from: str | None
    trigger_stage_to: str | None
    steps: list[dict[str, Any]]
    created_at: datetime
    updated_at: datetime


class ApprovalRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    record_id: UUID
    module_id: UUID
    process_id: UUID | None
    status: ApprovalStatus
    current_step: int
    total_steps: int
    steps_snapshot: list[dict[str, Any]]
    transition_snapshot: dict[str, Any]
    context: dict[str, Any]
    requested_by: str
    resolved_by: str | None
    resolved_at: datetime | None
    validation_errors: list[dict[str, Any]] | None
    supersedes_request_id: UUID | None
    row_version: int
    created_at: datetime
    updated_at: datetime


class ApprovalInboxItem(ApprovalRequestRead):
    current_step_definition: dict[str, Any] | None = None
    assigned_approver_id: str | None = None


class ApprovalDecisionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    approval_request_id: UUID
    step_index: int
    actor_id: str
    action: str
    comment: str | None
    decided_at: datetime


class ApprovalDetailRead(BaseModel):
    request: ApprovalInboxItem
    decisions: list[ApprovalDecisionRead]
    record: RecordRead | None = None


class ApprovalInboxQuery(BaseModel):
    status: ApprovalStatus | None = "pending"
    module_id: UUID | None = None
    assigned_to_me: bool = False
    requested_by_me: bool = False
    limit: int = Field(default=50, ge=1)
    offset: int = Field(default=0, ge=0)


class TransitionRequest(BaseModel):
    to_stage: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    reason: str | None = None


class AvailableTransitionRead(BaseModel):
    transition_id: UUID
    to_stage: str
    to_stage_label: str
    to_stage_color: str | None
    required_fields: list[FieldRequirement]
    requires_approval: bool
    require_reason: bool


class AvailableTransitionsRead(BaseModel):
    record_id: UUID
    module_id: UUID
    current_stage: str | None
    transitions: list[AvailableTransitionRead]


class TransitionOutcome(BaseModel):
    status: TransitionStatus
    allowed: bool
    record_id: UUID
    from_stage: str | None
    to_stage: str
    blueprint_error: str | None = None
    validation_errors: list[FieldValidationError] = Field(default_factory=list)
    missing_fields: list[str] = Field(default_factory=list)
    required_fields: list[FieldRequirement] = Field(default_factory=list)
    requires_approval: bool = False
    requires_reason: bool = False
    approval_request_id: UUID | None = None
    row_version: int | None = None
    message: str | None = None


class DecisionRequest(BaseModel):
    action: DecisionAction
    comment: str | None = None


class BulkDecisionRequest(BaseModel):
    approval_ids: list[UUID] = Field(min_length=1)
    action: DecisionAction
    comment: str | None = None


class DecisionOutcome(BaseModel):
    approval_id: UUID
    status: DecisionStatus
    request_status: ApprovalStatus | None = None
    current_step: int | None = None
    transition: TransitionOutcome | None = None
    validation_errors: list[FieldValidationError] = Field(default_factory=list)
    message: str | None = None


class ApprovalCommentRequest(BaseModel):
    comment: str | None = None


class ResubmitRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)
    reason: str | None = None


class UserProfileUpsert(BaseModel):
    display_name: str | None = None
    role: str | None = None
    manager_user_id: str | None = None


class UserProfileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    display_name: str | None
    role: str | None
    manager_user_id: str | None
