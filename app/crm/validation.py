from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app.crm.models import CRMValidationRule
from app.crm.repositories import ModuleMetadata, RecordStore, SqlModuleMetadata, SqlRecordStore
from app.crm.rules import RuleConfigurationError, UniqueLookup, evaluate
from app.crm.schemas import FieldValidationError
from app.metrics import observe_validation_pass, observe_validation_rule_config_error

logger = logging.getLogger("app.crm.validation")


class ValidationRuleEngine:
    """Runs the enabled rules of a module for one lifecycle trigger.

    Every failing rule is reported. Rules that cannot be evaluated (unknown
    target field, broken configuration) are logged and skipped so that one
    misconfigured rule never blocks the whole pass.
    """

    def __init__(
        self,
        metadata_factory: Callable[[Session], ModuleMetadata] = SqlModuleMetadata,
        record_store_factory: Callable[[Session], RecordStore] = SqlRecordStore,
    ) -> None:
        self._metadata_factory = metadata_factory
        self._record_store_factory = record_store_factory

    def load_rules(
        self,
        session: Session,
        module_id: uuid.UUID,
        trigger: str,
        *,
        stage_from: str | None = None,
        stage_to: str | None = None,
    ) -> list[CRMValidationRule]:
        rows = session.scalars(
            select(CRMValidationRule)
            .where(
                and_(
                    CRMValidationRule.module_id == module_id,
                    CRMValidationRule.is_enabled.is_(True),
                    CRMValidationRule.deleted_at.is_(None),
                )
            )
            .order_by(
                CRMValidationRule.priority.asc(),
                CRMValidationRule.sequence.asc(),
                CRMValidationRule.created_at.asc(),
            )
        ).all()
        return [
            rule
            for rule in rows
            if trigger in (rule.applies_on or []) and self._matches_stage_triggers(rule, trigger, stage_from, stage_to)
        ]

    def validate(
        self,
        session: Session,
        module_id: uuid.UUID,
        trigger: str,
        record_snapshot: Mapping[str, Any],
        changed_fields: Mapping[str, Any],
        *,
        record_id: uuid.UUID | None = None,
        stage_from: str | None = None,
        stage_to: str | None = None,
    ) -> list[FieldValidationError]:
        started = time.perf_counter()
        values: dict[str, Any] = {**record_snapshot, **changed_fields}
        known_fields = self._metadata_factory(session).field_keys(module_id)
        store = self._record_store_factory(session)

        errors: list[FieldValidationError] = []
        for rule in self.load_rules(session, module_id, trigger, stage_from=stage_from, stage_to=stage_to):
            missing_field = self._unknown_field(rule, known_fields)
            if missing_field is not None:
                self._skip(rule, "unknown_field", f"field '{missing_field}' is not defined on the module")
                continue

            field_value = values.get(rule.target_field)
            try:
                result = evaluate(
                    rule.rule_type,
                    rule.config,
                    field_value,
                    values,
                    conditions=rule.conditions,
                    unique_lookup=self._unique_lookup(store, module_id, rule.target_field, record_id),
                    message=rule.error_message,
                )
            except RuleConfigurationError as exc:
                self._skip(rule, exc.reason, str(exc))
                continue

            if not result.passed:
                errors.append(
                    FieldValidationError(
                        field=rule.target_field,
                        rule_id=rule.id,
                        rule_name=rule.name,
                        rule_type=rule.rule_type,
                        message=result.message or rule.error_message,
                        value=field_value,
                    )
                )

        observe_validation_pass(trigger, time.perf_counter() - started)
        logger.info(
            "validation.completed",
            extra={
                "module_id": str(module_id),
                "record_id": str(record_id) if record_id else None,
                "action": trigger,
                "outcome": "failed" if errors else "passed",
                "error_count": len(errors),
            },
        )
        return errors

    @staticmethod
    def _matches_stage_triggers(
        rule: CRMValidationRule,
        trigger: str,
        stage_from: str | None,
        stage_to: str | None,
    ) -> bool:
        if trigger != "stage_change" or not rule.stage_triggers:
            return True
        from_stages = rule.stage_triggers.get("from_stages") or []
        to_stages = rule.stage_triggers.get("to_stages") or []
        if from_stages and stage_from not in from_stages:
            return False
        if to_stages and stage_to not in to_stages:
            return False
        return True

    @staticmethod
    def _unknown_field(rule: CRMValidationRule, known_fields: set[str]) -> str | None:
        if rule.target_field not in known_fields:
            return rule.target_field
        config = rule.config or {}
        for key in ("compare_field", "scope_field"):
            referenced = config.get(key)
            if referenced and referenced not in known_fields:
                return str(referenced)
        return None

    @staticmethod
    def _unique_lookup(
        store: RecordStore,
        module_id: uuid.UUID,
        field_key: str,
        record_id: uuid.UUID | None,
    ) -> UniqueLookup:
        def lookup(value: Any, case_sensitive: bool, scope: tuple[str, Any] | None) -> bool:
            return store.exists_with_value(
                module_id,
                field_key,
                value,
                record_id,
                case_sensitive=case_sensitive,
                scope=scope,
            )

        return lookup

    @staticmethod
    def _skip(rule: CRMValidationRule, reason: str, detail: str) -> None:
        observe_validation_rule_config_error(reason)
        logger.warning(
            "validation.rule_skipped",
            extra={
                "module_id": str(rule.module_id),
                "rule_id": str(rule.id),
                "rule_type": rule.rule_type,
                "target_field": rule.target_field,
                "error": f"{reason}: {detail}",
            },
        )
