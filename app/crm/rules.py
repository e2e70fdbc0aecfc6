"""Pure evaluation of validation rule definitions.

``evaluate`` takes a rule type, its stored configuration and the values it
should look at, and reports pass or fail. Nothing in this module touches the
database or keeps state between calls; the uniqueness check receives its
lookup as a callable.
"""

from __future__ import annotations

import math
import operator
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from app.crm.schemas import (
    RuleCondition,
    RuleConditionAll,
    RuleConditionAny,
    RuleConditionNot,
    parse_rule_condition,
)


FORMAT_PATTERNS: dict[str, re.Pattern[str]] = {
    "email": re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$"),
    "phone": re.compile(r"^\+?[0-9][0-9\s\-().]{5,19}$"),
    "url": re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE),
    "alphanumeric": re.compile(r"^[A-Za-z0-9]+$"),
    "numeric": re.compile(r"^-?\d+(\.\d+)?$"),
}

_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
}

# (value, case_sensitive, scope) -> True when another record already holds the value.
UniqueLookup = Callable[[Any, bool, tuple[str, Any] | None], bool]


class RuleConfigurationError(ValueError):
    """A rule definition cannot be evaluated as stored."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True)
class RuleResult:
    passed: bool
    message: str | None = None
    skipped: bool = False


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def to_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def resolve_path(values: Mapping[str, Any], path: str) -> tuple[bool, Any]:
    if path in values:
        return True, values[path]
    current: Any = values
    for segment in path.split("."):
        if not isinstance(current, Mapping) or segment not in current:
            return False, None
        current = current[segment]
    return True, current


def _normalized(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        as_number = to_number(value)
        if as_number is not None:
            return as_number
        as_date = to_date(value)
        if as_date is not None:
            return as_date.isoformat()
        return value
    return value


def _member_of(current: Any, target: Any) -> bool:
    if not isinstance(target, (list, tuple, set)):
        return False
    return any(_normalized(current) == _normalized(item) for item in target)


def _text_match(current: Any, target: Any, op: str) -> bool:
    if not isinstance(current, str) or target is None:
        return False
    haystack = current.casefold()
    needle = str(target).casefold()
    if op == "starts_with":
        return haystack.startswith(needle)
    if op == "ends_with":
        return haystack.endswith(needle)
    return needle in haystack


def _eval_condition(condition: RuleCondition, values: Mapping[str, Any]) -> bool:
    if isinstance(condition, RuleConditionAll):
        return all(_eval_condition(item, values) for item in condition.all)
    if isinstance(condition, RuleConditionAny):
        return any(_eval_condition(item, values) for item in condition.any)
    if isinstance(condition, RuleConditionNot):
        return not _eval_condition(condition.not_, values)

    exists, current = resolve_path(values, condition.path)
    op = condition.op
    target = condition.value

    if op == "exists":
        return exists and not is_empty(current)
    if op == "is_empty":
        return is_empty(current)
    if op in {"not_empty", "is_not_empty"}:
        return not is_empty(current)
    if op == "eq":
        return _normalized(current) == _normalized(target)
    if op in {"neq", "ne"}:
        return _normalized(current) != _normalized(target)
    if op == "in":
        return _member_of(current, target)
    if op == "not_in":
        return not _member_of(current, target)
    if op == "contains":
        if isinstance(current, (list, tuple, set)):
            return any(_normalized(item) == _normalized(target) for item in current)
        return _text_match(current, target, op)
    if op == "not_contains":
        if isinstance(current, (list, tuple, set)):
            return not any(_normalized(item) == _normalized(target) for item in current)
        return not _text_match(current, target, "contains")
    if op in {"starts_with", "ends_with"}:
        return _text_match(current, target, op)

    left = _normalized(current)
    right = _normalized(target)
    if left is None or right is None:
        return False
    try:
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        if op == "lte":
            return left <= right
    except TypeError:
        return False
    return False


def conditions_match(conditions: Any, values: Mapping[str, Any]) -> bool:
    """Evaluate a stored condition group. No conditions always matches."""
    if conditions is None or conditions == {} or conditions == []:
        return True
    try:
        condition = parse_rule_condition(conditions)
    except (ValidationError, ValueError) as exc:
        raise RuleConfigurationError("invalid_conditions", f"invalid conditions: {exc}") from exc
    return _eval_condition(condition, values)


def _evaluate_required_if(
    config: Mapping[str, Any],
    value: Any,
    related_values: Mapping[str, Any],
    unique_lookup: UniqueLookup | None,
) -> bool:
    return not is_empty(value)


def _evaluate_format(
    config: Mapping[str, Any],
    value: Any,
    related_values: Mapping[str, Any],
    unique_lookup: UniqueLookup | None,
) -> bool:
    if is_empty(value):
        return True
    format_type = config.get("format_type")
    text = str(value)

    if format_type == "regex":
        pattern = config.get("pattern")
        if not pattern:
            raise RuleConfigurationError("invalid_config", "regex format requires a pattern")
        flags = 0
        for flag in config.get("flags") or "":
            if flag not in _REGEX_FLAGS:
                raise RuleConfigurationError("invalid_config", f"unsupported regex flag {flag!r}")
            flags |= _REGEX_FLAGS[flag]
        try:
            compiled = re.compile(pattern, flags)
        except re.error as exc:
            raise RuleConfigurationError("invalid_config", f"invalid pattern: {exc}") from exc
        return compiled.search(text) is not None

    pattern = FORMAT_PATTERNS.get(str(format_type))
    if pattern is None:
        raise RuleConfigurationError("invalid_config", f"unknown format_type {format_type!r}")
    return pattern.match(text.strip()) is not None


def _bound(config: Mapping[str, Any], key: str, as_dates: bool) -> float | date | None:
    raw = config.get(key)
    if raw is None:
        return None
    bound = to_date(raw) if as_dates else to_number(raw)
    if bound is None:
        kind = "an ISO date" if as_dates else "numeric"
        raise RuleConfigurationError("invalid_config", f"range {key} must be {kind}")
    return bound


def _evaluate_range(
    config: Mapping[str, Any],
    value: Any,
    related_values: Mapping[str, Any],
    unique_lookup: UniqueLookup | None,
) -> bool:
    field_type = config.get("field_type") or "number"
    if field_type not in {"number", "date"}:
        raise RuleConfigurationError("invalid_config", f"unknown range field_type {field_type!r}")
    as_dates = field_type == "date"
    minimum = _bound(config, "min", as_dates)
    maximum = _bound(config, "max", as_dates)
    if is_empty(value):
        return True
    current = to_date(value) if as_dates else to_number(value)
    if current is None:
        return False
    if minimum is not None:
        if current < minimum or (config.get("min_exclusive") and current == minimum):
            return False
    if maximum is not None:
        if current > maximum or (config.get("max_exclusive") and current == maximum):
            return False
    return True


def _comparable_pair(value: Any, other: Any, field_type: str | None) -> tuple[Any, Any] | None:
    if field_type == "number":
        pair = (to_number(value), to_number(other))
    elif field_type == "date":
        pair = (to_date(value), to_date(other))
    else:
        pair = (to_number(value), to_number(other))
        if None in pair:
            pair = (to_date(value), to_date(other))
    if None in pair:
        return None
    return pair


def _evaluate_comparison(
    config: Mapping[str, Any],
    value: Any,
    related_values: Mapping[str, Any],
    unique_lookup: UniqueLookup | None,
) -> bool:
    compare_field = config.get("compare_field")
    op_name = config.get("operator")
    field_type = config.get("field_type")
    if not compare_field:
        raise RuleConfigurationError("invalid_config", "comparison requires compare_field")
    if op_name not in _COMPARATORS:
        raise RuleConfigurationError("invalid_config", f"unknown comparison operator {op_name!r}")
    if field_type not in {None, "number", "date"}:
        raise RuleConfigurationError("invalid_config", f"unknown comparison field_type {field_type!r}")
    if is_empty(value):
        return True

    found, other = resolve_path(related_values, str(compare_field))
    if not found or is_empty(other):
        return False

    pair = _comparable_pair(value, other, field_type)
    if pair is None:
        if field_type is not None or op_name not in {"eq", "ne"}:
            return False
        pair = (_normalized(value), _normalized(other))
    try:
        return bool(_COMPARATORS[op_name](*pair))
    except TypeError:
        return False


def _evaluate_unique(
    config: Mapping[str, Any],
    value: Any,
    related_values: Mapping[str, Any],
    unique_lookup: UniqueLookup | None,
) -> bool:
    if is_empty(value):
        return True
    if unique_lookup is None:
        raise RuleConfigurationError("missing_lookup", "unique rules need a record lookup")
    scope: tuple[str, Any] | None = None
    scope_field = config.get("scope_field")
    if scope_field:
        _, scope_value = resolve_path(related_values, str(scope_field))
        scope = (str(scope_field), scope_value)
    return not unique_lookup(value, bool(config.get("case_sensitive", False)), scope)


_EVALUATORS: dict[
    str,
    Callable[[Mapping[str, Any], Any, Mapping[str, Any], UniqueLookup | None], bool],
] = {
    "required_if": _evaluate_required_if,
    "format": _evaluate_format,
    "range": _evaluate_range,
    "comparison": _evaluate_comparison,
    "unique": _evaluate_unique,
}


def default_message(rule_type: str, config: Mapping[str, Any]) -> str:
    if rule_type == "required_if":
        return "This field is required"
    if rule_type == "format":
        return f"Invalid {config.get('format_type', 'value')} format"
    if rule_type == "range":
        return "Value is out of range"
    if rule_type == "comparison":
        return f"Value must be {config.get('operator')} {config.get('compare_field')}"
    if rule_type == "unique":
        return "Value must be unique"
    return "Invalid value"


def evaluate(
    rule_type: str,
    config: Mapping[str, Any] | None,
    field_value: Any,
    related_values: Mapping[str, Any],
    *,
    conditions: Any = None,
    unique_lookup: UniqueLookup | None = None,
    message: str | None = None,
) -> RuleResult:
    """Evaluate one rule.

    ``conditions`` gate every rule type: when they do not match the rule is
    skipped and passes. For ``required_if`` this is what makes the field
    conditionally required.

    Raises ``RuleConfigurationError`` when the definition itself is unusable;
    bad data is always reported through the result.
    """
    evaluator = _EVALUATORS.get(rule_type)
    if evaluator is None:
        raise RuleConfigurationError("unknown_rule_type", f"unknown rule type {rule_type!r}")

    resolved_config: Mapping[str, Any] = config or {}
    if not conditions_match(conditions, related_values):
        return RuleResult(passed=True, skipped=True)

    if evaluator(resolved_config, field_value, related_values, unique_lookup):
        return RuleResult(passed=True)
    return RuleResult(passed=False, message=message or default_message(rule_type, resolved_config))
