from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


ConditionOp = Literal[
    "eq",
    "neq",
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
    "is_not_empty",
    "changed",
    "changed_to",
    "changed_from",
]

_EMPTY_VALUES: tuple[Any, ...] = (None, "", [], {}, ())


class ConditionLeaf(BaseModel):
    path: str = Field(min_length=1)
    op: ConditionOp
    value: Any = None


class ConditionAll(BaseModel):
    all: list["Condition"] = Field(min_length=1)


class ConditionAny(BaseModel):
    any: list["Condition"] = Field(min_length=1)


class ConditionNot(BaseModel):
    not_: "Condition" = Field(alias="not")

    model_config = ConfigDict(populate_by_name=True)


Condition = ConditionLeaf | ConditionAll | ConditionAny | ConditionNot

ConditionAll.model_rebuild()
ConditionAny.model_rebuild()
ConditionNot.model_rebuild()


def parse_condition(value: Any) -> Condition:
    if not isinstance(value, dict):
        raise ValueError("condition must be an object")

    if "all" in value:
        items = value.get("all")
        if not isinstance(items, list) or not items:
            raise ValueError("all must be a non-empty list")
        return ConditionAll(all=[parse_condition(item) for item in items])

    if "any" in value:
        items = value.get("any")
        if not isinstance(items, list) or not items:
            raise ValueError("any must be a non-empty list")
        return ConditionAny(any=[parse_condition(item) for item in items])

    if "not" in value:
        return ConditionNot.model_validate({"not": parse_condition(value.get("not"))})

    return ConditionLeaf.model_validate(value)


def normalize_condition(value: dict[str, Any] | None) -> dict[str, Any] | None:
    """Validate a stored condition payload; an empty payload means "always true"."""
    if not value:
        return None
    return parse_condition(value).model_dump(by_alias=True)


def is_empty_value(value: Any) -> bool:
    if isinstance(value, str):
        return not value.strip()
    return value in _EMPTY_VALUES


class ConditionEvaluator:
    def matches(
        self,
        condition: dict[str, Any] | Condition | None,
        context: dict[str, Any],
        previous: dict[str, Any] | None = None,
    ) -> bool:
        if condition is None:
            return True
        if isinstance(condition, dict):
            if not condition:
                return True
            condition = parse_condition(condition)
        return self._eval(condition, context, previous)

    def _eval(self, condition: Condition, context: dict[str, Any], previous: dict[str, Any] | None) -> bool:
        if isinstance(condition, ConditionAll):
            return all(self._eval(item, context, previous) for item in condition.all)
        if isinstance(condition, ConditionAny):
            return any(self._eval(item, context, previous) for item in condition.any)
        if isinstance(condition, ConditionNot):
            return not self._eval(condition.not_, context, previous)
        return self._eval_leaf(condition, context, previous)

    def _eval_leaf(self, leaf: ConditionLeaf, context: dict[str, Any], previous: dict[str, Any] | None) -> bool:
        exists, current = resolve_path(context, leaf.path)
        op = leaf.op
        target = leaf.value

        if op in {"changed", "changed_to", "changed_from"}:
            if previous is None:
                return False
            _, before = resolve_path(previous, leaf.path)
            changed = normalize_compare_value(before) != normalize_compare_value(current)
            if op == "changed":
                return changed
            if op == "changed_to":
                return changed and normalize_compare_value(current) == normalize_compare_value(target)
            return changed and normalize_compare_value(before) == normalize_compare_value(target)

        if op == "exists":
            return exists and not is_empty_value(current)
        if op == "is_empty":
            return is_empty_value(current)
        if op == "is_not_empty":
            return not is_empty_value(current)
        if op == "eq":
            return normalize_compare_value(current) == normalize_compare_value(target)
        if op == "neq":
            return normalize_compare_value(current) != normalize_compare_value(target)
        if op in {"in", "not_in"}:
            if not isinstance(target, (list, tuple, set)):
                return False
            found = any(normalize_compare_value(current) == normalize_compare_value(item) for item in target)
            return found if op == "in" else not found
        if op in {"contains", "not_contains"}:
            found = _contains(current, target)
            return found if op == "contains" else not found
        if op == "starts_with":
            return isinstance(current, str) and isinstance(target, str) and current.lower().startswith(target.lower())
        if op == "ends_with":
            return isinstance(current, str) and isinstance(target, str) and current.lower().endswith(target.lower())

        left = normalize_compare_value(current)
        right = normalize_compare_value(target)
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


def _contains(current: Any, target: Any) -> bool:
    if isinstance(current, str) and isinstance(target, str):
        return target.lower() in current.lower()
    if isinstance(current, (list, tuple, set)):
        return any(normalize_compare_value(item) == normalize_compare_value(target) for item in current)
    return False


def resolve_path(context: dict[str, Any], path: str) -> tuple[bool, Any]:
    current: Any = context
    for segment in path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return False, None
        current = current[segment]
    return True, current


def normalize_compare_value(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, int):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        as_number = _parse_number(value)
        if as_number is not None:
            return as_number
        as_date = _parse_date(value)
        if as_date is not None:
            return as_date.isoformat()
        return value
    return value


def _parse_number(value: str) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_date(value: str) -> date | None:
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


condition_evaluator = ConditionEvaluator()
