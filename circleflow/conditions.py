"""Evaluation of step conditions against request data and prior results."""

from __future__ import annotations

import logging
import math
from typing import Any, Iterable, Mapping

from .contracts import ExecutionContext, StepCondition

logger = logging.getLogger(__name__)

_MISSING = object()


def build_scope(context: ExecutionContext) -> dict[str, Any]:
    """Return the lookup namespace for condition fields.

    Request data keys are available directly; prior step outputs live under
    ``results.<step_id>`` and request attributes under ``request``.
    """
    return {
        **context.request_data,
        "results": context.previous_results,
        "request": {
            "id": context.request_id,
            "title": context.title,
            "creator_id": context.creator_id,
            "organization_id": context.organization_id,
        },
    }


def resolve_path(scope: Mapping[str, Any], path: str) -> Any:
    """Look up a dotted ``path`` in ``scope``; missing segments yield ``None``."""
    if path in scope:
        return scope[path]
    current: Any = scope
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return None
    return current


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return None if math.isnan(number) else number


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _equals(left: Any, right: Any) -> bool:
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return _as_text(left) == _as_text(right)


def evaluate_condition(condition: StepCondition, scope: Mapping[str, Any]) -> bool:
    field_value = resolve_path(scope, condition.field)
    target = condition.value
    operator = condition.operator

    if operator == "equals":
        return _equals(field_value, target)
    if operator == "not_equals":
        return not _equals(field_value, target)
    if operator in ("greater_than", "less_than", "between"):
        number = _as_number(field_value)
        low = _as_number(target)
        if number is None or low is None:
            return False
        if operator == "greater_than":
            return number > low
        if operator == "less_than":
            return number < low
        high = _as_number(condition.value2)
        return low <= number <= (high if high is not None else low)
    if operator == "contains":
        return _as_text(target).lower() in _as_text(field_value).lower()
    if operator == "in":
        if isinstance(target, (list, tuple)):
            options = [_as_text(v) for v in target]
        else:
            options = [v.strip() for v in _as_text(target).split(",")]
        return _as_text(field_value) in options

    logger.warning(f"Unknown condition operator '{operator}', treating as satisfied")
    return True


def evaluate_conditions(
    conditions: Iterable[StepCondition], scope: Mapping[str, Any]
) -> bool:
    """Return ``True`` when every condition holds; no conditions always hold."""
    return all(evaluate_condition(condition, scope) for condition in conditions)
