"""Condition evaluation used by gateway executors to pick active branches.

A condition is a dict {"field": "result.status", "operator": "eq", "value": "ok"}
checked against a gateway's inputs. Fields use dot notation; numeric path
parts index into lists.
"""

import re
from typing import Any, Callable, Dict, List

from flowrunner.core.logging import get_logger

logger = get_logger(__name__)

ConditionDict = Dict[str, Any]


def get_nested_value(data: Dict[str, Any], field_path: str) -> Any:
    """Value at a dot-separated path, or None when any step is missing.

    >>> get_nested_value({"items": [{"name": "a"}]}, "items.0.name")
    'a'
    """
    if not data or not field_path:
        return None

    current: Any = data
    for part in field_path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _compare(comparator: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    """Numeric comparison when both sides parse as numbers, string otherwise."""
    def check(actual: Any, target: Any) -> bool:
        if actual is None or target is None:
            return False
        try:
            return comparator(float(actual), float(target))
        except (TypeError, ValueError):
            return comparator(str(actual), str(target))
    return check


def _contains(actual: Any, target: Any) -> bool:
    if isinstance(actual, str):
        return str(target) in actual
    if isinstance(actual, (list, tuple, dict)):
        return target in actual
    return False


def _is_empty(actual: Any, target: Any = None) -> bool:
    if actual is None:
        return True
    if isinstance(actual, (str, list, tuple, dict)):
        return len(actual) == 0
    return False


def _matches(actual: Any, target: Any) -> bool:
    if actual is None or target is None:
        return False
    try:
        return re.search(str(target), str(actual)) is not None
    except re.error:
        logger.warning("Invalid regex pattern", pattern=target)
        return False


def _in(actual: Any, target: Any) -> bool:
    if isinstance(target, (list, tuple)):
        return actual in target
    return actual == target


def _affix(method: str) -> Callable[[Any, Any], bool]:
    def check(actual: Any, target: Any) -> bool:
        if actual is None or target is None:
            return False
        return getattr(str(actual), method)(str(target))
    return check


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, t: a == t,
    "neq": lambda a, t: a != t,
    "gt": _compare(lambda a, t: a > t),
    "lt": _compare(lambda a, t: a < t),
    "gte": _compare(lambda a, t: a >= t),
    "lte": _compare(lambda a, t: a <= t),
    "contains": _contains,
    "not_contains": lambda a, t: not _contains(a, t),
    "exists": lambda a, t: a is not None,
    "not_exists": lambda a, t: a is None,
    "is_empty": _is_empty,
    "is_not_empty": lambda a, t: not _is_empty(a),
    "matches": _matches,
    "in": _in,
    "not_in": lambda a, t: not _in(a, t),
    "starts_with": _affix("startswith"),
    "ends_with": _affix("endswith"),
    "is_true": lambda a, t: a is True or a == "true" or a == 1,
    "is_false": lambda a, t: a is False or a == "false" or a == 0,
}


def evaluate_condition(condition: ConditionDict, data: Dict[str, Any]) -> bool:
    """Evaluate one condition; an empty condition always matches.

    Unknown operators and operator errors evaluate to False.
    """
    if not condition:
        return True

    field = condition.get("field", "")
    operator = condition.get("operator", "eq")
    check = OPERATORS.get(operator)
    if check is None:
        logger.warning("Unknown operator", operator=operator, field=field)
        return False

    actual = get_nested_value(data, field)
    try:
        return bool(check(actual, condition.get("value")))
    except Exception as e:
        logger.warning("Condition evaluation error", field=field,
                       operator=operator, error=str(e))
        return False


def evaluate_conditions(conditions: List[ConditionDict], data: Dict[str, Any],
                        logic: str = "and") -> bool:
    """Combine conditions with "and" (all) or "or" (any). No conditions match."""
    if not conditions:
        return True
    results = (evaluate_condition(c, data) for c in conditions)
    return any(results) if logic == "or" else all(results)
