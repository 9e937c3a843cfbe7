"""
Targeting rule evaluation.

Rules are ANDed. Each rule resolves a dotted field path against the user or
session property bag (chosen by condition_type) and applies its operator;
exclusion rules (inclusion=False) invert the match.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from .schema import ConditionType, TargetingOperator, TargetingRule

logger = logging.getLogger(__name__)

_MISSING = object()


def resolve_field(properties: Dict[str, Any], path: str) -> Any:
    """Look up 'a.b.c' in nested dicts; returns _MISSING when absent."""
    current: Any = properties
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _matches(operator: TargetingOperator, actual: Any, expected: Any) -> bool:
    missing = actual is _MISSING

    if operator == TargetingOperator.EQUALS:
        return not missing and actual == expected
    if operator == TargetingOperator.NOT_EQUALS:
        return missing or actual != expected
    if operator == TargetingOperator.CONTAINS:
        if missing or actual is None:
            return False
        if isinstance(actual, (list, tuple, set)):
            return expected in actual
        return str(expected) in str(actual)
    if operator in (TargetingOperator.GREATER_THAN, TargetingOperator.LESS_THAN):
        a, e = _as_number(None if missing else actual), _as_number(expected)
        if a is None or e is None:
            return False
        return a > e if operator == TargetingOperator.GREATER_THAN else a < e
    if operator == TargetingOperator.IN:
        return not missing and isinstance(expected, (list, tuple, set)) and actual in expected
    if operator == TargetingOperator.NOT_IN:
        return isinstance(expected, (list, tuple, set)) and (missing or actual not in expected)
    return False


def _property_bag(
    rule: TargetingRule,
    user_properties: Dict[str, Any],
    session_properties: Dict[str, Any],
) -> Dict[str, Any]:
    if rule.condition_type == ConditionType.USER_PROPERTY:
        return user_properties
    return session_properties


def evaluate_rule(
    rule: TargetingRule,
    user_properties: Dict[str, Any],
    session_properties: Dict[str, Any],
) -> bool:
    """True when the rule lets the user through."""
    bag = _property_bag(rule, user_properties, session_properties)
    matched = _matches(rule.operator, resolve_field(bag, rule.field), rule.value)
    return matched if rule.inclusion else not matched


def evaluate_targeting(
    rules: Iterable[TargetingRule],
    user_properties: Optional[Dict[str, Any]] = None,
    session_properties: Optional[Dict[str, Any]] = None,
) -> Tuple[bool, Optional[TargetingRule]]:
    """
    Evaluate all rules for a user.

    Returns:
        Tuple of (eligible, first failing rule or None)
    """
    user_properties = user_properties or {}
    session_properties = session_properties or {}
    for rule in rules:
        if not evaluate_rule(rule, user_properties, session_properties):
            return False, rule
    return True, None
