"""
Comparison of observed action values against expected values and rules.

Supported rule shapes (stored as JSON on the action)::

    {"type": "equals", "value": "1"}
    {"type": "range", "min": 0.5, "max": 1.5}
    {"type": "regex", "pattern": "^SN[0-9]{6}$"}
    {"type": "in", "values": ["OK", "PASS"]}
"""

import json
import re
from typing import Any, Dict, Optional, Tuple, Union

_TRUE_STRINGS = {"true", "1", "on", "yes"}
_FALSE_STRINGS = {"false", "0", "off", "no"}

Rule = Union[Dict[str, Any], str, None]


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS and not text.isdigit():
            return 1.0
        if text in _FALSE_STRINGS and not text.isdigit():
            return 0.0
        try:
            return float(text)
        except ValueError:
            return None
    return None


def values_match(actual: Any, expected: Any) -> bool:
    """Compare device values leniently: ``"1"``, ``1``, ``1.0`` and ``True`` are equal."""
    if actual is None or expected is None:
        return actual is None and expected is None
    left = _as_number(actual)
    right = _as_number(expected)
    if left is not None and right is not None:
        return left == right
    return str(actual).strip() == str(expected).strip()


def _parse_rule(rule: Rule) -> Optional[Dict[str, Any]]:
    if rule is None or rule == "" or rule == {}:
        return None
    if isinstance(rule, str):
        try:
            rule = json.loads(rule)
        except ValueError:
            # A bare string is treated as an equality rule
            return {"type": "equals", "value": rule}
        if not isinstance(rule, dict):
            return {"type": "equals", "value": rule}
    if not isinstance(rule, dict):
        return None
    return rule


def evaluate_rule(value: Any, rule: Dict[str, Any], expected: Any = None) -> Tuple[bool, Optional[str]]:
    """Apply one validation rule; returns (passed, failure message)"""
    try:
        return _evaluate(value, rule, expected)
    except (re.error, ValueError, TypeError) as e:
        return False, f"Invalid validation rule: {e}"


def _evaluate(value: Any, rule: Dict[str, Any], expected: Any) -> Tuple[bool, Optional[str]]:
    kind = str(rule.get("type", "equals")).lower()

    if kind == "range":
        number = _as_number(value)
        low = rule.get("min")
        high = rule.get("max")
        if number is None:
            return False, f"Value {value!r} is not numeric"
        if (low is not None and number < float(low)) or (high is not None and number > float(high)):
            return False, f"Value {value} not in range [{low}, {high}]"
        return True, None

    if kind == "regex":
        pattern = rule.get("pattern") or expected
        if pattern is None:
            return True, None
        if value is None or re.search(str(pattern), str(value)) is None:
            return False, f"Value {value!r} does not match pattern {pattern}"
        return True, None

    if kind == "in":
        allowed = rule.get("values") or []
        if any(values_match(value, candidate) for candidate in allowed):
            return True, None
        return False, f"Value {value!r} not in {allowed}"

    if kind == "equals":
        target = rule.get("value", expected)
        if target is None:
            return True, None
        if values_match(value, target):
            return True, None
        return False, f"Expected {target}, got {value}"

    return False, f"Unknown validation rule type {kind!r}"


def validate_value(value: Any, expected: Any = None, rule: Rule = None) -> Tuple[Optional[bool], Optional[str]]:
    """
    Validate an observed value.

    Returns:
        (None, None) when neither an expected value nor a rule is defined,
        otherwise (passed, failure message)
    """
    parsed = _parse_rule(rule)
    if parsed is None:
        if expected is None or expected == "":
            return None, None
        if values_match(value, expected):
            return True, None
        return False, f"Expected {expected}, got {value}"
    return evaluate_rule(value, parsed, expected)


def rule_error(rule: Rule, expected: Any = None) -> Optional[str]:
    """Describe why a stored rule can never be evaluated; None when it is usable"""
    parsed = _parse_rule(rule)
    if parsed is None:
        return None
    kind = str(parsed.get("type", "equals")).lower()
    try:
        if kind == "range":
            for bound in (parsed.get("min"), parsed.get("max")):
                if bound is not None:
                    float(bound)
        elif kind == "regex":
            pattern = parsed.get("pattern") or expected
            if pattern is not None:
                re.compile(str(pattern))
        elif kind == "in":
            if not isinstance(parsed.get("values") or [], (list, tuple)):
                raise TypeError("'values' must be a list")
        elif kind != "equals":
            return f"Invalid validation rule: unknown type {kind!r}"
    except (re.error, ValueError, TypeError) as e:
        return f"Invalid validation rule: {e}"
    return None
