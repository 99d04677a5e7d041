"""
Condition evaluator used by the Condition node.

Every operator takes ``(input, value, case_sensitive)`` and returns a bool.
Type problems (non-numeric operands, malformed patterns) evaluate to False,
they never raise.
"""
from __future__ import annotations

import re
from typing import Any, Callable, Optional


def _fold(a: str, b: str, case_sensitive: bool) -> tuple[str, str]:
    if case_sensitive:
        return a, b
    return a.lower(), b.lower()


def _equals(a: str, b: str, cs: bool) -> bool:
    a, b = _fold(a, b, cs)
    return a == b


def _contains(a: str, b: str, cs: bool) -> bool:
    a, b = _fold(a, b, cs)
    return b in a


def _starts_with(a: str, b: str, cs: bool) -> bool:
    a, b = _fold(a, b, cs)
    return a.startswith(b)


def _ends_with(a: str, b: str, cs: bool) -> bool:
    a, b = _fold(a, b, cs)
    return a.endswith(b)


def _regex(a: str, pattern: str, cs: bool) -> bool:
    try:
        return re.search(pattern, a, 0 if cs else re.IGNORECASE) is not None
    except re.error:
        return False


def _to_number(raw: str) -> Optional[float]:
    try:
        return float(raw.strip())
    except (TypeError, ValueError, AttributeError):
        return None


def _greater_than(a: str, b: str, cs: bool) -> bool:
    x, y = _to_number(a), _to_number(b)
    return x is not None and y is not None and x > y


def _less_than(a: str, b: str, cs: bool) -> bool:
    x, y = _to_number(a), _to_number(b)
    return x is not None and y is not None and x < y


OPERATORS: dict[str, Callable[[str, str, bool], bool]] = {
    "equals": _equals,
    "contains": _contains,
    "startsWith": _starts_with,
    "endsWith": _ends_with,
    "regex": _regex,
    "greaterThan": _greater_than,
    "lessThan": _less_than,
    "isEmpty": lambda a, b, cs: not a.strip(),
    "isNotEmpty": lambda a, b, cs: bool(a.strip()),
}

# Operators whose right operand names a session variable.
VARIABLE_OPERATORS = {"variable-equals", "variable-contains"}

# Exact comparisons unless a flow says otherwise; the rest fold case.
CASE_SENSITIVE_BY_DEFAULT = {"equals", "variable-equals"}


def evaluate_condition(
    operator: str,
    input_value: Any,
    value: Any,
    case_sensitive: Optional[bool] = None,
    variables: dict[str, str] = None,
) -> bool:
    """
    Evaluate one operator.

    ``variable-equals`` is true when the input equals the session variable
    named by *value*; ``variable-contains`` is true when that variable
    contains the input.
    """
    if case_sensitive is None:
        case_sensitive = operator in CASE_SENSITIVE_BY_DEFAULT
    a = "" if input_value is None else str(input_value)
    b = "" if value is None else str(value)

    if operator in VARIABLE_OPERATORS:
        stored = (variables or {}).get(b, "")
        if operator == "variable-equals":
            return _equals(a, stored, case_sensitive)
        return _contains(stored, a, case_sensitive)

    fn = OPERATORS.get(operator)
    if fn is None:
        return False
    try:
        return fn(a, b, case_sensitive)
    except (TypeError, ValueError):
        return False


def is_known_operator(operator: str) -> bool:
    return operator in OPERATORS or operator in VARIABLE_OPERATORS
