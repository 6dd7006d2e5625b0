"""
Condition evaluation for assert steps and polling predicates.

Supported syntax:
    $status == 'ok'
    $order.total >= 100
    $items[0].state != "failed"
    status == 'complete'          (narrow form, evaluated against a response)

Equality is loose: "1" == 1 is true.
"""

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .paths import MISSING, get_path

# Alternation order gives two-character operators priority at each position
_OPERATOR_RE = re.compile(r"\s*(==|!=|>=|<=|>|<)\s*")
_NUMBER_LITERAL_RE = re.compile(r"^-?\d+(\.\d+)?$")
_NUMERIC_TEXT_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_FIELD_CONDITION_RE = re.compile(r"^(\w+)\s*(==|!=)\s*['\"]?(\w+)['\"]?$")

_KEYWORDS = {
    'true': True,
    'false': False,
    'null': None,
    'undefined': MISSING,
}


@dataclass
class ConditionResult:
    """Outcome of evaluating one condition, with both resolved operands."""
    passed: bool
    left: Any = MISSING
    right: Any = MISSING
    operator: str = '?'
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'passed': self.passed,
            'left': format_value(self.left),
            'right': format_value(self.right),
            'operator': self.operator,
            'error': self.error,
        }


def evaluate_condition(condition: str, variables: Dict[str, Any]) -> ConditionResult:
    """
    Evaluate "<left> <op> <right>" against the variable store.

    Args:
        condition: Condition expression
        variables: Variable store used to resolve $name operands

    Returns:
        ConditionResult; malformed input yields passed=False with error set
    """
    match = _OPERATOR_RE.search(condition or '')
    if not match:
        return ConditionResult(
            passed=False,
            error="Invalid condition syntax. Expected operator (==, !=, >, <, >=, <=)",
        )

    operator = match.group(1)
    left = resolve_operand(condition[:match.start()], variables)
    right = resolve_operand(condition[match.end():], variables)

    return ConditionResult(
        passed=compare(left, right, operator),
        left=left,
        right=right,
        operator=operator,
    )


def resolve_operand(expr: str, variables: Dict[str, Any]) -> Any:
    """
    Resolve one side of a condition.

    Quoted text becomes a string, numeric literals become numbers, the
    keywords true/false/null/undefined map to their values, $name.path reads
    the variable store, and anything else is returned as raw text.
    """
    expr = expr.strip()

    if len(expr) >= 2 and expr[0] == expr[-1] and expr[0] in ('"', "'"):
        return expr[1:-1]

    if _NUMBER_LITERAL_RE.match(expr):
        return float(expr) if '.' in expr else int(expr)

    if expr in _KEYWORDS:
        return _KEYWORDS[expr]

    if expr.startswith('$'):
        name, _, rest = expr[1:].partition('.')
        bracket = name.find('[')
        if bracket != -1:
            name, rest = name[:bracket], name[bracket:] + ('.' + rest if rest else '')
        if name not in variables:
            return MISSING
        return get_path(variables[name], rest)

    return expr


def to_number(value: Any) -> float:
    """Numeric coercion used by ordering operators and loose equality."""
    if value is None:
        return 0.0
    if value is MISSING:
        return math.nan
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        if _NUMERIC_TEXT_RE.match(text):
            return float(text)
    return math.nan


def loose_equals(left: Any, right: Any) -> bool:
    """
    Compare with string/number coercion.

    None and MISSING equal each other and nothing else. Booleans compare as
    1/0. A number and a string compare numerically. Dicts and lists compare
    by value, and only with other dicts and lists.
    """
    left_absent = left is None or left is MISSING
    right_absent = right is None or right is MISSING
    if left_absent or right_absent:
        return left_absent and right_absent

    if isinstance(left, bool) or isinstance(right, bool):
        if isinstance(left, bool) and isinstance(right, bool):
            return left == right
        left = 1 if left is True else 0 if left is False else left
        right = 1 if right is True else 0 if right is False else right

    if isinstance(left, (dict, list)) or isinstance(right, (dict, list)):
        return type(left) is type(right) and left == right

    if isinstance(left, str) and isinstance(right, str):
        return left == right

    if isinstance(left, (int, float)) or isinstance(right, (int, float)):
        return to_number(left) == to_number(right)

    return left == right


def compare(left: Any, right: Any, operator: str) -> bool:
    """Apply one comparison operator to two resolved operands."""
    if operator == '==':
        return loose_equals(left, right)
    if operator == '!=':
        return not loose_equals(left, right)

    a, b = to_number(left), to_number(right)
    if operator == '>':
        return a > b
    if operator == '>=':
        return a >= b
    if operator == '<':
        return a < b
    if operator == '<=':
        return a <= b
    return False


def js_text(value: Any) -> str:
    """Text form used by the narrow field condition ("null", "undefined", "true")."""
    if value is MISSING:
        return 'undefined'
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def evaluate_field_condition(condition: str, data: Any) -> bool:
    """
    Evaluate the narrow "field == literal" form against a response body.

    Only == and != are accepted, the field is a single identifier (no nested
    path) and the literal may be bare or quoted. Anything else is false.

    Args:
        condition: e.g. "status == 'done'"
        data: Response body to read the field from

    Returns:
        True when the comparison holds
    """
    match = _FIELD_CONDITION_RE.match((condition or '').strip())
    if not match:
        return False

    field, operator, expected = match.groups()
    actual = js_text(get_path(data, field))

    if operator == '==':
        return actual == expected
    return actual != expected


def format_value(value: Any) -> str:
    """Format an operand for display in diagnostics."""
    if value is MISSING:
        return 'undefined'
    if value is None:
        return 'null'
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return js_text(value)
