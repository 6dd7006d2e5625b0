"""
Expression helpers for step execution.

This package contains pure, unit-testable functions for reading nested
response data, substituting $variables into templates and evaluating
condition expressions.
"""

from .paths import MISSING, extract_saves, get_path, has_path, parse_path
from .substitution import (
    substitute,
    substitute_deep,
    find_references,
    find_missing,
    to_text
)
from .conditions import (
    ConditionResult,
    evaluate_condition,
    evaluate_field_condition,
    format_value
)

__all__ = [
    'MISSING',
    'extract_saves',
    'get_path',
    'has_path',
    'parse_path',
    'substitute',
    'substitute_deep',
    'find_references',
    'find_missing',
    'to_text',
    'ConditionResult',
    'evaluate_condition',
    'evaluate_field_condition',
    'format_value'
]
