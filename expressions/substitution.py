"""
Variable substitution for step templates.

Replaces $name tokens with values from a variable map. Unknown tokens are
left untouched so a script can reference variables that a later step will
produce; use find_missing() to report them.
"""

import json
import re
from typing import Any, Dict, Set

from .paths import MISSING, get_path

# $name, optionally followed by a path suffix like .data.id or [0].name
_TOKEN_RE = re.compile(
    r"\$([A-Za-z_][A-Za-z0-9_]*)((?:\.[A-Za-z_][A-Za-z0-9_]*|\[\d+\])*)"
)


def to_text(value: Any) -> str:
    """
    Render a variable value the way it appears inside a template.

    Args:
        value: Any JSON-like value

    Returns:
        "" for None/MISSING, "true"/"false" for booleans, integral floats
        without a trailing ".0", compact JSON for dicts and lists
    """
    if value is None or value is MISSING:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(',', ':'), default=str)
    return str(value)


def substitute(text: str, variables: Dict[str, Any]) -> str:
    """
    Replace $name tokens in a string.

    A token with a path suffix ($user.name) renders the nested value when the
    variable holds a dict or list and the suffix resolves. Otherwise only the
    $name part is replaced and the suffix stays as plain text.

    Args:
        text: Template string
        variables: Variable store

    Returns:
        New string with known tokens replaced
    """
    def replacer(match: re.Match) -> str:
        name, suffix = match.group(1), match.group(2)
        if name not in variables:
            return match.group(0)

        value = variables[name]
        if suffix and isinstance(value, (dict, list)):
            nested = get_path(value, suffix)
            if nested is not MISSING:
                return to_text(nested)
        return to_text(value) + suffix

    return _TOKEN_RE.sub(replacer, text)


def substitute_deep(value: Any, variables: Dict[str, Any]) -> Any:
    """
    Apply substitute() to every string inside lists and dicts.

    The input is never modified; containers are rebuilt.
    """
    if isinstance(value, str):
        return substitute(value, variables)
    if isinstance(value, list):
        return [substitute_deep(item, variables) for item in value]
    if isinstance(value, dict):
        return {key: substitute_deep(item, variables) for key, item in value.items()}
    return value


def find_references(value: Any) -> Set[str]:
    """
    Collect every variable name referenced anywhere in value.

    Args:
        value: String, list, dict or scalar

    Returns:
        Set of root variable names (without the leading $)
    """
    if isinstance(value, str):
        return {match.group(1) for match in _TOKEN_RE.finditer(value)}
    if isinstance(value, list):
        names: Set[str] = set()
        for item in value:
            names |= find_references(item)
        return names
    if isinstance(value, dict):
        names = set()
        for item in value.values():
            names |= find_references(item)
        return names
    return set()


def find_missing(value: Any, variables: Dict[str, Any]) -> Set[str]:
    """Referenced variable names that are not in the store yet."""
    return find_references(value) - set(variables)
