"""
Path extraction for nested response data.

These functions are pure and never raise. They walk dicts and lists using
dot and bracket notation, e.g. "data.items[0].id" or "[2].name".
"""

from typing import Any, Dict, List, Optional, Union


class _Missing:
    """Marker for a value that is absent (as opposed to present and None)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


MISSING = _Missing()


def parse_path(path: str) -> List[Union[str, int]]:
    """
    Split a path into property names and list indices.

    Args:
        path: Path such as "user.profile.name", "[0].id" or "items[2].value[0]"

    Returns:
        List of segments; ints are list indices, strs are property names
    """
    segments: List[Union[str, int]] = []
    i = 0

    while i < len(path):
        char = path[i]
        if char == '[':
            end = path.find(']', i)
            if end == -1:
                break
            inner = path[i + 1:end].strip()
            if inner.lstrip('-').isdigit() and inner.count('-') <= 1:
                segments.append(int(inner))
            i = end + 1
            if i < len(path) and path[i] == '.':
                i += 1
        elif char == '.':
            i += 1
        else:
            end = i
            while end < len(path) and path[end] not in '.[':
                end += 1
            segments.append(path[i:end])
            i = end
            if i < len(path) and path[i] == '.':
                i += 1

    return segments


def get_path(data: Any, path: str) -> Any:
    """
    Extract a value from nested data.

    Args:
        data: Any JSON-like structure
        path: Dot/bracket path; empty string returns data unchanged

    Returns:
        The value at the path, or MISSING when any segment cannot be resolved
    """
    if not path:
        return data
    if not isinstance(path, str):
        path = str(path)

    current = data
    for segment in parse_path(path):
        if current is None or current is MISSING:
            return MISSING

        if isinstance(segment, int):
            if not isinstance(current, list) or not 0 <= segment < len(current):
                return MISSING
            current = current[segment]
        elif isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING

    return current


def has_path(data: Any, path: str) -> bool:
    """Check whether a path resolves to a value (None counts as present)."""
    return get_path(data, path) is not MISSING


def extract_saves(save: Dict[str, str], data: Any,
                  status: Optional[int] = None) -> Dict[str, Any]:
    """
    Resolve save directives against a response.

    Args:
        save: Mapping of variable name to "_status" or a path into data
        data: Response body
        status: HTTP status of the response, used by "_status"

    Returns:
        Extracted values; directives that do not resolve are left out
    """
    values = {}
    for name, source in (save or {}).items():
        if source == '_status':
            if status is not None:
                values[name] = status
            continue
        value = get_path(data, source)
        if value is not MISSING:
            values[name] = value
    return values
