"""
Script normalizer.

Turns a raw script document (as loaded from YAML/JSON) into the canonical
form: every step in explicit syntax with a `step` tag, form fields expanded
to full descriptors and result fields carrying inferred labels and links.

Normalization is a pure function. It never mutates its input, and running it
on an already normalized document returns an equal document.
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError

from runner_config import LINK_FIELD_TYPES, NUMBER_FIELD_PATTERNS
from script_models import HTTP_METHODS, STEP_KINDS, Script

logger = logging.getLogger(__name__)

# Concise key -> canonical field that receives its value
CONCISE_FIELDS = {
    "slide": "content",
    "shell": "command",
    "browser": "url",
    "code": "source",
    "wait": "duration",
    "assert": "condition",
    "graphql": "query",
    "db": "operation",
    "form": "title",
    "terminal": "content",
    "poll": "endpoint",
}

_CAMEL_RE = re.compile(r"([a-z0-9])([A-Z])")


@dataclass
class ValidationIssue:
    location: str
    message: str

    def __str__(self) -> str:
        return f"{self.location}: {self.message}" if self.location else self.message


class ScriptValidationError(ValueError):
    """Raised when a script document has one or more invalid shapes."""

    def __init__(self, issues: list[ValidationIssue]):
        self.issues = issues
        lines = "\n".join(f"  - {issue}" for issue in issues)
        super().__init__(f"Invalid script ({len(issues)} issue(s)):\n{lines}")


def infer_label(name: str) -> str:
    """tokenAddress -> Token Address, max_supply -> Max Supply."""
    spaced = _CAMEL_RE.sub(r"\1 \2", name).replace("_", " ")
    return " ".join(word[:1].upper() + word[1:] for word in spaced.split())


def infer_field_type(name: str, default: Any = None) -> str:
    if isinstance(default, bool):
        return "toggle"
    if isinstance(default, (int, float)):
        return "number"
    lower = name.lower()
    if any(pattern in lower for pattern in NUMBER_FIELD_PATTERNS):
        return "number"
    return "text"


def normalize_form_field(field: Any, location: str, issues: list[ValidationIssue]) -> Optional[dict]:
    """
    Expand one form field descriptor.

    Accepts the full form ({name: ..., label: ...}), the shorthand
    {amount: 5} and the extended shorthand {amount: {default: 5}}.

    Args:
        field: Raw field descriptor
        location: Location used in issue messages
        issues: Collector for invalid shapes

    Returns:
        Full descriptor dict, or None when the shape is invalid
    """
    if not isinstance(field, dict):
        issues.append(ValidationIssue(location, f"Invalid form field format: {field!r}"))
        return None

    if isinstance(field.get("name"), str):
        result = dict(field)
        if result.get("label") is None:
            result["label"] = infer_label(result["name"])
        if result.get("type") is None:
            result["type"] = infer_field_type(result["name"], result.get("default"))
        return result

    if len(field) != 1:
        issues.append(ValidationIssue(location, f"Invalid form field format: {field!r}"))
        return None

    name, value = next(iter(field.items()))
    if not isinstance(name, str) or isinstance(value, list):
        issues.append(ValidationIssue(location, f"Invalid form field format: {field!r}"))
        return None

    if not isinstance(value, dict):
        return {
            "name": name,
            "label": infer_label(name),
            "type": infer_field_type(name, value),
            "default": value,
        }

    result = {key: item for key, item in value.items() if key != "name"}
    result["name"] = name
    if result.get("label") is None:
        result["label"] = infer_label(name)
    if result.get("type") is None:
        result["type"] = infer_field_type(name, result.get("default"))
    return result


def normalize_result_field(result: Any, links: dict, location: str,
                           issues: list[ValidationIssue]) -> Optional[dict]:
    """Add an inferred label, and a link when exactly one handler is configured."""
    if not isinstance(result, dict) or not isinstance(result.get("key"), str):
        issues.append(ValidationIssue(location, "Result field must be a mapping with a 'key'"))
        return None

    normalized = dict(result)
    if not normalized.get("label"):
        normalized["label"] = infer_label(normalized["key"])

    if not normalized.get("link") and normalized.get("type") in LINK_FIELD_TYPES and len(links) == 1:
        normalized["link"] = next(iter(links))
    return normalized


def detect_kind(raw: dict) -> Optional[str]:
    """
    Resolve the tag of a raw step.

    An explicit `step` key wins, then `rest`, then the remaining concise
    keys. `form` and `poll` only mark a step when their value is a string,
    since a rest step may carry a form list or a poll mapping.
    """
    if "step" in raw:
        return raw["step"]
    if "rest" in raw:
        return "rest"
    for kind in STEP_KINDS:
        if kind == "rest" or kind not in raw:
            continue
        if kind in ("form", "poll") and not isinstance(raw[kind], str):
            continue
        return kind
    return None


def parse_rest_shorthand(value: str) -> tuple[str, str]:
    """ "POST /users" -> ("POST", "/users"); "/users" -> ("GET", "/users")."""
    text = value.strip()
    head, _, rest = text.partition(" ")
    if head.upper() in HTTP_METHODS:
        return head.upper(), rest.strip()
    return "GET", text


def normalize_step(raw: Any, settings: dict, location: str,
                   issues: list[ValidationIssue]) -> Optional[dict]:
    """Normalize one step (never a group) to explicit syntax."""
    if not isinstance(raw, dict):
        issues.append(ValidationIssue(location, f"Step must be a mapping, got {type(raw).__name__}"))
        return None

    kind = detect_kind(raw)
    if kind is None:
        issues.append(ValidationIssue(location, "Unknown step type (expected one of: " + ", ".join(STEP_KINDS) + ")"))
        return None
    if kind not in STEP_KINDS:
        issues.append(ValidationIssue(location, f"Unknown step type: {kind!r}"))
        return None

    step = copy.deepcopy(raw)

    if "step" not in raw:
        value = step.pop(kind)
        if kind == "rest":
            if not isinstance(value, str):
                issues.append(ValidationIssue(location, "'rest' must be a string like 'GET /path'"))
                return None
            method, path = parse_rest_shorthand(value)
            step["method"] = method
            step["path"] = path
        elif kind == "form":
            # an explicit title wins over the shorthand
            step.setdefault("title", value)
        else:
            if kind == "wait" and (isinstance(value, bool) or not isinstance(value, (int, float))):
                issues.append(ValidationIssue(location, "'wait' must be a duration in milliseconds"))
                return None
            step[CONCISE_FIELDS[kind]] = value
        step = {"step": kind, **step}

    if kind == "rest" and isinstance(step.get("method"), str):
        step["method"] = step["method"].upper()

    form_key = "fields" if kind == "form" else "form"
    if kind in ("rest", "form") and step.get(form_key) is not None:
        fields = step[form_key]
        if not isinstance(fields, list):
            issues.append(ValidationIssue(f"{location}.{form_key}", "Form fields must be a list"))
        else:
            step[form_key] = [
                normalized for normalized in (
                    normalize_form_field(field, f"{location}.{form_key}[{i}]", issues)
                    for i, field in enumerate(fields)
                )
                if normalized is not None
            ]

    if step.get("results") is not None:
        results = step["results"]
        links = settings.get("links") or {}
        if not isinstance(results, list):
            issues.append(ValidationIssue(f"{location}.results", "Results must be a list"))
        else:
            step["results"] = [
                normalized for normalized in (
                    normalize_result_field(result, links, f"{location}.results[{i}]", issues)
                    for i, result in enumerate(results)
                )
                if normalized is not None
            ]

    return step


def normalize_script(document: Any) -> dict:
    """
    Normalize a raw script document.

    Args:
        document: Parsed YAML/JSON mapping with a `steps` list

    Returns:
        New canonical document; the input is left untouched

    Raises:
        ScriptValidationError: With every invalid shape found
    """
    if not isinstance(document, dict):
        raise ScriptValidationError([ValidationIssue("", "Script must be a mapping")])

    issues: list[ValidationIssue] = []
    raw_steps = document.get("steps")
    if not isinstance(raw_steps, list):
        raise ScriptValidationError([ValidationIssue("steps", "Script must have a 'steps' list")])

    settings = document.get("settings") or {}
    if not isinstance(settings, dict):
        issues.append(ValidationIssue("settings", "Settings must be a mapping"))
        settings = {}

    steps = []
    for i, entry in enumerate(raw_steps):
        location = f"steps[{i}]"
        if isinstance(entry, dict) and "group" in entry:
            group = {key: copy.deepcopy(value) for key, value in entry.items() if key != "steps"}
            group_steps = entry.get("steps")
            if not isinstance(group_steps, list):
                issues.append(ValidationIssue(f"{location}.steps", "Group must have a 'steps' list"))
                continue
            normalized = [
                normalize_step(step, settings, f"{location}.steps[{j}]", issues)
                for j, step in enumerate(group_steps)
            ]
            group["steps"] = [step for step in normalized if step is not None]
            steps.append(group)
        else:
            step = normalize_step(entry, settings, location, issues)
            if step is not None:
                steps.append(step)

    if issues:
        raise ScriptValidationError(issues)

    result = {key: copy.deepcopy(value) for key, value in document.items() if key != "steps"}
    result["steps"] = steps
    return result


def _location(loc: tuple) -> str:
    text = ""
    skip_tags = False
    for item in loc:
        if isinstance(item, int):
            text += f"[{item}]"
            skip_tags = True
            continue
        # union tags sit right after a list index
        if skip_tags and item in ("step", "group") + STEP_KINDS:
            skip_tags = item == "step"
            continue
        skip_tags = False
        text += f".{item}" if text else str(item)
    return text


def parse_script(document: Any) -> Script:
    """
    Normalize a raw document and build the typed Script model.

    Raises:
        ScriptValidationError: When normalization or model validation fails
    """
    canonical = normalize_script(document)
    try:
        return Script.model_validate(canonical)
    except ValidationError as e:
        issues = [ValidationIssue(_location(error["loc"]), error["msg"]) for error in e.errors()]
        logger.debug(f"Script failed model validation with {len(issues)} issue(s)")
        raise ScriptValidationError(issues) from e
