"""
Script loader.

Loads walkthrough scripts from YAML (or JSON) files, finds the recordings
captured next to them and runs static checks that are worth a warning but
do not stop a script from running.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import yaml

from runner_config import RECORDINGS_FILE
from script_models import RecordingSet, Script, saved_names, step_references
from script_normalizer import parse_script

logger = logging.getLogger(__name__)


def read_document(file_path: str) -> Any:
    """
    Read a raw YAML or JSON document.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If parsing fails
    """
    path = Path(file_path)

    if not path.exists():
        raise FileNotFoundError(f"Script file not found: {file_path}")

    with open(path, 'r', encoding='utf-8') as f:
        # safe_load reads JSON too
        return yaml.safe_load(f)


def load_script(file_path: str) -> Script:
    """
    Load and normalize a script file.

    Args:
        file_path: Path to a YAML or JSON script

    Returns:
        Canonical Script instance

    Raises:
        FileNotFoundError: If file doesn't exist
        ScriptValidationError: If the script has invalid steps
        ValueError: If the file is not a mapping
        yaml.YAMLError: If YAML parsing fails
    """
    data = read_document(file_path)

    if not isinstance(data, dict):
        raise ValueError("Script file must contain a YAML dictionary")

    script = parse_script(data)
    logger.debug(f"Loaded script '{script.title}' with {len(script.flat_steps())} steps")
    return script


def find_recordings(script_path: str) -> Optional[Path]:
    """Path of the recordings file beside a script, if one exists."""
    candidate = Path(script_path).parent / RECORDINGS_FILE
    return candidate if candidate.exists() else None


def load_recordings(file_path: str) -> RecordingSet:
    """
    Load a recordings file.

    Raises:
        FileNotFoundError: If file doesn't exist
        pydantic.ValidationError: If the recordings have the wrong shape
    """
    path = Path(file_path)

    if not path.exists():
        raise FileNotFoundError(f"Recordings file not found: {file_path}")

    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    recordings = RecordingSet.model_validate(data)
    logger.debug(f"Loaded {len(recordings.recordings)} recordings from {file_path}")
    return recordings


def load_script_with_recordings(script_path: str) -> tuple:
    """Load a script and, when present, the recordings next to it."""
    script = load_script(script_path)
    recordings_path = find_recordings(script_path)
    recordings = load_recordings(str(recordings_path)) if recordings_path else None
    return script, recordings


def save_recordings(recordings: RecordingSet, file_path: str) -> None:
    """Write a recording set in the camelCase on-disk format."""
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, 'w', encoding='utf-8') as f:
        json.dump(recordings.model_dump(by_alias=True, exclude_none=True), f, indent=2)
        f.write('\n')


def validate_script(script: Script) -> List[str]:
    """
    Check a script and return a list of warnings (not errors).

    Args:
        script: Normalized script

    Returns:
        List of warning messages (empty if no warnings)
    """
    warnings = []
    steps = script.flat_steps()

    # Duplicate ids
    seen: Dict[str, int] = {}
    for i, step in enumerate(steps):
        if step.id:
            if step.id in seen:
                warnings.append(f"Duplicate step id '{step.id}' (steps {seen[step.id]} and {i})")
            else:
                seen[step.id] = i

    # Branch targets must exist
    for i, step in enumerate(steps):
        targets = [step.goto] if step.goto else []
        if step.step == 'slide':
            targets.extend(choice.goto for choice in step.choices)
        for target in targets:
            if target not in seen:
                warnings.append(f"Step {i} jumps to unknown step id '{target}'")

    # Variables referenced before any step saves them
    available: Set[str] = set()
    for i, step in enumerate(steps):
        for name in sorted(step_references(step) - available):
            warnings.append(f"Step {i} references ${name} before any step saves it")
        available |= saved_names(step)

        if step.step == 'rest' and step.wait_for and not step.poll:
            warnings.append(f"Step {i} has 'wait_for' but no 'poll' configuration")

    if not steps:
        warnings.append("Script has no steps")

    return warnings
