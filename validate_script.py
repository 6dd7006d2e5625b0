"""
Simple script to validate a walkthrough script file.

Usage:
    python validate_script.py demos/onboarding/demo.yaml
"""

import sys
import logging
from collections import Counter

from script_loader import find_recordings, load_recordings, load_script, validate_script
from script_models import step_keys, step_title
from script_normalizer import ScriptValidationError

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)


def main():
    if len(sys.argv) < 2:
        print("Usage: python validate_script.py <script_file>")
        sys.exit(1)

    script_file = sys.argv[1]

    try:
        logger.info(f"Loading script: {script_file}")
        script = load_script(script_file)
        steps = script.flat_steps()

        logger.info("✓ Script loaded successfully")
        logger.info(f"  Title: {script.title or '(untitled)'}")
        if script.settings.base_url:
            logger.info(f"  Base URL: {script.settings.base_url}")

        kinds = Counter(step.step for step in steps)
        logger.info(f"  Steps: {len(steps)} ({', '.join(f'{k}: {n}' for k, n in sorted(kinds.items()))})")
        for i, step in enumerate(steps):
            marker = f" #{step.id}" if step.id else ""
            logger.info(f"    {i:>3}. [{step.step}] {step_title(step, i)}{marker}")

        recordings_path = find_recordings(script_file)
        if recordings_path:
            recordings = load_recordings(str(recordings_path))
            missing = [
                i for i, step in enumerate(steps)
                if step.step in ('rest', 'shell', 'graphql', 'db', 'poll')
                and not any(recordings.find(key) for key in step_keys(step, i))
            ]
            logger.info(f"  Recordings: {len(recordings.recordings)} ({recordings_path})")
            if missing:
                logger.warning(f"  No recording for steps: {', '.join(map(str, missing))}")
        else:
            logger.info("  Recordings: None (live mode only)")

        # Validate
        warnings = validate_script(script)
        if warnings:
            logger.warning("Validation warnings:")
            for warning in warnings:
                logger.warning(f"  - {warning}")
        else:
            logger.info("✓ No validation warnings")

        logger.info("")
        logger.info("Script is valid and ready to use!")

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        sys.exit(1)
    except ScriptValidationError as e:
        logger.error(f"Invalid script with {len(e.issues)} issue(s):")
        for issue in e.issues:
            logger.error(f"  - {issue}")
        sys.exit(1)
    except ValueError as e:
        logger.error(f"Invalid script: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
