"""
Step Recorder: captures a live run into a recordings file.

RecordingCapture wraps the live adapter, passes every call through and
keeps what came back, keyed the same way RecordedAdapter looks it up.

Usage:
    python step_recorder.py demos/onboarding/demo.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any

from execution import (
    AbortSignal,
    DatabasePayload,
    ExecuteResult,
    LiveAdapter,
    RequestPayload,
    ShellPayload,
    StepContext,
)
from runner_config import RECORDINGS_FILE
from script_loader import load_script, save_recordings
from script_models import RecordedRequest, RecordedResponse, Recording, RecordingSet, step_keys
from step_engine import ERROR, LIVE, StepController

logger = logging.getLogger(__name__)


class RecordingCapture:
    """Adapter that records every successful live call per step."""

    mode = LIVE

    def __init__(self, adapter: Any = None, demo_id: str | None = None):
        self.adapter = adapter or LiveAdapter()
        self.demo_id = demo_id
        self._entries: dict[str, Recording] = {}

    @staticmethod
    def _key(context: StepContext) -> str:
        return step_keys(context.step, context.index)[0]

    def _store_response(self, context: StepContext, request: RecordedRequest,
                        result: ExecuteResult, duration: float):
        key = self._key(context)
        body = result.data
        status = result.status
        previous = self._entries.get(key)

        if previous is not None and previous.response is not None:
            # follow-up calls of one step (polls) layer over the first response
            if isinstance(previous.response.body, dict) and isinstance(body, dict):
                body = {**previous.response.body, **body}
            request = previous.request
            status = previous.response.status

        self._entries[key] = Recording(
            step_id=key,
            request=request,
            response=RecordedResponse(status=status, headers=result.headers, body=body),
            duration=duration,
        )

    async def request(self, payload: RequestPayload, context: StepContext,
                      signal: AbortSignal) -> ExecuteResult:
        started = time.monotonic()
        result = await self.adapter.request(payload, context, signal)
        if result.error is None:
            request = RecordedRequest(**asdict(payload))
            self._store_response(context, request, result, time.monotonic() - started)
        return result

    async def database(self, payload: DatabasePayload, context: StepContext,
                       signal: AbortSignal) -> ExecuteResult:
        started = time.monotonic()
        result = await self.adapter.database(payload, context, signal)
        if result.error is None:
            request = RecordedRequest(
                method=payload.operation,
                url=payload.collection or payload.table or "",
                body={k: v for k, v in asdict(payload).items() if v is not None},
            )
            self._store_response(context, request, result, time.monotonic() - started)
        return result

    async def shell(self, payload: ShellPayload, context: StepContext,
                    signal: AbortSignal) -> ExecuteResult:
        started = time.monotonic()
        result = await self.adapter.shell(payload, context, signal)
        if result.error is None:
            data = result.data if isinstance(result.data, dict) else {}
            key = self._key(context)
            self._entries[key] = Recording(
                step_id=key,
                stdout=data.get("stdout", ""),
                stderr=data.get("stderr", ""),
                status=result.status,
                duration=time.monotonic() - started,
            )
        return result

    async def open_browser(self, url: str, context: StepContext,
                           signal: AbortSignal) -> ExecuteResult:
        return await self.adapter.open_browser(url, context, signal)

    def to_recording_set(self) -> RecordingSet:
        return RecordingSet(demo_id=self.demo_id, recordings=list(self._entries.values()))


async def record_script(script_path: str, output_path: str | None = None,
                        stop_on_error: bool = True) -> RecordingSet:
    """Run a script live from the first step and save what it captured."""
    script = load_script(script_path)
    live = LiveAdapter()
    capture = RecordingCapture(live, demo_id=Path(script_path).parent.name or None)
    controller = StepController(script, mode=LIVE, live_adapter=capture)

    try:
        state = await controller.run_all(stop_on_error=stop_on_error)
    finally:
        await live.close()

    failed = [i for i, status in enumerate(state.statuses) if status == ERROR]
    for i in failed:
        logger.warning(f"Step {i} failed while recording: {state.errors[i]}")

    recordings = capture.to_recording_set()
    target = output_path or str(Path(script_path).parent / RECORDINGS_FILE)
    save_recordings(recordings, target)
    logger.info(f"Saved {len(recordings.recordings)} recordings to {target}")
    return recordings


def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    parser = argparse.ArgumentParser(description="Record a live run of a walkthrough script")
    parser.add_argument("script", help="Script YAML/JSON file")
    parser.add_argument("--output", help=f"Recordings file (default: {RECORDINGS_FILE} beside the script)")
    parser.add_argument("--keep-going", action="store_true", help="Continue after a failing step")
    args = parser.parse_args()

    try:
        asyncio.run(record_script(args.script, args.output, stop_on_error=not args.keep_going))
    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        sys.exit(1)
    except ValueError as e:
        logger.error(f"Invalid script: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
