"""
Unit tests for capturing a live run into recordings.
"""

import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import yaml

from execution import ExecuteResult, RecordedAdapter
from script_loader import load_recordings
from script_normalizer import parse_script
from step_engine import COMPLETE, LIVE, RECORDED, StepController
from step_recorder import RecordingCapture, record_script

STEPS = [
    {
        "rest": "POST /jobs",
        "id": "start",
        "body": {"size": 3},
        "save": {"jobId": "jobId"},
        "wait_for": "jobId",
        "poll": {"endpoint": "/jobs/$jobId", "success_when": "status == 'done'", "save": {"out": "url"}},
    },
    {"shell": "echo ready", "save": {"line": "stdout"}},
    {"db": "find", "collection": "jobs", "save": {"count": "total"}},
    {"browser": "https://docs.example"},
]


class LiveStub:
    """Plays the live adapter: queued results, nothing recorded."""

    mode = LIVE

    def __init__(self):
        self.results = [
            ExecuteResult(data={"jobId": "j1", "status": "queued"}, status=202),
            ExecuteResult(data={"status": "running"}, status=200),
            ExecuteResult(data={"status": "done", "url": "http://files/j1"}, status=200),
            ExecuteResult(data={"stdout": "ready", "stderr": "", "code": 0}, status=0),
            ExecuteResult(data={"total": 4}, status=200),
        ]
        self.closed = False

    async def _next(self):
        return self.results.pop(0)

    async def request(self, payload, context, signal):
        return await self._next()

    async def shell(self, payload, context, signal):
        return await self._next()

    async def database(self, payload, context, signal):
        return await self._next()

    async def open_browser(self, url, context, signal):
        return ExecuteResult(data={"url": url, "opened": True}, status=200)

    async def close(self):
        self.closed = True


def settings():
    return {"base_url": "http://api.test", "polling": {"interval": 0}}


class TestRecordingCapture(unittest.IsolatedAsyncioTestCase):
    """Test that captured runs replay to the same variables."""

    async def asyncSetUp(self):
        self.script = parse_script({"settings": settings(), "steps": STEPS})
        self.capture = RecordingCapture(LiveStub(), demo_id="jobs")
        self.live = StepController(self.script, mode=LIVE, live_adapter=self.capture)
        self.state = await self.live.run_all()
        self.recordings = self.capture.to_recording_set()

    def test_entries(self):
        keys = [recording.step_id for recording in self.recordings.recordings]
        self.assertEqual(keys, ["start", "step-1", "step-2"])
        self.assertEqual(self.recordings.demo_id, "jobs")

    def test_poll_bodies_are_merged(self):
        """Follow-up polls layer over the first response of the step."""
        start = self.recordings.find("start")
        self.assertEqual(start.request.method, "POST")
        self.assertEqual(start.request.body, {"size": 3})
        self.assertEqual(start.response.status, 202)
        self.assertEqual(start.response.body, {"jobId": "j1", "status": "done", "url": "http://files/j1"})

    def test_shell_entry(self):
        shell = self.recordings.find("step-1")
        self.assertEqual((shell.stdout, shell.status), ("ready", 0))

    async def test_replay_matches_live(self):
        controller = StepController(
            self.script,
            mode=RECORDED,
            recorded_adapter=RecordedAdapter(self.recordings, latency=0),
        )
        replayed = await controller.run_all()

        self.assertEqual(self.state.statuses, [COMPLETE] * 4)
        self.assertEqual(replayed.statuses, [COMPLETE] * 4)
        self.assertEqual(replayed.variables, self.state.variables)
        self.assertEqual(replayed.variables["out"], "http://files/j1")


class TestRecordScript(unittest.IsolatedAsyncioTestCase):
    """Test the file-level recording entry point."""

    async def test_writes_recordings_beside_script(self):
        stub = LiveStub()
        with tempfile.TemporaryDirectory() as tmp:
            script_path = Path(tmp) / "demo.yaml"
            script_path.write_text(
                yaml.safe_dump({"settings": settings(), "steps": STEPS}), encoding="utf-8",
            )

            with patch("step_recorder.LiveAdapter", return_value=stub):
                recordings = await record_script(str(script_path))

            saved = load_recordings(str(Path(tmp) / "recordings.json"))
            self.assertEqual(len(saved.recordings), len(recordings.recordings))
            self.assertEqual(saved.demo_id, Path(tmp).name)
            self.assertTrue(stub.closed)


if __name__ == '__main__':
    unittest.main()
