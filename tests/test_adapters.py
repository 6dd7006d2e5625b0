"""
Unit tests for execution adapters and the abort signal.

The live adapter is exercised against a fake session object, so no proxy
or network access is needed.
"""

import asyncio
import unittest

from curl_cffi.requests import exceptions as requests_exceptions

from execution import (
    AbortSignal,
    DatabasePayload,
    LiveAdapter,
    RecordedAdapter,
    RecordingNotFoundError,
    RequestPayload,
    ShellPayload,
    StepCancelled,
    StepContext
)
from script_models import RecordedResponse, Recording, RecordingSet, RestStep, ShellStep


def recording_set(*recordings):
    return RecordingSet(recordings=list(recordings))


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class FakeSession:
    """Stands in for curl_cffi's AsyncSession."""

    def __init__(self, response=None, error=None, delay=0):
        self.response = response
        self.error = error
        self.delay = delay
        self.posts = []
        self.closed = False

    async def post(self, url, json=None, timeout=None):
        self.posts.append((url, json))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.response

    async def close(self):
        self.closed = True


class TestAbortSignal(unittest.IsolatedAsyncioTestCase):
    """Test the cancellation token."""

    async def test_run_returns_result(self):
        signal = AbortSignal()

        async def work():
            return 42

        self.assertEqual(await signal.run(work()), 42)

    async def test_run_is_interrupted(self):
        signal = AbortSignal()
        asyncio.get_running_loop().call_later(0.01, signal.abort, "Stop")

        with self.assertRaises(StepCancelled) as ctx:
            await signal.run(asyncio.sleep(10))
        self.assertEqual(str(ctx.exception), "Stop")

    async def test_sleep(self):
        signal = AbortSignal()
        await signal.sleep(0)

        signal.abort()
        with self.assertRaises(StepCancelled):
            await signal.sleep(10)

    async def test_abort_keeps_first_reason(self):
        signal = AbortSignal()
        signal.abort("first")
        signal.abort("second")
        self.assertTrue(signal.aborted)
        self.assertEqual(signal.reason, "first")


class TestRecordedAdapter(unittest.IsolatedAsyncioTestCase):
    """Test replay lookup by step identity."""

    def setUp(self):
        self.recordings = recording_set(
            Recording(step_id="login", response=RecordedResponse(body={"via": "id"})),
            Recording(step_id="step-0", response=RecordedResponse(body={"via": "index"})),
            Recording(step_id="step-1", response=RecordedResponse(status=404, body={"error": "gone"})),
            Recording(step_id="step-2", output="legacy text", status=3),
            Recording(step_id="step-3"),
        )
        self.adapter = RecordedAdapter(self.recordings, latency=0)
        self.payload = RequestPayload("GET", "http://api.test/x")

    async def request(self, step, index):
        return await self.adapter.request(self.payload, StepContext(index, step), AbortSignal())

    async def test_id_before_index(self):
        result = await self.request(RestStep(id="login", path="/login"), 0)
        self.assertEqual(result.data, {"via": "id"})

    async def test_index_fallback(self):
        """An id without a recording falls back to step-<index>."""
        result = await self.request(RestStep(id="other", path="/x"), 0)
        self.assertEqual(result.data, {"via": "index"})

    async def test_status_is_replayed_as_data(self):
        result = await self.request(RestStep(path="/x"), 1)
        self.assertEqual(result.status, 404)
        self.assertIsNone(result.error)
        self.assertFalse(result.ok)

    async def test_missing_recording(self):
        with self.assertRaises(RecordingNotFoundError) as ctx:
            await self.request(RestStep(path="/x"), 7)
        self.assertIn("recording", str(ctx.exception))

    async def test_recording_without_response(self):
        with self.assertRaises(RecordingNotFoundError):
            await self.request(RestStep(path="/x"), 3)

    async def test_database_uses_response(self):
        result = await self.adapter.database(
            DatabasePayload(operation="find"), StepContext(0, RestStep(path="/x")), AbortSignal(),
        )
        self.assertEqual(result.data, {"via": "index"})

    async def test_shell_replay(self):
        """Legacy `output` stands in for stdout; status is the exit code."""
        step = ShellStep(command="ls")
        result = await self.adapter.shell(ShellPayload("ls"), StepContext(2, step), AbortSignal())
        self.assertEqual(result.data, {"stdout": "legacy text", "stderr": "", "code": 3})
        self.assertEqual(result.status, 3)

        with self.assertRaises(RecordingNotFoundError):
            await self.adapter.shell(ShellPayload("ls"), StepContext(3, step), AbortSignal())

    async def test_open_browser_needs_no_recording(self):
        result = await self.adapter.open_browser("https://x", StepContext(9, RestStep(path="/")), AbortSignal())
        self.assertEqual(result.data, {"url": "https://x", "opened": False})

    async def test_latency_is_cancellable(self):
        adapter = RecordedAdapter(self.recordings, latency=10)
        signal = AbortSignal()
        asyncio.get_running_loop().call_later(0.01, signal.abort)
        with self.assertRaises(StepCancelled):
            await adapter.request(self.payload, StepContext(0, RestStep(path="/x")), signal)


class TestLiveAdapter(unittest.IsolatedAsyncioTestCase):
    """Test proxy reply handling."""

    def setUp(self):
        self.context = StepContext(0, RestStep(path="/x"))

    def adapter(self, session):
        return LiveAdapter("http://proxy.test/", timeout=5, session=session)

    async def test_request_unwraps_proxy_reply(self):
        session = FakeSession(FakeResponse(200, {"status": 404, "data": {"error": "nope"}, "headers": {"x": "1"}}))
        payload = RequestPayload("GET", "http://api.test/users", {"Accept": "json"})

        result = await self.adapter(session).request(payload, self.context, AbortSignal())

        self.assertEqual(session.posts[0][0], "http://proxy.test/api/execute")
        self.assertEqual(session.posts[0][1]["url"], "http://api.test/users")
        self.assertEqual(result.status, 404)
        self.assertEqual(result.data, {"error": "nope"})
        self.assertEqual(result.headers, {"x": "1"})
        self.assertIsNone(result.error)

    async def test_proxy_failure_is_an_error(self):
        session = FakeSession(FakeResponse(500, {"error": "connect refused"}))
        result = await self.adapter(session).request(RequestPayload("GET", "/x"), self.context, AbortSignal())
        self.assertEqual(result.error, "connect refused")

    async def test_non_json_reply(self):
        session = FakeSession(FakeResponse(502, ValueError("not json")))
        result = await self.adapter(session).request(RequestPayload("GET", "/x"), self.context, AbortSignal())
        self.assertIn("non-JSON", result.error)

    async def test_transport_error(self):
        session = FakeSession(error=requests_exceptions.RequestException("proxy down"))
        result = await self.adapter(session).request(RequestPayload("GET", "/x"), self.context, AbortSignal())
        self.assertTrue(result.error.startswith("Network error"))

    async def test_shell_status_is_exit_code(self):
        reply = {"status": 2, "data": {"stdout": "", "stderr": "bad", "code": 2}}
        session = FakeSession(FakeResponse(200, reply))
        result = await self.adapter(session).shell(ShellPayload("false"), self.context, AbortSignal())
        self.assertEqual(session.posts[0][0], "http://proxy.test/api/execute-shell")
        self.assertEqual(result.status, 2)
        self.assertEqual(result.data["stderr"], "bad")

    async def test_database_endpoint(self):
        session = FakeSession(FakeResponse(200, {"status": 200, "data": [{"_id": 1}]}))
        payload = DatabasePayload(operation="find", collection="users", query={"a": 1})
        result = await self.adapter(session).database(payload, self.context, AbortSignal())
        self.assertEqual(session.posts[0][0], "http://proxy.test/api/execute-db")
        self.assertEqual(session.posts[0][1]["collection"], "users")
        self.assertEqual(result.data, [{"_id": 1}])

    async def test_cancel_interrupts_request(self):
        session = FakeSession(FakeResponse(200, {}), delay=10)
        signal = AbortSignal()
        asyncio.get_running_loop().call_later(0.01, signal.abort)
        with self.assertRaises(StepCancelled):
            await self.adapter(session).request(RequestPayload("GET", "/x"), self.context, signal)

    async def test_close(self):
        session = FakeSession()
        adapter = self.adapter(session)
        await adapter.close()
        self.assertTrue(session.closed)


if __name__ == '__main__':
    unittest.main()
