"""
Execution adapters.

One contract, two strategies. LiveAdapter forwards every side effect to the
trusted local proxy; RecordedAdapter replays captured results keyed by step
identity and never touches the network.

Both return ExecuteResult. A target's non-2xx status is data, not an error:
only transport failures (DNS, timeout, proxy down) set `error`.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Protocol

from curl_cffi import requests
from curl_cffi.requests import exceptions as requests_exceptions

from runner_config import PROXY_URL, RECORDED_LATENCY_SECONDS, REQUEST_TIMEOUT
from script_models import Recording, RecordingSet, step_keys

from .cancel import AbortSignal

logger = logging.getLogger(__name__)

NO_RECORDING_MESSAGE = "No recording available for this step"


class RecordingNotFoundError(LookupError):
    """No recording entry matches the step being replayed."""

    def __init__(self, message: str = NO_RECORDING_MESSAGE):
        super().__init__(message)


@dataclass
class StepContext:
    """Identity of the step a call is made for."""
    index: int
    step: Any


@dataclass
class RequestPayload:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None


@dataclass
class ShellPayload:
    command: str
    shell_type: Optional[str] = None
    workdir: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class DatabasePayload:
    operation: str
    type: Optional[str] = None
    collection: Optional[str] = None
    table: Optional[str] = None
    query: Any = None
    update: Optional[Dict[str, Any]] = None
    document: Optional[Dict[str, Any]] = None
    projection: Optional[Dict[str, int]] = None


@dataclass
class ExecuteResult:
    """
    Shared return shape of every adapter channel.

    For shell calls `status` is the exit code and `data` holds
    {"stdout", "stderr", "code"}.
    """
    data: Any = None
    status: int = 0
    error: Optional[str] = None
    headers: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None and self.status < 400


class ExecutionAdapter(Protocol):
    """
    Interface the controller and step executors call through.

    Lets live and recorded execution be swapped without the executors
    branching on mode.
    """

    mode: str

    async def request(self, payload: RequestPayload, context: StepContext,
                      signal: AbortSignal) -> ExecuteResult:
        """HTTP exchange used by rest, graphql and poll steps."""
        ...

    async def shell(self, payload: ShellPayload, context: StepContext,
                    signal: AbortSignal) -> ExecuteResult:
        """Run a shell command."""
        ...

    async def database(self, payload: DatabasePayload, context: StepContext,
                       signal: AbortSignal) -> ExecuteResult:
        """Run a database operation."""
        ...

    async def open_browser(self, url: str, context: StepContext,
                           signal: AbortSignal) -> ExecuteResult:
        """Open a URL in a browser window."""
        ...


class LiveAdapter:
    """
    Forwards calls to the proxy server with curl_cffi.

    The proxy answers 200 with {status, data, headers} for any target
    response, so a non-200 from the proxy itself means a transport failure.
    """

    mode = "live"

    def __init__(self, proxy_url: str = PROXY_URL, timeout: float = REQUEST_TIMEOUT,
                 session: Optional[Any] = None):
        self.proxy_url = proxy_url.rstrip('/')
        self.timeout = timeout
        self._session = session

    def _get_session(self):
        if self._session is None:
            self._session = requests.AsyncSession()
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _post(self, endpoint: str, payload: Dict[str, Any],
                    signal: AbortSignal) -> ExecuteResult:
        url = f"{self.proxy_url}{endpoint}"
        try:
            response = await signal.run(
                self._get_session().post(url, json=payload, timeout=self.timeout)
            )
        except requests_exceptions.RequestException as e:
            logger.warning(f"Proxy call to {endpoint} failed: {e}")
            return ExecuteResult(error=f"Network error: {e}")

        try:
            body = response.json()
        except ValueError:
            return ExecuteResult(
                status=response.status_code,
                error=f"Proxy returned a non-JSON response (HTTP {response.status_code})",
            )

        if response.status_code != 200:
            message = None
            if isinstance(body, dict):
                message = body.get('error') or body.get('detail')
            return ExecuteResult(
                status=response.status_code,
                error=str(message or f"Proxy error (HTTP {response.status_code})"),
            )

        if not isinstance(body, dict):
            return ExecuteResult(data=body, status=200)

        return ExecuteResult(
            data=body.get('data'),
            status=int(body.get('status') or 0),
            error=body.get('error'),
            headers=body.get('headers') or {},
        )

    async def request(self, payload: RequestPayload, context: StepContext,
                      signal: AbortSignal) -> ExecuteResult:
        logger.debug(f"[live] {payload.method} {payload.url}")
        return await self._post('/api/execute', asdict(payload), signal)

    async def shell(self, payload: ShellPayload, context: StepContext,
                    signal: AbortSignal) -> ExecuteResult:
        logger.debug(f"[live] shell: {payload.command}")
        result = await self._post('/api/execute-shell', asdict(payload), signal)
        if result.error is None and isinstance(result.data, dict):
            result.status = int(result.data.get('code') or 0)
        return result

    async def database(self, payload: DatabasePayload, context: StepContext,
                       signal: AbortSignal) -> ExecuteResult:
        logger.debug(f"[live] db {payload.operation}")
        return await self._post('/api/execute-db', asdict(payload), signal)

    async def open_browser(self, url: str, context: StepContext,
                           signal: AbortSignal) -> ExecuteResult:
        return await self._post('/api/open-browser', {'url': url}, signal)


class RecordedAdapter:
    """
    Replays recordings. Lookup tries the step's explicit id first, then
    the positional "step-<index>" key.
    """

    mode = "recorded"

    def __init__(self, recordings: Optional[RecordingSet] = None,
                 latency: float = RECORDED_LATENCY_SECONDS):
        self.recordings = recordings or RecordingSet()
        self.latency = latency

    def find(self, context: StepContext) -> Optional[Recording]:
        for key in step_keys(context.step, context.index):
            recording = self.recordings.find(key)
            if recording is not None:
                return recording
        return None

    def _require(self, context: StepContext) -> Recording:
        recording = self.find(context)
        if recording is None:
            raise RecordingNotFoundError()
        return recording

    async def _replay_response(self, context: StepContext, signal: AbortSignal) -> ExecuteResult:
        recording = self._require(context)
        if recording.response is None:
            raise RecordingNotFoundError()

        await signal.sleep(self.latency)
        response = recording.response
        return ExecuteResult(
            data=response.body,
            status=response.status,
            headers=dict(response.headers),
        )

    async def request(self, payload: RequestPayload, context: StepContext,
                      signal: AbortSignal) -> ExecuteResult:
        return await self._replay_response(context, signal)

    async def database(self, payload: DatabasePayload, context: StepContext,
                       signal: AbortSignal) -> ExecuteResult:
        return await self._replay_response(context, signal)

    async def shell(self, payload: ShellPayload, context: StepContext,
                    signal: AbortSignal) -> ExecuteResult:
        recording = self._require(context)
        if recording.shell_output is None and recording.stderr is None:
            raise RecordingNotFoundError()

        await signal.sleep(self.latency)
        code = recording.status or 0
        return ExecuteResult(
            data={
                'stdout': recording.shell_output or '',
                'stderr': recording.stderr or '',
                'code': code,
            },
            status=code,
        )

    async def open_browser(self, url: str, context: StepContext,
                           signal: AbortSignal) -> ExecuteResult:
        # nothing to replay; the viewer opens the link itself
        return ExecuteResult(data={'url': url, 'opened': False}, status=200)
