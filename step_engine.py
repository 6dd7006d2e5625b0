"""
Step engine: drives a normalized script one step at a time.

StepController owns the cursor, per-step statuses and the variable store.
Each step kind has an executor that performs its side effect through the
selected execution adapter and returns a StepOutcome. Only the controller
writes outcomes into the state, and only on the completion path, so a
cancelled or failed executor never leaves a partial variable write behind.

Status machine per step: pending -> executing -> complete | error.
A cancelled step goes back to pending. Reset is a full reset: statuses,
responses, errors and variables are cleared and the cursor returns to 0.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from execution import (
    AbortSignal,
    DatabasePayload,
    LiveAdapter,
    RecordedAdapter,
    RequestPayload,
    ShellPayload,
    StepCancelled,
    StepContext,
)
from expressions import (
    MISSING,
    evaluate_condition,
    extract_saves,
    get_path,
    substitute,
    substitute_deep,
)
from poll_controller import PollController, PollState, resolve_poll_limits
from script_models import Script, saved_names, step_references, step_title

logger = logging.getLogger(__name__)

PENDING = "pending"
EXECUTING = "executing"
COMPLETE = "complete"
ERROR = "error"

LIVE = "live"
RECORDED = "recorded"

BODYLESS_METHODS = ("GET", "HEAD", "OPTIONS")

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Ordered: the first matching group wins (415 before 404)
ERROR_PATTERNS = [
    (("timeout", "timed out"), None, "Request Timeout"),
    (("network", "failed to fetch", "connection"), None, "Network Error"),
    (("401", "unauthorized"), None, "Authentication Error"),
    (("403", "forbidden"), None, "Access Denied"),
    (("415", "unsupported media type", "mime"), None, "Invalid Content-Type"),
    (("404",), re.compile(r"\bnot found\b"), "Not Found"),
    (("500", "internal server"), None, "Server Error"),
    (("polling",), None, "Polling Failed"),
    (("recording",), None, "Recording Missing"),
]


class StepBusyError(RuntimeError):
    """Another step is already executing."""


class StepError(Exception):
    """A step failed without producing a response worth keeping."""


@dataclass
class StepOutcome:
    """What an executor produced. Written to the state by the controller."""
    response: Any = None
    variables: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class ControllerState:
    cursor: int = 0
    statuses: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    mode: str = LIVE
    responses: list[Any] = field(default_factory=list)
    errors: list[Optional[str]] = field(default_factory=list)
    poll: Optional[PollState] = None

    def snapshot(self) -> ControllerState:
        return copy.deepcopy(self)


# --- Helpers ---


def classify_error(message: str) -> str:
    """Map an error message to a short category for display."""
    lower = (message or "").lower()
    for patterns, regex, label in ERROR_PATTERNS:
        if any(p in lower for p in patterns) or (regex is not None and regex.search(lower)):
            return label
    return "Request Error"


def error_message(body: Any, status: int) -> str:
    """Message for an HTTP >= 400 response: error, detail, message, else the status."""
    if isinstance(body, dict):
        for key in ("error", "detail", "message"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {status}"


def parse_terminal(content: str, prompt: str = "$") -> list[dict[str, Any]]:
    """
    Split terminal content into command and output blocks.

    Lines starting with the prompt are single-line command blocks;
    consecutive other lines are grouped into one output block.
    """
    blocks: list[dict[str, Any]] = []
    output: list[str] = []

    for line in content.split("\n"):
        stripped = line.lstrip()
        if stripped.startswith(prompt):
            if output:
                blocks.append({"type": "output", "lines": output})
                output = []
            blocks.append({"type": "command", "lines": [stripped[len(prompt):].lstrip()]})
        else:
            output.append(line)

    if output:
        blocks.append({"type": "output", "lines": output})
    return blocks


def shell_saves(save: dict[str, str], result: dict[str, Any]) -> dict[str, Any]:
    """
    Resolve save directives for a shell result.

    stdout/output, stderr and status are keywords; any other source is a
    regex run against stdout (group 1 if present, else the whole match).
    """
    stdout = result.get("stdout", "")
    values = {}
    for name, source in (save or {}).items():
        if source in ("stdout", "output"):
            values[name] = stdout
        elif source == "stderr":
            values[name] = result.get("stderr", "")
        elif source == "status":
            values[name] = result.get("code", 0)
        else:
            try:
                match = re.search(source, stdout)
            except re.error as e:
                logger.warning(f"Invalid save pattern for ${name}: {e}")
                continue
            if match:
                values[name] = match.group(1) if match.groups() else match.group(0)
    return values


def build_form_body(fields: list, values: dict[str, Any]) -> dict[str, Any]:
    """Request body from form fields: hidden fields and empty optional fields are dropped."""
    body = {}
    for form_field in fields:
        if form_field.hidden:
            continue
        value = values.get(form_field.name)
        if form_field.required or value not in ("", None, MISSING):
            body[form_field.name] = "" if value is None else value
    return body


def join_url(base: str, path: str) -> str:
    if path.startswith(("http://", "https://")) or not base:
        return path
    return base.rstrip("/") + "/" + path.lstrip("/")


# --- Controller ---


class StepController:
    """Runs a script; see the module docstring for the state rules."""

    def __init__(
        self,
        script: Script,
        recordings: Any = None,
        mode: str = LIVE,
        live_adapter: Any = None,
        recorded_adapter: Any = None,
    ):
        if mode not in (LIVE, RECORDED):
            raise ValueError(f"Unknown mode: {mode}")

        self.script = script
        self.steps = script.flat_steps()
        self.settings = script.settings
        self.live_adapter = live_adapter or LiveAdapter()
        self.recorded_adapter = recorded_adapter or RecordedAdapter(recordings)

        count = len(self.steps)
        self.state = ControllerState(
            statuses=[PENDING] * count,
            responses=[None] * count,
            errors=[None] * count,
            mode=mode,
        )
        self.log_lines: list[str] = []

        self._listeners: list[Callable[[ControllerState], None]] = []
        self._signal: Optional[AbortSignal] = None
        self._executing: Optional[int] = None
        self._executors = {
            "slide": self._run_static,
            "code": self._run_static,
            "terminal": self._run_terminal,
            "browser": self._run_browser,
            "wait": self._run_wait,
            "assert": self._run_assert,
            "rest": self._run_rest,
            "graphql": self._run_graphql,
            "db": self._run_db,
            "shell": self._run_shell,
            "form": self._run_form,
            "poll": self._run_poll,
        }

    # --- Observation ---

    @property
    def adapter(self):
        return self.live_adapter if self.state.mode == LIVE else self.recorded_adapter

    @property
    def current_step(self):
        return self.steps[self.state.cursor] if self.steps else None

    @property
    def executing_index(self) -> Optional[int]:
        return self._executing

    def snapshot(self) -> ControllerState:
        return self.state.snapshot()

    def on_change(self, listener: Callable[[ControllerState], None]) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return remove

    def _emit(self):
        if not self._listeners:
            return
        snapshot = self.state.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)

    def _log(self, msg: str):
        logger.info(msg)
        self.log_lines.append(msg)

    def title(self, index: int) -> str:
        return step_title(self.steps[index], index)

    # --- Navigation ---

    def set_step(self, index: int) -> bool:
        if not 0 <= index < len(self.steps):
            logger.warning(f"Step index out of range: {index}")
            return False
        self.state.cursor = index
        self._emit()
        return True

    def next(self) -> bool:
        """Advance the cursor, following the current step's goto when set."""
        step = self.current_step
        if step is not None and step.goto:
            return self.goto_by_id(step.goto)
        if self.state.cursor + 1 >= len(self.steps):
            return False
        return self.set_step(self.state.cursor + 1)

    def prev(self) -> bool:
        if self.state.cursor == 0:
            return False
        return self.set_step(self.state.cursor - 1)

    def index_of(self, step_id: str) -> Optional[int]:
        for i, step in enumerate(self.steps):
            if step.id == step_id:
                return i
        return None

    def goto_by_id(self, step_id: str) -> bool:
        index = self.index_of(step_id)
        if index is None:
            logger.warning(f"No step with id '{step_id}'")
            return False
        return self.set_step(index)

    def choose(self, choice: int) -> bool:
        """Follow one of the current slide's choices."""
        step = self.current_step
        choices = getattr(step, "choices", None) or []
        if not 0 <= choice < len(choices):
            logger.warning(f"Step {self.state.cursor} has no choice {choice}")
            return False
        return self.goto_by_id(choices[choice].goto)

    def set_mode(self, mode: str):
        if mode not in (LIVE, RECORDED):
            raise ValueError(f"Unknown mode: {mode}")
        if self._executing is not None:
            raise StepBusyError("Cannot switch mode while a step is executing")
        self.state.mode = mode
        self._log(f"Mode: {mode}")
        self._emit()

    # --- Execution ---

    async def execute(self, index: Optional[int] = None,
                      form_values: Optional[dict[str, Any]] = None) -> str:
        """
        Execute one step and return its final status.

        Step failures never raise; they end in status "error" with a
        message in state.errors. A cancelled step ends in "pending".

        Raises:
            IndexError: If index is out of range
            StepBusyError: If a step is already executing
        """
        index = self.state.cursor if index is None else index
        if not 0 <= index < len(self.steps):
            raise IndexError(f"Step index out of range: {index}")
        if self._executing is not None:
            raise StepBusyError(f"Step {self._executing} is already executing")

        step = self.steps[index]
        signal = AbortSignal()
        self._executing = index
        self._signal = signal
        self.state.statuses[index] = EXECUTING
        self.state.errors[index] = None
        self._emit()

        self._log(f"Step {index} [{step.step}] {self.title(index)}")
        context = StepContext(index=index, step=step)

        try:
            outcome = await self._executors[step.step](step, context, signal, form_values or {})
            signal.raise_if_aborted()
        except StepCancelled:
            self.state.statuses[index] = PENDING
            self._log(f"Step {index} cancelled")
        except asyncio.CancelledError:
            self.state.statuses[index] = PENDING
            self._log(f"Step {index} cancelled")
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            self.state.statuses[index] = ERROR
            self.state.errors[index] = message
            self._log(f"Step {index} failed ({classify_error(message)}): {message}")
        else:
            self._commit(index, outcome)
        finally:
            self._executing = None
            self._signal = None
            self.state.poll = None
            self._emit()

        return self.state.statuses[index]

    def _commit(self, index: int, outcome: StepOutcome):
        self.state.responses[index] = outcome.response

        for name, value in outcome.variables.items():
            if not _IDENTIFIER_RE.match(name):
                logger.warning(f"Skipping save to invalid variable name: {name!r}")
                continue
            self.state.variables[name] = value
        if outcome.variables:
            self._log(f"  saved: {', '.join(sorted(outcome.variables))}")

        if outcome.error:
            self.state.statuses[index] = ERROR
            self.state.errors[index] = outcome.error
            self._log(f"Step {index} failed ({classify_error(outcome.error)}): {outcome.error}")
        else:
            self.state.statuses[index] = COMPLETE
            self._log(f"Step {index} complete")

    def cancel(self) -> bool:
        """Abort the executing step, if any."""
        if self._signal is None:
            return False
        self._signal.abort("Cancelled")
        return True

    def skip(self, index: Optional[int] = None) -> bool:
        """Mark a step complete without running it and advance past it."""
        index = self.state.cursor if index is None else index
        if not 0 <= index < len(self.steps):
            raise IndexError(f"Step index out of range: {index}")
        if self._executing == index:
            raise StepBusyError(f"Step {index} is executing")

        self.state.statuses[index] = COMPLETE
        self.state.errors[index] = None
        self._log(f"Step {index} skipped")
        if index == self.state.cursor and self.next():
            return True
        self._emit()
        return True

    def reset(self):
        """Full reset: statuses, responses, errors and variables cleared; cursor to 0."""
        if self._executing is not None:
            raise StepBusyError("Cannot reset while a step is executing")

        count = len(self.steps)
        self.state.statuses = [PENDING] * count
        self.state.responses = [None] * count
        self.state.errors = [None] * count
        self.state.variables = {}
        self.state.cursor = 0
        self.state.poll = None
        self._log("Reset")
        self._emit()

    async def run_all(self, stop_on_error: bool = True) -> ControllerState:
        """
        Execute from the cursor to the end, following goto links.

        Stops on the first error (unless stop_on_error is False), on a
        cancel, and when a goto would revisit a step already run.
        """
        visited = set()
        while self.steps:
            index = self.state.cursor
            if index in visited:
                logger.warning(f"Step {index} already ran in this pass, stopping")
                break
            visited.add(index)

            status = await self.execute(index)
            if status == PENDING:
                break
            if status == ERROR and stop_on_error:
                break
            if not self.next():
                break
        return self.snapshot()

    def missing_variables(self, index: Optional[int] = None) -> set[str]:
        index = self.state.cursor if index is None else index
        return step_references(self.steps[index]) - set(self.state.variables)

    def variable_provider(self, name: str) -> Optional[int]:
        """Index of the first step whose save directives produce `name`."""
        for i, step in enumerate(self.steps):
            if name in saved_names(step):
                return i
        return None

    # --- Executors ---

    def _variables(self) -> dict[str, Any]:
        # executors never write the store
        return dict(self.state.variables)

    def _url(self, path: str, base_url: Optional[str], variables: dict[str, Any]) -> str:
        base = base_url if base_url is not None else self.settings.base_url
        return substitute(join_url(base or "", path), variables)

    @staticmethod
    def _text_map(mapping: dict[str, Any], variables: dict[str, Any]) -> dict[str, str]:
        return {key: substitute(str(value), variables) for key, value in mapping.items()}

    async def _run_static(self, step, context, signal, form_values) -> StepOutcome:
        return StepOutcome()

    async def _run_terminal(self, step, context, signal, form_values) -> StepOutcome:
        return StepOutcome(response={"blocks": parse_terminal(step.content, step.prompt)})

    async def _run_browser(self, step, context, signal, form_values) -> StepOutcome:
        url = substitute(step.url, self._variables())
        result = await self.adapter.open_browser(url, context, signal)
        if result.error:
            raise StepError(result.error)
        return StepOutcome(response={"url": url})

    async def _run_wait(self, step, context, signal, form_values) -> StepOutcome:
        await signal.sleep(step.duration / 1000)
        return StepOutcome()

    async def _run_assert(self, step, context, signal, form_values) -> StepOutcome:
        result = evaluate_condition(step.condition, self._variables())
        error = None
        if result.error:
            error = result.error
        elif not result.passed:
            error = step.message or "Assertion failed"
        return StepOutcome(response=result.to_dict(), error=error)

    async def _run_rest(self, step, context, signal, form_values) -> StepOutcome:
        variables = self._variables()
        method = step.method.upper()
        url = self._url(step.path, step.base_url, variables)
        headers = {"Content-Type": "application/json", **self._text_map(step.headers, variables)}

        if step.form is not None:
            values = {f.name: f.default for f in step.form}
            values.update(step.defaults)
            values.update(form_values)
            body = build_form_body(step.form, substitute_deep(values, variables))
        else:
            body = substitute_deep(step.body, variables)
        if method in BODYLESS_METHODS:
            body = None

        result = await self.adapter.request(RequestPayload(method, url, headers, body), context, signal)
        if result.error:
            raise StepError(result.error)

        data = result.data
        if step.wait_for and step.poll and result.status < 400:
            job_id = get_path(data, step.wait_for)
            if job_id not in (MISSING, None, ""):
                scope = {**variables, **(data if isinstance(data, dict) else {}),
                         **extract_saves(step.save, data, result.status), "jobId": job_id}
                poll_url = self._url(step.poll.endpoint, step.base_url, scope)
                outcome = await self._poll(
                    poll_url, step.poll, context, signal, headers=headers,
                )
                if isinstance(data, dict) and isinstance(outcome.data, dict):
                    data = {**data, **outcome.data}
                else:
                    data = outcome.data
                saved = {**extract_saves(step.save, data, result.status), **outcome.saved}
                return StepOutcome(response=data, variables=saved)

        error = error_message(data, result.status) if result.status >= 400 else None
        return StepOutcome(
            response=data,
            variables=extract_saves(step.save, data, result.status),
            error=error,
        )

    async def _run_graphql(self, step, context, signal, form_values) -> StepOutcome:
        variables = self._variables()
        url = self._url(step.endpoint or "/graphql", None, variables)
        headers = {"Content-Type": "application/json", **self._text_map(step.headers, variables)}
        body = {"query": step.query, "variables": substitute_deep(step.variables, variables)}

        result = await self.adapter.request(RequestPayload("POST", url, headers, body), context, signal)
        if result.error:
            raise StepError(result.error)

        data = result.data
        error = None
        if result.status >= 400:
            error = error_message(data, result.status)
        elif isinstance(data, dict) and data.get("errors"):
            first = data["errors"][0]
            error = str(first.get("message") if isinstance(first, dict) else first)
        return StepOutcome(
            response=data,
            variables=extract_saves(step.save, data, result.status),
            error=error,
        )

    async def _run_db(self, step, context, signal, form_values) -> StepOutcome:
        variables = self._variables()
        payload = DatabasePayload(
            operation=step.operation,
            type=step.type,
            collection=step.collection,
            table=step.table,
            query=substitute_deep(step.query, variables),
            update=substitute_deep(step.update, variables),
            document=substitute_deep(step.document, variables),
            projection=step.projection,
        )
        result = await self.adapter.database(payload, context, signal)
        if result.error:
            raise StepError(result.error)

        error = error_message(result.data, result.status) if result.status >= 400 else None
        return StepOutcome(
            response=result.data,
            variables=extract_saves(step.save, result.data, result.status),
            error=error,
        )

    async def _run_shell(self, step, context, signal, form_values) -> StepOutcome:
        variables = self._variables()
        payload = ShellPayload(
            command=substitute(step.command, variables),
            shell_type=step.shell_type,
            workdir=substitute(step.workdir, variables) if step.workdir else None,
            env=self._text_map(step.env, variables),
        )
        result = await self.adapter.shell(payload, context, signal)
        if result.error:
            raise StepError(result.error)

        # a non-zero exit still completes; save `status` to check it later
        data = result.data if isinstance(result.data, dict) else {"stdout": "", "stderr": "", "code": result.status}
        return StepOutcome(response=data, variables=shell_saves(step.save, data))

    async def _run_form(self, step, context, signal, form_values) -> StepOutcome:
        variables = self._variables()
        values = {f.name: f.default for f in step.fields}
        values.update(form_values)
        values = substitute_deep(values, variables)

        for form_field in step.fields:
            if form_field.required and values.get(form_field.name) in ("", None):
                raise StepError(f"Required field missing: {form_field.label or form_field.name}")

        saved = {}
        for name, source in step.save.items():
            if source == "$formData":
                saved[name] = dict(values)
            elif source.startswith("$") and source[1:] in values:
                saved[name] = values[source[1:]]
        return StepOutcome(response=values, variables=saved)

    async def _run_poll(self, step, context, signal, form_values) -> StepOutcome:
        variables = self._variables()
        url = self._url(step.endpoint, step.base_url, variables)
        outcome = await self._poll(
            url, step, context, signal,
            headers=self._text_map(step.headers, variables),
            stages=step.stages,
        )
        return StepOutcome(response=outcome.data, variables=outcome.saved)

    async def _poll(self, url: str, config: Any, context: StepContext, signal: AbortSignal,
                    headers: dict[str, str] | None = None, stages: list | None = None):
        interval, max_attempts = resolve_poll_limits(config.interval, config.max_attempts, self.settings)

        def on_update(poll_state: PollState):
            self.state.poll = poll_state
            self._emit()

        poller = PollController(self.adapter, interval, max_attempts, on_update=on_update)
        outcome = await poller.run(
            url,
            config.success_when,
            context,
            signal,
            failure_when=config.failure_when,
            stages=stages,
            save=config.save,
            headers=headers,
        )
        if outcome.reason == "cancelled":
            raise StepCancelled(outcome.error)
        if not outcome.success:
            raise StepError(outcome.error)
        return outcome
