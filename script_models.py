"""
Script data models.

Defines the canonical structure of a walkthrough script (after
normalization), its settings, and the recordings used for replay.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag

from expressions import find_references

STEP_KINDS = (
    "slide", "rest", "shell", "browser", "code", "wait",
    "assert", "graphql", "db", "form", "terminal", "poll",
)

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")


# --- Supporting types ---


class Choice(BaseModel):
    label: str
    description: str = ""
    goto: str


class FormField(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    label: Optional[str] = None
    type: Optional[str] = None  # text, number, select, textarea, toggle, slider
    default: Any = None
    required: bool = False
    readonly: bool = False
    hidden: bool = False
    placeholder: Optional[str] = None


class ResultField(BaseModel):
    model_config = ConfigDict(extra="allow")

    key: str
    label: Optional[str] = None
    type: Optional[str] = None
    link: Optional[str] = None  # link handler name from settings.links
    link_key: Optional[str] = None


class PollStage(BaseModel):
    label: str
    when: str


class PollConfig(BaseModel):
    endpoint: str
    success_when: str
    failure_when: Optional[str] = None
    interval: Optional[int] = None  # milliseconds
    max_attempts: Optional[int] = None
    save: dict[str, str] = Field(default_factory=dict)


class PollingDefaults(BaseModel):
    interval: Optional[int] = None
    max_attempts: Optional[int] = None


class ScriptSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    base_url: str = ""
    polling: PollingDefaults = Field(default_factory=PollingDefaults)
    links: dict[str, dict[str, str]] = Field(default_factory=dict)


# --- Steps (canonical, explicit syntax) ---


class BaseStep(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    title: Optional[str] = None
    goto: Optional[str] = None


class SlideStep(BaseStep):
    step: Literal["slide"] = "slide"
    content: str
    choices: list[Choice] = Field(default_factory=list)


class RestStep(BaseStep):
    step: Literal["rest"] = "rest"
    method: str = "GET"
    path: str
    description: str = ""
    base_url: Optional[str] = None
    headers: dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    form: Optional[list[FormField]] = None
    save: dict[str, str] = Field(default_factory=dict)
    results: list[ResultField] = Field(default_factory=list)
    wait_for: Optional[str] = None
    poll: Optional[PollConfig] = None
    defaults: dict[str, Any] = Field(default_factory=dict)
    show_curl: bool = False


class ShellStep(BaseStep):
    step: Literal["shell"] = "shell"
    command: str
    description: str = ""
    shell_type: Optional[str] = None  # bash, powershell, cmd
    workdir: Optional[str] = None
    confirm: bool = False
    env: dict[str, Any] = Field(default_factory=dict)
    save: dict[str, str] = Field(default_factory=dict)


class BrowserStep(BaseStep):
    step: Literal["browser"] = "browser"
    url: str
    description: str = ""
    screenshot: Optional[str] = None


class CodeStep(BaseStep):
    step: Literal["code"] = "code"
    source: str
    language: Optional[str] = None
    filename: Optional[str] = None
    highlight: list[int] = Field(default_factory=list)


class WaitStep(BaseStep):
    step: Literal["wait"] = "wait"
    duration: float  # milliseconds
    message: Optional[str] = None


class AssertStep(BaseStep):
    step: Literal["assert"] = "assert"
    condition: str
    message: Optional[str] = None
    description: str = ""


class GraphQLStep(BaseStep):
    step: Literal["graphql"] = "graphql"
    query: str
    endpoint: Optional[str] = None
    variables: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, Any] = Field(default_factory=dict)
    save: dict[str, str] = Field(default_factory=dict)
    results: list[ResultField] = Field(default_factory=list)


class DatabaseStep(BaseStep):
    step: Literal["db"] = "db"
    operation: str
    type: Optional[str] = None  # mongodb, postgres, mysql
    collection: Optional[str] = None
    table: Optional[str] = None
    query: Any = None
    update: Optional[dict[str, Any]] = None
    document: Optional[dict[str, Any]] = None
    projection: Optional[dict[str, int]] = None
    save: dict[str, str] = Field(default_factory=dict)
    results: list[ResultField] = Field(default_factory=list)
    description: str = ""


class FormStep(BaseStep):
    step: Literal["form"] = "form"
    fields: list[FormField] = Field(default_factory=list)
    submit_label: str = "Continue"
    description: str = ""
    save: dict[str, str] = Field(default_factory=dict)


class TerminalStep(BaseStep):
    step: Literal["terminal"] = "terminal"
    content: str
    prompt: str = "$"
    typing_speed: int = 30
    output_delay: int = 200
    theme: str = "dark"


class PollStep(BaseStep):
    step: Literal["poll"] = "poll"
    endpoint: str
    success_when: str
    failure_when: Optional[str] = None
    interval: Optional[int] = None
    max_attempts: Optional[int] = None
    stages: list[PollStage] = Field(default_factory=list)
    save: dict[str, str] = Field(default_factory=dict)
    base_url: Optional[str] = None
    headers: dict[str, Any] = Field(default_factory=dict)
    description: str = ""


Step = Annotated[
    Union[
        SlideStep, RestStep, ShellStep, BrowserStep, CodeStep, WaitStep,
        AssertStep, GraphQLStep, DatabaseStep, FormStep, TerminalStep, PollStep,
    ],
    Field(discriminator="step"),
]


class StepGroup(BaseModel):
    group: str
    description: str = ""
    collapsed: bool = False
    steps: list[Step] = Field(default_factory=list)


def _entry_tag(value: Any) -> str:
    if isinstance(value, dict):
        return "group" if "group" in value else "step"
    return "group" if isinstance(value, StepGroup) else "step"


StepEntry = Annotated[
    Union[Annotated[StepGroup, Tag("group")], Annotated[Step, Tag("step")]],
    Discriminator(_entry_tag),
]


class Script(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str = ""
    description: str = ""
    version: Optional[str] = None
    author: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    settings: ScriptSettings = Field(default_factory=ScriptSettings)
    steps: list[StepEntry] = Field(default_factory=list)

    def flat_steps(self) -> list[Any]:
        return flatten_steps(self.steps)


# --- Recordings ---


class RecordedRequest(BaseModel):
    method: str
    url: str
    headers: dict[str, Any] = Field(default_factory=dict)
    body: Any = None


class RecordedResponse(BaseModel):
    status: int = 200
    headers: dict[str, Any] = Field(default_factory=dict)
    body: Any = None


class Recording(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    step_id: str = Field(alias="stepId")
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    request: Optional[RecordedRequest] = None
    response: Optional[RecordedResponse] = None
    # shell steps
    output: Optional[str] = None  # legacy alias for stdout
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    status: Optional[int] = None  # exit code
    duration: Optional[float] = None

    @property
    def shell_output(self) -> Optional[str]:
        return self.stdout if self.stdout is not None else self.output


class RecordingSet(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    demo_id: Optional[str] = Field(default=None, alias="demoId")
    demo_version: Optional[str] = Field(default=None, alias="demoVersion")
    recorded_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        alias="recordedAt",
    )
    recordings: list[Recording] = Field(default_factory=list)

    def find(self, step_id: str) -> Optional[Recording]:
        for recording in self.recordings:
            if recording.step_id == step_id:
                return recording
        return None


# --- Helpers ---


def flatten_steps(items: list[Any]) -> list[Any]:
    """Flatten groups into one ordered step list; groups carry no semantics."""
    result = []
    for item in items:
        if isinstance(item, StepGroup):
            result.extend(item.steps)
        else:
            result.append(item)
    return result


def step_keys(step: Any, index: int) -> list[str]:
    """Identities a recording may be stored under, most specific first."""
    keys = []
    if step.id:
        keys.append(step.id)
    keys.append(f"step-{index}")
    return keys


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def step_title(step: Any, index: int) -> str:
    """Build a human-readable title for a step."""
    if isinstance(step, StepGroup):
        return step.group
    if step.title:
        return step.title

    kind = step.step
    if kind == "slide":
        first_line = step.content.strip().split("\n")[0]
        if first_line.startswith("#"):
            heading = first_line.lstrip("#").strip()
            if heading:
                return heading
        return f"Slide {index + 1}"
    if kind == "rest":
        return f"{step.method} {step.path}"
    if kind == "shell":
        return _truncate(step.command, 40)
    if kind == "browser":
        return step.url
    if kind == "code":
        return step.filename or f"Code {index + 1}"
    if kind == "wait":
        return step.message or f"Wait {step.duration:g}ms"
    if kind == "assert":
        return _truncate(step.condition, 30)
    if kind == "graphql":
        return _truncate(step.query.strip().split("\n")[0], 40)
    if kind == "db":
        return f"{step.operation} {step.collection or step.table or ''}".strip()
    if kind == "form":
        return "Form"
    if kind == "terminal":
        return "Terminal"
    if kind == "poll":
        return f"Poll {step.endpoint}"
    return f"Step {index + 1}"


def step_references(step: Any) -> set[str]:
    """
    Variables a step reads when it executes.

    Save directives are outputs and are left out. Code and terminal steps
    are display only, so a `$` in them is shell syntax, not a reference.
    """
    if step.step in ("code", "terminal"):
        return set()
    fields = step.model_dump(exclude={"save", "poll", "step", "id", "title", "goto"})
    names = find_references(fields)
    if getattr(step, "poll", None) is not None:
        names |= find_references(step.poll.endpoint) - {"jobId"}
    return names


def saved_names(step: Any) -> set[str]:
    """Variables a step writes when it completes."""
    names = set(getattr(step, "save", None) or {})
    if getattr(step, "poll", None) is not None:
        names |= set(step.poll.save)
    return names
