"""Core data models for the gradebot grader.

Defines the Pydantic models shared across the package: the process
configuration, Canvas submission records, the declarative pipeline
definition (steps and their tagged commands), and the result types
produced by pipeline runs, score reports, and sandbox lifecycles.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    field_validator,
)

Scalar = StrictBool | StrictInt | StrictStr
"""A typed variable value: boolean, integer, or string."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class GraderConfig(BaseModel):
    """Process configuration loaded from ``config.json``.

    Required string and list fields must be non-empty and required
    integer fields must be positive.

    Attributes:
        lab_name: Human-readable name of the graded lab.
        api_key: Canvas bearer token.
        api_url: Canvas base URL (no trailing ``/api/v1``).
        course_id: Canvas course id.
        assignment_id: Canvas assignment id.
        docker_image: Image the per-submission container runs.
        docker_cmd: Base command; the submission's user id is appended.
        lab_timeout: Per-submission wall-clock limit in seconds.
        fetch_filter: Workflow states eligible for grading.
        poll_interval_seconds: Seconds between poll-cycle ticks.
        memory_limit_bytes: Memory ceiling for each container.
        container_prefix: Prefix of container names (``{prefix}-{user_id}``).
        max_concurrent_sandboxes: Cap on simultaneously running
            containers per cycle, ``None`` for no cap.
        score_report_retries: Attempts per score report before giving up.
        log_level: Logging level string.
        log_file: Optional log file path.
        failed_reports_file: Optional JSON-lines file receiving score
            reports that could not be delivered.
    """

    model_config = ConfigDict(frozen=True)

    lab_name: str
    api_key: str
    api_url: str = "https://oc.sjtu.edu.cn"
    course_id: int
    assignment_id: int
    docker_image: str
    docker_cmd: list[str]
    lab_timeout: int
    fetch_filter: list[str] = ["submitted"]

    poll_interval_seconds: int = 120
    memory_limit_bytes: int = 1_073_741_824
    container_prefix: str = "lab"
    max_concurrent_sandboxes: int | None = 8
    score_report_retries: int = 3
    log_level: str = "INFO"
    log_file: str | None = None
    failed_reports_file: str | None = None

    @field_validator("lab_name", "api_key", "api_url", "docker_image")
    @classmethod
    def _must_be_non_empty(cls, v: str) -> str:
        """Reject empty required strings."""
        if not v.strip():
            msg = "must not be empty"
            raise ValueError(msg)
        return v

    @field_validator("docker_cmd")
    @classmethod
    def _cmd_must_be_non_empty(cls, v: list[str]) -> list[str]:
        """Reject an empty base command."""
        if not v:
            msg = "must contain at least one element"
            raise ValueError(msg)
        return v

    @field_validator("course_id", "assignment_id", "lab_timeout")
    @classmethod
    def _must_be_set(cls, v: int) -> int:
        """Reject unset (zero) or negative required integers."""
        if v < 1:
            msg = "must be a positive integer"
            raise ValueError(msg)
        return v

    @field_validator(
        "poll_interval_seconds",
        "memory_limit_bytes",
        "max_concurrent_sandboxes",
        "score_report_retries",
    )
    @classmethod
    def _must_be_positive(cls, v: int | None) -> int | None:
        """Validate that tuning integers are >= 1."""
        if v is not None and v < 1:
            msg = "Value must be >= 1"
            raise ValueError(msg)
        return v

    @property
    def submissions_url(self) -> str:
        """Canvas endpoint listing this assignment's submissions."""
        return (
            f"{self.api_url.rstrip('/')}/api/v1/courses/{self.course_id}"
            f"/assignments/{self.assignment_id}/submissions"
        )


# ---------------------------------------------------------------------------
# Canvas records
# ---------------------------------------------------------------------------


class Attachment(BaseModel):
    """A file attached to a submission."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    url: str
    id: int | None = None
    filename: str | None = None
    display_name: str | None = None
    content_type: str | None = Field(
        default=None, validation_alias=AliasChoices("content_type", "content-type")
    )
    size: int | None = None


class Submission(BaseModel):
    """One learner's submission as returned by the Canvas API.

    Only ``user_id`` and ``workflow_state`` are required; every other
    Canvas field is optional metadata and unknown fields are ignored.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    user_id: int
    workflow_state: str
    attachments: list[Attachment] | None = None

    id: int | None = None
    assignment_id: int | None = None
    attempt: int | None = None
    submitted_at: str | None = None
    late: bool | None = None
    score: float | None = None
    grade: str | None = None
    url: str | None = None


class ScoreReport(BaseModel):
    """Outcome of one score-report call to the submission source.

    Attributes:
        user_id: Owner of the graded submission.
        score: Posted grade.
        comment: Text comment attached to the grade.
        ok: Whether the update was accepted upstream.
        attempts: Number of HTTP attempts made.
        status_code: Last HTTP status received, if any.
        error: Last error message when ``ok`` is false.
    """

    model_config = ConfigDict(frozen=True)

    user_id: int
    score: int
    comment: str
    ok: bool
    attempts: int = 1
    status_code: int | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Pipeline definition
# ---------------------------------------------------------------------------


class BuiltinCommand(BaseModel):
    """Invoke an action from the builtin command registry."""

    model_config = ConfigDict(frozen=True)

    type: Literal["builtin"] = "builtin"
    action: str
    args: list[str] = []
    abort_on_failure: bool = False


class CustomCommand(BaseModel):
    """Invoke an external executable found on ``PATH``."""

    model_config = ConfigDict(frozen=True)

    type: Literal["custom"] = "custom"
    action: str
    args: list[str] = []
    abort_on_failure: bool = False
    timeout_seconds: int | None = None


class VariableCommand(BaseModel):
    """Mutate a pipeline variable in place (only ``+`` is defined)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["variable"] = "variable"
    operation: str
    name: str
    delta: StrictInt = Field(validation_alias=AliasChoices("delta", "value"))


Command = Annotated[
    BuiltinCommand | CustomCommand | VariableCommand,
    Field(discriminator="type"),
]


class Step(BaseModel):
    """An ordered list of commands executed as one task."""

    model_config = ConfigDict(frozen=True)

    commands: list[Command] = []


class PipelineDefinition(BaseModel):
    """Initial variables plus the ordered, name-keyed steps of a pipeline.

    ``steps`` keeps the document's declaration order, which is the
    execution order.
    """

    model_config = ConfigDict(frozen=True)

    variables: dict[str, Scalar | None] = {}
    steps: dict[str, Step] = {}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class TaskStatus(StrEnum):
    """Final status of one task."""

    PASSED = "passed"
    FAILED = "failed"
    ABORTED = "aborted"


class TaskResult(BaseModel):
    """Status message produced by running one step."""

    model_config = ConfigDict(frozen=True)

    name: str
    status: TaskStatus
    message: str


class PipelineResult(BaseModel):
    """Ordered task results plus the final score of one pipeline run."""

    model_config = ConfigDict(frozen=True)

    results: list[TaskResult]
    score: int
    aborted: bool = False

    @property
    def comment(self) -> str:
        """Concatenation of every task message, in declaration order."""
        return "".join(r.message for r in self.results)


class SandboxState(StrEnum):
    """Lifecycle states of one sandboxed execution."""

    IDLE = "idle"
    CREATING = "creating"
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    TIMED_OUT = "timed_out"


class SandboxOutcomeKind(StrEnum):
    """How a sandbox lifecycle terminated."""

    NO_ATTACHMENT = "no_attachment"
    CREATE_FAILED = "create_failed"
    START_FAILED = "start_failed"
    EXITED = "exited"
    TIMED_OUT = "timed_out"
    WAIT_ERROR = "wait_error"


class SandboxOutcome(BaseModel):
    """Terminal outcome of one submission's sandbox lifecycle.

    Attributes:
        user_id: Owner of the submission.
        kind: How the lifecycle ended.
        exit_status: Container exit status when it exited on its own.
        report: Score report issued for this outcome, if any.
    """

    model_config = ConfigDict(frozen=True)

    user_id: int
    kind: SandboxOutcomeKind
    exit_status: int | None = None
    report: ScoreReport | None = None
