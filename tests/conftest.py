"""Shared fixtures for the gradebot test suite."""

from __future__ import annotations

import asyncio
from collections.abc import Collection
from typing import Any

from gradebot.canvas import SubmissionFetchError
from gradebot.models import (
    Attachment,
    GraderConfig,
    PipelineDefinition,
    ScoreReport,
    Submission,
)
import pytest

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def make_config(**overrides: Any) -> GraderConfig:
    """Build a valid GraderConfig with sensible defaults.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed GraderConfig instance.
    """
    defaults: dict[str, Any] = {
        "lab_name": "Lab 3",
        "api_key": "secret-token",
        "api_url": "https://canvas.example.edu",
        "course_id": 101,
        "assignment_id": 202,
        "docker_image": "grader:latest",
        "docker_cmd": ["python", "run_tests.py"],
        "lab_timeout": 5,
        "poll_interval_seconds": 1,
        "score_report_retries": 1,
    }
    defaults.update(overrides)
    return GraderConfig(**defaults)


def make_submission(user_id: int = 1, **overrides: Any) -> Submission:
    """Build a submitted Submission with one attachment."""
    defaults: dict[str, Any] = {
        "user_id": user_id,
        "workflow_state": "submitted",
        "attachments": [Attachment(url=f"https://files.example.edu/{user_id}.7z")],
    }
    defaults.update(overrides)
    return Submission(**defaults)


def make_pipeline(
    steps: dict[str, list[dict[str, Any]]],
    variables: dict[str, Any] | None = None,
) -> PipelineDefinition:
    """Build a PipelineDefinition from plain step -> command-dict lists.

    ``score`` is declared as ``0`` unless *variables* says otherwise.
    """
    declared: dict[str, Any] = {"score": 0}
    declared.update(variables or {})
    return PipelineDefinition.model_validate(
        {
            "variables": declared,
            "steps": {name: {"commands": commands} for name, commands in steps.items()},
        }
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeSource:
    """In-memory SubmissionSource recording every score report."""

    def __init__(
        self,
        submissions: list[Submission] | None = None,
        *,
        fetch_error: bool = False,
        report_ok: bool = True,
    ) -> None:
        self.submissions = list(submissions or [])
        self.fetch_error = fetch_error
        self.report_ok = report_ok
        self.fetch_calls = 0
        self.reports: list[tuple[int, int, str]] = []

    async def list_submissions(self, accepted_states: Collection[str]) -> list[Submission]:
        self.fetch_calls += 1
        if self.fetch_error:
            msg = "canvas unreachable"
            raise SubmissionFetchError(msg)
        return [s for s in self.submissions if s.workflow_state in accepted_states]

    async def report_score(self, user_id: int, score: int, comment: str) -> ScoreReport:
        self.reports.append((user_id, score, comment))
        return ScoreReport(
            user_id=user_id,
            score=score,
            comment=comment,
            ok=self.report_ok,
            error=None if self.report_ok else "HTTP 500",
        )


class FakeRuntime:
    """Scriptable SandboxRuntime recording lifecycle calls.

    Args:
        wait_seconds: How long ``wait`` blocks before returning.
        exit_status: Status returned by ``wait``.
        create_error / start_error / wait_error / stop_error /
            remove_error: Exceptions raised by the matching call.
    """

    def __init__(
        self,
        *,
        wait_seconds: float = 0.0,
        exit_status: int = 0,
        create_error: Exception | None = None,
        start_error: Exception | None = None,
        wait_error: Exception | None = None,
        stop_error: Exception | None = None,
        remove_error: Exception | None = None,
    ) -> None:
        self.wait_seconds = wait_seconds
        self.exit_status = exit_status
        self.create_error = create_error
        self.start_error = start_error
        self.wait_error = wait_error
        self.stop_error = stop_error
        self.remove_error = remove_error
        self.calls: list[tuple[str, str]] = []
        self.created: list[dict[str, Any]] = []
        self.running = 0
        self.max_running = 0

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    async def create(
        self,
        name: str,
        image: str,
        command: list[str],
        *,
        memory_limit: int,
        auto_remove: bool,
    ) -> str:
        self.calls.append(("create", name))
        if self.create_error is not None:
            raise self.create_error
        self.created.append(
            {
                "name": name,
                "image": image,
                "command": command,
                "memory_limit": memory_limit,
                "auto_remove": auto_remove,
            }
        )
        return name

    async def start(self, handle: str) -> None:
        self.calls.append(("start", handle))
        if self.start_error is not None:
            raise self.start_error

    async def wait(self, handle: str) -> int:
        self.calls.append(("wait", handle))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(self.wait_seconds)
            if self.wait_error is not None:
                raise self.wait_error
            return self.exit_status
        finally:
            self.running -= 1

    async def stop(self, handle: str) -> None:
        self.calls.append(("stop", handle))
        if self.stop_error is not None:
            raise self.stop_error

    async def remove(self, handle: str) -> None:
        self.calls.append(("remove", handle))
        if self.remove_error is not None:
            raise self.remove_error


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def config() -> GraderConfig:
    """Return a valid GraderConfig with a 5 second lab timeout."""
    return make_config()


@pytest.fixture()
def fake_source() -> FakeSource:
    """Return an empty FakeSource."""
    return FakeSource()


@pytest.fixture()
def fake_runtime() -> FakeRuntime:
    """Return a FakeRuntime whose containers exit immediately."""
    return FakeRuntime()
