"""Tests for the per-submission sandbox lifecycle."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

from docker.errors import APIError, NotFound
from gradebot.models import Attachment, SandboxOutcomeKind, SandboxState
from gradebot.orchestrator import Orchestrator
from gradebot.sandbox import (
    NO_ATTACHMENT_URL_COMMENT,
    NO_ATTACHMENTS_COMMENT,
    START_FAILED_COMMENT,
    STARTUP_ERROR_COMMENT,
    TIMEOUT_COMMENT,
    DockerSandboxRuntime,
    SandboxError,
    SandboxExecutor,
)
import pytest

from tests.conftest import FakeRuntime, FakeSource, make_config, make_submission

# ===========================================================================
# Attachment prechecks
# ===========================================================================


@pytest.mark.unit
class TestAttachmentPrechecks:
    """Submissions without a usable attachment never reach the runtime."""

    async def test_missing_attachments_scores_zero(self, fake_runtime: FakeRuntime) -> None:
        source = FakeSource()
        submission = make_submission(7, attachments=None)
        outcome = await SandboxExecutor(submission, fake_runtime, source, make_config()).run()

        assert outcome.kind is SandboxOutcomeKind.NO_ATTACHMENT
        assert source.reports == [(7, 0, NO_ATTACHMENTS_COMMENT)]
        assert fake_runtime.calls == []

    async def test_empty_attachment_list_scores_zero(self, fake_runtime: FakeRuntime) -> None:
        source = FakeSource()
        submission = make_submission(8, attachments=[])
        await SandboxExecutor(submission, fake_runtime, source, make_config()).run()

        assert source.reports == [(8, 0, NO_ATTACHMENT_URL_COMMENT)]
        assert fake_runtime.count("create") == 0


# ===========================================================================
# Lifecycle
# ===========================================================================


@pytest.mark.unit
class TestLifecycle:
    """create -> start -> wait, with terminal failures graded 0."""

    async def test_clean_exit_issues_no_report(self, fake_runtime: FakeRuntime) -> None:
        source = FakeSource()
        config = make_config(container_prefix="lab3", memory_limit_bytes=512)
        executor = SandboxExecutor(make_submission(42), fake_runtime, source, config)
        outcome = await executor.run()

        assert outcome.kind is SandboxOutcomeKind.EXITED
        assert outcome.exit_status == 0
        assert outcome.report is None
        assert source.reports == []
        assert executor.state is SandboxState.EXITED
        assert [op for op, _ in fake_runtime.calls] == ["create", "start", "wait"]
        assert fake_runtime.created == [
            {
                "name": "lab3-42",
                "image": "grader:latest",
                "command": ["python", "run_tests.py", "42"],
                "memory_limit": 512,
                "auto_remove": True,
            }
        ]

    async def test_non_zero_exit_status_is_recorded(self) -> None:
        runtime = FakeRuntime(exit_status=2)
        executor = SandboxExecutor(make_submission(), runtime, FakeSource(), make_config())
        outcome = await executor.run()
        assert outcome.kind is SandboxOutcomeKind.EXITED
        assert outcome.exit_status == 2

    async def test_create_failure_reports_startup_error(self) -> None:
        runtime = FakeRuntime(create_error=SandboxError("no such image"))
        source = FakeSource()
        outcome = await SandboxExecutor(make_submission(3), runtime, source, make_config()).run()

        assert outcome.kind is SandboxOutcomeKind.CREATE_FAILED
        assert source.reports == [(3, 0, STARTUP_ERROR_COMMENT)]
        assert runtime.count("start") == 0
        assert runtime.count("wait") == 0

    async def test_start_failure_reports_start_failed(self) -> None:
        runtime = FakeRuntime(start_error=SandboxError("port in use"))
        source = FakeSource()
        outcome = await SandboxExecutor(make_submission(4), runtime, source, make_config()).run()

        assert outcome.kind is SandboxOutcomeKind.START_FAILED
        assert source.reports == [(4, 0, START_FAILED_COMMENT)]
        assert runtime.count("wait") == 0

    async def test_wait_error_is_logged_without_report(self) -> None:
        runtime = FakeRuntime(wait_error=SandboxError("daemon went away"))
        source = FakeSource()
        outcome = await SandboxExecutor(make_submission(), runtime, source, make_config()).run()

        assert outcome.kind is SandboxOutcomeKind.WAIT_ERROR
        assert outcome.report is None
        assert source.reports == []

    async def test_failed_report_is_attached_to_outcome(self) -> None:
        source = FakeSource(report_ok=False)
        submission = make_submission(5, attachments=None)
        outcome = await SandboxExecutor(submission, FakeRuntime(), source, make_config()).run()
        assert outcome.report is not None
        assert not outcome.report.ok


@pytest.mark.unit
class TestTimeout:
    """A container outliving lab_timeout is stopped, removed, and graded 0."""

    async def test_timeout_forces_cleanup_once(self) -> None:
        runtime = FakeRuntime(wait_seconds=10)
        source = FakeSource()
        executor = SandboxExecutor(make_submission(9), runtime, source, make_config(lab_timeout=1))
        outcome = await executor.run()

        assert outcome.kind is SandboxOutcomeKind.TIMED_OUT
        assert executor.state is SandboxState.TIMED_OUT
        assert runtime.count("stop") == 1
        assert runtime.count("remove") == 1
        assert source.reports == [(9, 0, TIMEOUT_COMMENT)]

    async def test_cleanup_failures_still_report(self) -> None:
        runtime = FakeRuntime(
            wait_seconds=10,
            stop_error=SandboxError("already gone"),
            remove_error=SandboxError("already gone"),
        )
        source = FakeSource()
        await SandboxExecutor(make_submission(9), runtime, source, make_config(lab_timeout=1)).run()

        assert runtime.count("stop") == 1
        assert runtime.count("remove") == 1
        assert source.reports == [(9, 0, TIMEOUT_COMMENT)]

    async def test_submission_with_attachment_object(self) -> None:
        submission = make_submission(
            11, attachments=[Attachment(url="https://files.example.edu/a.7z", filename="a.7z")]
        )
        outcome = await SandboxExecutor(
            submission, FakeRuntime(), FakeSource(), make_config()
        ).run()
        assert outcome.kind is SandboxOutcomeKind.EXITED


# ===========================================================================
# Docker runtime
# ===========================================================================


@pytest.mark.unit
class TestDockerSandboxRuntime:
    """DockerSandboxRuntime maps lifecycle calls onto the Docker SDK."""

    @pytest.fixture()
    def client(self) -> MagicMock:
        client = MagicMock()
        client.containers.create.return_value.name = "lab-1"
        client.containers.get.return_value.wait.return_value = {"StatusCode": 3}
        return client

    async def test_create_passes_limits(self, client: MagicMock) -> None:
        runtime = DockerSandboxRuntime(client)
        handle = await runtime.create(
            "lab-1", "grader:latest", ["run", "1"], memory_limit=1024, auto_remove=True
        )
        assert handle == "lab-1"
        client.containers.create.assert_called_once_with(
            "grader:latest",
            command=["run", "1"],
            name="lab-1",
            mem_limit=1024,
            auto_remove=True,
            detach=True,
        )

    async def test_wait_returns_status_code(self, client: MagicMock) -> None:
        runtime = DockerSandboxRuntime(client)
        assert await runtime.wait("lab-1") == 3
        client.containers.get.return_value.wait.assert_called_once_with(condition="not-running")

    async def test_start_stop_remove(self, client: MagicMock) -> None:
        runtime = DockerSandboxRuntime(client)
        await runtime.start("lab-1")
        await runtime.stop("lab-1")
        await runtime.remove("lab-1")
        container = client.containers.get.return_value
        container.start.assert_called_once_with()
        container.stop.assert_called_once_with()
        container.remove.assert_called_once_with(force=True)

    async def test_docker_errors_become_sandbox_errors(self, client: MagicMock) -> None:
        client.containers.create.side_effect = APIError("conflict")
        runtime = DockerSandboxRuntime(client)
        with pytest.raises(SandboxError, match="create lab-1 failed"):
            await runtime.create("lab-1", "img", [], memory_limit=1, auto_remove=True)

    async def test_missing_container_becomes_sandbox_error(self, client: MagicMock) -> None:
        client.containers.get.side_effect = NotFound("gone")
        runtime = DockerSandboxRuntime(client)
        with pytest.raises(SandboxError, match="lookup lab-1 failed"):
            await runtime.stop("lab-1")


class _BlockingContainer:
    """Container whose ``wait`` blocks its thread until ``stop`` is called."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.stopped = threading.Event()
        self.removed = False

    def start(self) -> None:
        pass

    def wait(self, condition: str) -> dict[str, int]:
        self.stopped.wait(timeout=30)
        return {"StatusCode": 137}

    def stop(self) -> None:
        self.stopped.set()

    def remove(self, force: bool) -> None:
        self.removed = True


class _BlockingClient:
    def __init__(self) -> None:
        self.by_name: dict[str, _BlockingContainer] = {}
        self.containers = SimpleNamespace(create=self._create, get=self.by_name.__getitem__)

    def _create(self, image: str, **kwargs: object) -> _BlockingContainer:
        container = _BlockingContainer(str(kwargs["name"]))
        self.by_name[container.name] = container
        return container


@pytest.mark.unit
class TestDockerTimeoutUnderLoad:
    """Timed-out containers are stopped even when every wait thread is blocked."""

    async def test_cycle_finishes_with_small_default_executor(self) -> None:
        loop = asyncio.get_running_loop()
        default_pool = ThreadPoolExecutor(max_workers=2)
        loop.set_default_executor(default_pool)

        client = _BlockingClient()
        runtime = DockerSandboxRuntime(client, max_waiters=2)  # type: ignore[arg-type]
        source = FakeSource([make_submission(1), make_submission(2)])
        config = make_config(lab_timeout=1, max_concurrent_sandboxes=2)
        try:
            outcomes = await asyncio.wait_for(
                Orchestrator(source, runtime, config).run_cycle(), timeout=10
            )
        finally:
            runtime.close()
            default_pool.shutdown(wait=False)

        assert sorted(o.kind for o in outcomes) == [SandboxOutcomeKind.TIMED_OUT] * 2
        assert sorted(source.reports) == [(1, 0, TIMEOUT_COMMENT), (2, 0, TIMEOUT_COMMENT)]
        assert all(c.stopped.is_set() and c.removed for c in client.by_name.values())
