"""Per-submission sandbox lifecycle.

``SandboxExecutor`` drives one submission's container through
create -> start -> bounded wait, forcing stop and removal when the
deadline passes. Terminal failures (no attachment, create or start
errors, timeout) are graded 0 with a diagnostic comment; a clean exit is
only logged, since grading on that path happens inside the container.

The container engine is abstracted by the ``SandboxRuntime`` protocol;
``DockerSandboxRuntime`` implements it on top of the Docker SDK, running
its blocking calls in worker threads.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
import functools
import logging
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

import docker
from docker.errors import DockerException

from gradebot.models import (
    GraderConfig,
    SandboxOutcome,
    SandboxOutcomeKind,
    SandboxState,
    ScoreReport,
    Submission,
)

if TYPE_CHECKING:
    from docker.models.containers import Container

    from gradebot.canvas import SubmissionSource

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

NO_ATTACHMENTS_COMMENT = "No attachments found"
NO_ATTACHMENT_URL_COMMENT = "No attachment URL found"
STARTUP_ERROR_COMMENT = "Test environment startup error"
START_FAILED_COMMENT = "Failed to start container"
TIMEOUT_COMMENT = "Test timeout"


class SandboxError(RuntimeError):
    """The container runtime rejected a lifecycle operation."""


@runtime_checkable
class SandboxRuntime(Protocol):
    """Operations the executor needs from a container engine.

    Handles are opaque strings returned by ``create``.
    """

    async def create(  # noqa: D102
        self,
        name: str,
        image: str,
        command: list[str],
        *,
        memory_limit: int,
        auto_remove: bool,
    ) -> str: ...

    async def start(self, handle: str) -> None: ...  # noqa: D102

    async def wait(self, handle: str) -> int: ...  # noqa: D102

    async def stop(self, handle: str) -> None: ...  # noqa: D102

    async def remove(self, handle: str) -> None: ...  # noqa: D102


class DockerSandboxRuntime:
    """``SandboxRuntime`` backed by the Docker Engine API.

    SDK calls block, so they run in worker threads. ``wait`` holds its
    thread until the container stops and therefore gets a dedicated pool;
    lifecycle calls (create, start, stop, remove) use the loop's default
    executor and are never queued behind pending waits.

    Args:
        client: Docker client; defaults to ``docker.from_env()``.
        max_waiters: Size of the wait pool, normally the sandbox
            concurrency cap. ``None`` uses the ``ThreadPoolExecutor``
            default.
    """

    def __init__(
        self,
        client: docker.DockerClient | None = None,
        *,
        max_waiters: int | None = None,
    ) -> None:
        self._client = client if client is not None else docker.from_env()
        self._wait_pool = ThreadPoolExecutor(
            max_workers=max_waiters, thread_name_prefix="sandbox-wait"
        )

    def close(self) -> None:
        """Release the wait pool without joining threads still blocked in ``wait``."""
        self._wait_pool.shutdown(wait=False, cancel_futures=True)

    async def _call(
        self,
        description: str,
        func: Callable[..., _T],
        *args: Any,
        executor: Executor | None = None,
        **kwargs: Any,
    ) -> _T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(executor, functools.partial(func, *args, **kwargs))
        except DockerException as exc:
            msg = f"{description} failed: {exc}"
            raise SandboxError(msg) from exc

    def _get(self, handle: str) -> Container:
        return self._client.containers.get(handle)

    async def create(
        self,
        name: str,
        image: str,
        command: list[str],
        *,
        memory_limit: int,
        auto_remove: bool,
    ) -> str:
        container = await self._call(
            f"create {name}",
            self._client.containers.create,
            image,
            command=command,
            name=name,
            mem_limit=memory_limit,
            auto_remove=auto_remove,
            detach=True,
        )
        return container.name or name

    async def start(self, handle: str) -> None:
        container = await self._call(f"lookup {handle}", self._get, handle)
        await self._call(f"start {handle}", container.start)

    async def wait(self, handle: str) -> int:
        """Block until the container is no longer running; return its exit status."""
        container = await self._call(f"lookup {handle}", self._get, handle)
        result = await self._call(
            f"wait {handle}",
            container.wait,
            executor=self._wait_pool,
            condition="not-running",
        )
        return int(result.get("StatusCode", -1))

    async def stop(self, handle: str) -> None:
        container = await self._call(f"lookup {handle}", self._get, handle)
        await self._call(f"stop {handle}", container.stop)

    async def remove(self, handle: str) -> None:
        container = await self._call(f"lookup {handle}", self._get, handle)
        await self._call(f"remove {handle}", container.remove, force=True)


class SandboxExecutor:
    """Run one submission through the sandbox lifecycle.

    Args:
        submission: The submission to grade.
        runtime: Container engine.
        source: Where score reports are sent.
        config: Image, command, memory ceiling, and timeout settings.
    """

    def __init__(
        self,
        submission: Submission,
        runtime: SandboxRuntime,
        source: SubmissionSource,
        config: GraderConfig,
    ) -> None:
        self.submission = submission
        self.runtime = runtime
        self.source = source
        self.config = config
        self.state = SandboxState.IDLE

    @property
    def container_name(self) -> str:
        return f"{self.config.container_prefix}-{self.submission.user_id}"

    def _transition(self, state: SandboxState) -> None:
        logger.debug("%s: %s -> %s", self.container_name, self.state, state)
        self.state = state

    async def _report(self, score: int, comment: str) -> ScoreReport:
        report = await self.source.report_score(self.submission.user_id, score, comment)
        if not report.ok:
            logger.error(
                "Score report for user %d failed after %d attempts: %s",
                report.user_id,
                report.attempts,
                report.error,
            )
        return report

    def _outcome(
        self,
        kind: SandboxOutcomeKind,
        *,
        exit_status: int | None = None,
        report: ScoreReport | None = None,
    ) -> SandboxOutcome:
        return SandboxOutcome(
            user_id=self.submission.user_id,
            kind=kind,
            exit_status=exit_status,
            report=report,
        )

    async def run(self) -> SandboxOutcome:
        """Drive the lifecycle to a terminal state.

        Returns:
            The terminal ``SandboxOutcome``, including any score report
            that was issued. A wait error issues no report.
        """
        user_id = self.submission.user_id
        logger.info("Start testing for user ID: %d", user_id)

        attachments = self.submission.attachments
        if attachments is None:
            report = await self._report(0, NO_ATTACHMENTS_COMMENT)
            return self._outcome(SandboxOutcomeKind.NO_ATTACHMENT, report=report)
        if not attachments:
            report = await self._report(0, NO_ATTACHMENT_URL_COMMENT)
            return self._outcome(SandboxOutcomeKind.NO_ATTACHMENT, report=report)

        self._transition(SandboxState.CREATING)
        try:
            handle = await self.runtime.create(
                self.container_name,
                self.config.docker_image,
                [*self.config.docker_cmd, str(user_id)],
                memory_limit=self.config.memory_limit_bytes,
                auto_remove=True,
            )
        except Exception:
            logger.exception("Failed to create container %s", self.container_name)
            report = await self._report(0, STARTUP_ERROR_COMMENT)
            return self._outcome(SandboxOutcomeKind.CREATE_FAILED, report=report)
        self._transition(SandboxState.CREATED)
        logger.info("Container %s created", self.container_name)

        self._transition(SandboxState.STARTING)
        try:
            await self.runtime.start(handle)
        except Exception:
            logger.exception("Failed to start container %s", self.container_name)
            report = await self._report(0, START_FAILED_COMMENT)
            return self._outcome(SandboxOutcomeKind.START_FAILED, report=report)
        self._transition(SandboxState.RUNNING)

        try:
            exit_status = await asyncio.wait_for(
                self.runtime.wait(handle), timeout=self.config.lab_timeout
            )
        except TimeoutError:
            self._transition(SandboxState.TIMED_OUT)
            logger.error("Container for user %d timed out", user_id)
            await self._force_cleanup(handle)
            report = await self._report(0, TIMEOUT_COMMENT)
            return self._outcome(SandboxOutcomeKind.TIMED_OUT, report=report)
        except Exception as exc:
            logger.error("Error waiting for container %s: %s", self.container_name, exc)
            return self._outcome(SandboxOutcomeKind.WAIT_ERROR)

        self._transition(SandboxState.EXITED)
        logger.info("Container for user %d finished (exit status %d)", user_id, exit_status)
        return self._outcome(SandboxOutcomeKind.EXITED, exit_status=exit_status)

    async def _force_cleanup(self, handle: str) -> None:
        """Best-effort stop then remove; each failure is logged, not retried."""
        try:
            await self.runtime.stop(handle)
        except Exception as exc:
            logger.error("Error stopping container %s: %s", self.container_name, exc)
        try:
            await self.runtime.remove(handle)
        except Exception as exc:
            logger.error("Error removing container %s: %s", self.container_name, exc)
