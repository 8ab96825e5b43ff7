"""Async subprocess execution for pipeline commands.

Provides the environment builder for custom commands and
``run_command``, which spawns an executable as an async subprocess,
captures stdout and stderr, and optionally enforces a timeout by
terminating the whole process group (SIGTERM, then SIGKILL after a
grace period).
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import time

from pydantic import BaseModel, ConfigDict

ROOT_DIR_ENV = "GRADEBOT_ROOT_DIR"
"""Environment variable exposing the project root to custom commands."""

_SIGKILL_GRACE_SECONDS = 5
_OUTPUT_TAIL_CHARS = 4000


class CommandExecutionError(RuntimeError):
    """A command failed: spawn error, non-zero exit, or timeout.

    Attributes:
        output: Captured output to show in the task report.
    """

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class CommandRawResult(BaseModel):
    """Raw output captured from one subprocess execution.

    Attributes:
        argv: The executed command line.
        stdout: Full standard output.
        stderr: Full standard error.
        exit_code: Process exit code (-1 on timeout).
        duration_seconds: Wall-clock execution time in seconds.
        timed_out: Whether the process was killed due to timeout.
    """

    model_config = ConfigDict(frozen=True)

    argv: list[str]
    stdout: str
    stderr: str
    exit_code: int
    duration_seconds: float
    timed_out: bool

    @property
    def succeeded(self) -> bool:
        """True when the process exited with status 0 before its deadline."""
        return not self.timed_out and self.exit_code == 0

    def combined_output(self) -> str:
        """Stdout, followed by stderr when it is non-empty, tail-truncated."""
        output = self.stdout
        if self.stderr.strip():
            if output and not output.endswith("\n"):
                output += "\n"
            output += self.stderr
        return output[-_OUTPUT_TAIL_CHARS:]


def build_command_env(root_dir: str) -> dict[str, str]:
    """Build environment variables for a custom command.

    Returns a copy of the current environment with ``GRADEBOT_ROOT_DIR``
    set to *root_dir*.
    """
    env = dict(os.environ)
    env[ROOT_DIR_ENV] = root_dir
    return env


async def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    """Send SIGTERM to the process group, escalating to SIGKILL after grace period."""
    pid = proc.pid
    if pid is None:
        return

    try:
        pgid = os.getpgid(pid)
    except (OSError, ProcessLookupError):
        return

    try:
        os.killpg(pgid, signal.SIGTERM)
    except (OSError, ProcessLookupError):
        return

    try:
        await asyncio.wait_for(proc.wait(), timeout=_SIGKILL_GRACE_SECONDS)
    except TimeoutError:
        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGKILL)
        with contextlib.suppress(ProcessLookupError):
            await proc.wait()


async def run_command(
    argv: list[str],
    *,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    timeout_seconds: float | None = None,
) -> CommandRawResult:
    """Run *argv* as an async subprocess and capture its output.

    The executable (``argv[0]``) is looked up on ``PATH``. Each
    invocation gets its own process group so a timeout kills any
    children as well.

    Args:
        argv: Executable followed by its arguments.
        cwd: Working directory, or ``None`` to inherit.
        env: Environment variables, or ``None`` to inherit.
        timeout_seconds: Maximum seconds before the process is killed,
            or ``None`` for no limit.

    Returns:
        A ``CommandRawResult`` with captured output and exit status.

    Raises:
        CommandExecutionError: If the process could not be spawned.
    """
    start = time.monotonic()

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            start_new_session=True,
        )
    except OSError as exc:
        msg = f"Failed to spawn {argv[0]!r}: {exc}"
        raise CommandExecutionError(msg, output=str(exc)) from exc

    timed_out = False
    # Shielded so partial output can still be collected after a kill.
    communicate_task = asyncio.ensure_future(proc.communicate())
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            asyncio.shield(communicate_task),
            timeout=timeout_seconds,
        )
    except TimeoutError:
        timed_out = True
        await _kill_process_group(proc)
        stdout_bytes, stderr_bytes = await communicate_task

    duration = time.monotonic() - start

    if timed_out:
        exit_code = -1
    else:
        exit_code = proc.returncode if proc.returncode is not None else -1

    return CommandRawResult(
        argv=list(argv),
        stdout=stdout_bytes.decode("utf-8", errors="replace"),
        stderr=stderr_bytes.decode("utf-8", errors="replace"),
        exit_code=exit_code,
        duration_seconds=duration,
        timed_out=timed_out,
    )


async def run_checked(
    argv: list[str],
    *,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    timeout_seconds: float | None = None,
) -> CommandRawResult:
    """Like ``run_command`` but raise unless the process succeeded.

    Raises:
        CommandExecutionError: On spawn failure, non-zero exit, or timeout.
    """
    result = await run_command(argv, cwd=cwd, env=env, timeout_seconds=timeout_seconds)
    if result.timed_out:
        msg = f"{argv[0]} timed out after {timeout_seconds}s"
        raise CommandExecutionError(msg, output=result.combined_output())
    if result.exit_code != 0:
        msg = f"{argv[0]} exited with status {result.exit_code}"
        raise CommandExecutionError(msg, output=result.combined_output())
    return result
