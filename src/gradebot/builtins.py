"""Builtin command registry and the stock builtin actions.

A builtin action is any object satisfying the ``BuiltinAction``
protocol: a ``name`` plus an async ``__call__(args)`` that returns
``None`` on success and raises on failure. Actions are registered into a
``CommandRegistry`` once at startup; pipelines then dispatch ``builtin``
commands to them by name.
"""

from __future__ import annotations

import asyncio
import difflib
import logging
from pathlib import Path
import shutil
from typing import Protocol, runtime_checkable

import httpx
import py7zr

from gradebot.execution import CommandExecutionError, run_checked

logger = logging.getLogger(__name__)


class UnknownCommandError(LookupError):
    """No builtin action is registered under the requested name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Builtin command '{name}' not found.")
        self.name = name


class BuiltinActionError(RuntimeError):
    """A builtin action rejected its arguments or input."""


@runtime_checkable
class BuiltinAction(Protocol):
    """Capability interface implemented by every builtin action."""

    name: str

    async def __call__(self, args: list[str]) -> None: ...  # noqa: D102


def _require(args: list[str], index: int, what: str) -> str:
    if len(args) <= index:
        msg = f"{what} not set in arguments"
        raise BuiltinActionError(msg)
    return args[index]


class CommandRegistry:
    """Name-keyed table of builtin actions.

    Built once at startup and treated as read-only afterwards.
    """

    def __init__(self) -> None:
        self._actions: dict[str, BuiltinAction] = {}

    def register(self, action: BuiltinAction, *, name: str | None = None) -> CommandRegistry:
        """Register *action* under *name* (defaults to ``action.name``).

        Returns the registry so registrations can be chained.
        """
        self._actions[name or action.name] = action
        return self

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    def names(self) -> list[str]:
        """Registered action names, in registration order."""
        return list(self._actions)

    async def execute(self, name: str, args: list[str]) -> None:
        """Run the action registered as *name* with *args*.

        Raises:
            UnknownCommandError: If *name* is not registered.
            Exception: Whatever the action raises, unchanged.
        """
        action = self._actions.get(name)
        if action is None:
            raise UnknownCommandError(name)
        await action(args)


# ---------------------------------------------------------------------------
# download_and_extract_7z
# ---------------------------------------------------------------------------


def _extract_7z(archive: Path, destination: Path) -> None:
    with py7zr.SevenZipFile(archive, mode="r") as zf:
        zf.extractall(path=destination)


class DownloadAndExtract7z:
    """Download a 7z archive and unpack it into a fresh directory.

    Arguments: ``[url, output_dir]``. The output directory is wiped and
    recreated before the download; the archive itself is stored there as
    ``submitted.7z``.
    """

    name = "download_and_extract_7z"
    archive_name = "submitted.7z"

    def __init__(
        self,
        *,
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def __call__(self, args: list[str]) -> None:
        url = _require(args, 0, "URL")
        output_dir = Path(_require(args, 1, "output dir"))

        if output_dir.exists():
            shutil.rmtree(output_dir)
        output_dir.mkdir(parents=True)

        archive = output_dir / self.archive_name
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
            archive.write_bytes(response.content)

        logger.info("Downloaded %d bytes from %s", len(response.content), url)
        await asyncio.to_thread(_extract_7z, archive, output_dir)


# ---------------------------------------------------------------------------
# diff_file
# ---------------------------------------------------------------------------


def count_line_changes(old: str, new: str) -> int:
    """Return the number of non-equal lines in a line diff of *old* and *new*.

    A replaced block counts both its deleted and its inserted lines.
    """
    matcher = difflib.SequenceMatcher(
        a=old.splitlines(keepends=True),
        b=new.splitlines(keepends=True),
        autojunk=False,
    )
    changed = 0
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag != "equal":
            changed += (i2 - i1) + (j2 - j1)
    return changed


class DiffFile:
    """Fail when two text files differ by more than a line threshold.

    Arguments: ``[base_file, submission_file, max_changed_lines]``.
    """

    name = "diff_file"

    async def __call__(self, args: list[str]) -> None:
        base = _require(args, 0, "Base file")
        submission = _require(args, 1, "Submission file")
        raw_threshold = _require(args, 2, "Count")

        try:
            threshold = int(raw_threshold)
        except ValueError as exc:
            msg = f"Count {raw_threshold!r} is not an integer"
            raise BuiltinActionError(msg) from exc

        old = Path(base).read_text(encoding="utf-8")
        new = Path(submission).read_text(encoding="utf-8")
        diff = count_line_changes(old, new)
        if diff > threshold:
            msg = f"Diff count {diff} > {threshold}"
            raise BuiltinActionError(msg)


# ---------------------------------------------------------------------------
# compile_cmake
# ---------------------------------------------------------------------------


class CompileCMake:
    """Configure and build a CMake project.

    Arguments: ``[source_dir, build_dir]``; ``build_dir`` defaults to
    ``build``. Either cmake invocation exiting non-zero fails the action.
    """

    name = "compile_cmake"

    def __init__(self, cmake: str = "cmake", timeout_seconds: float | None = None) -> None:
        self.cmake = cmake
        self.timeout_seconds = timeout_seconds

    async def __call__(self, args: list[str]) -> None:
        source_dir = _require(args, 0, "Directory")
        build_dir = args[1] if len(args) > 1 else "build"

        try:
            await run_checked(
                [self.cmake, "-B", build_dir, "-S", source_dir],
                timeout_seconds=self.timeout_seconds,
            )
            await run_checked(
                [self.cmake, "--build", build_dir],
                timeout_seconds=self.timeout_seconds,
            )
        except CommandExecutionError as exc:
            logger.warning("CMake build of %s failed: %s", source_dir, exc)
            raise


def create_builtin_registry() -> CommandRegistry:
    """Build the registry holding every stock builtin action."""
    registry = CommandRegistry()
    registry.register(DownloadAndExtract7z()).register(DiffFile()).register(CompileCMake())
    return registry
