"""Pipeline engine: loading definitions and running steps as tasks.

A pipeline is an initial variable mapping plus ordered, named steps.
``PipelineEngine`` builds one ``Task`` per step and runs them strictly in
declaration order against a single ``VariableStore``. Within a task the
first failing command ends the task; the command's ``abort_on_failure``
flag then decides whether the remaining steps still run.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import tomllib
from typing import Any

from pydantic import ValidationError
import yaml

from gradebot.builtins import CommandRegistry, create_builtin_registry
from gradebot.execution import CommandExecutionError, build_command_env, run_command
from gradebot.models import (
    BuiltinCommand,
    Command,
    CustomCommand,
    PipelineDefinition,
    PipelineResult,
    TaskResult,
    TaskStatus,
    VariableCommand,
)
from gradebot.scoring import failed_message, passed_message, read_final_score
from gradebot.variables import Value, VariableStore

logger = logging.getLogger(__name__)


class PipelineDefinitionError(ValueError):
    """A pipeline definition file is missing, unparsable, or invalid."""


class TaskAbortedError(Exception):
    """A task failed on a command with ``abort_on_failure`` set.

    Attributes:
        task_name: Name of the aborting task.
        message: Status message to record for the task.
    """

    def __init__(self, task_name: str, message: str) -> None:
        super().__init__(message)
        self.task_name = task_name
        self.message = message


# ---------------------------------------------------------------------------
# Definition loading
# ---------------------------------------------------------------------------


def _read_document(file_path: Path) -> Any:
    if file_path.suffix == ".toml":
        with open(file_path, "rb") as f:
            return tomllib.load(f)
    if file_path.suffix in (".yaml", ".yml"):
        with open(file_path, encoding="utf-8") as f:
            return yaml.safe_load(f)
    msg = f"Unsupported pipeline file type: {file_path.name}"
    raise PipelineDefinitionError(msg)


def load_pipeline(path: str | Path) -> PipelineDefinition:
    """Load and validate a pipeline definition from TOML or YAML.

    Args:
        path: ``.toml``, ``.yaml`` or ``.yml`` file.

    Returns:
        The validated ``PipelineDefinition``.

    Raises:
        PipelineDefinitionError: If the file is missing, cannot be
            parsed, or does not describe a valid pipeline.
    """
    file_path = Path(path)
    if not file_path.exists():
        msg = f"pipeline file not found: {path}"
        raise PipelineDefinitionError(msg)

    try:
        data = _read_document(file_path)
    except (tomllib.TOMLDecodeError, yaml.YAMLError) as exc:
        msg = f"Failed to parse {file_path.name}: {exc}"
        raise PipelineDefinitionError(msg) from exc

    if not isinstance(data, dict):
        msg = f"pipeline file must contain a mapping, got {type(data).__name__}"
        raise PipelineDefinitionError(msg)

    try:
        return PipelineDefinition.model_validate(data)
    except ValidationError as exc:
        msg = f"Invalid pipeline {file_path.name}: {exc}"
        raise PipelineDefinitionError(msg) from exc


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------


class Task:
    """Runtime instance of one step.

    Args:
        name: Step name, used as the result key and report label.
        commands: The step's commands in declaration order.
        root_dir: Project root exposed to custom commands.
    """

    def __init__(self, name: str, commands: list[Command], *, root_dir: str) -> None:
        self.name = name
        self.commands = list(commands)
        self.root_dir = root_dir

    async def run(self, store: VariableStore, registry: CommandRegistry) -> TaskResult:
        """Run every command until the first failure.

        Returns:
            A ``passed`` result, or a ``failed`` result when the failing
            command does not abort.

        Raises:
            TaskAbortedError: If the failing command has
                ``abort_on_failure`` set.
            UndeclaredVariableError: If an argument references an
                undeclared or unset variable.
        """
        logger.info("Running task: %s", self.name)

        for command in self.commands:
            if isinstance(command, VariableCommand):
                logger.info(
                    "Running variable command: %s %s %d",
                    command.name,
                    command.operation,
                    command.delta,
                )
                store.apply(command.operation, command.name, command.delta)
                continue

            args = store.substitute(command.args)
            detail = await self._dispatch(command, args, registry)
            if detail is None:
                continue

            if command.abort_on_failure:
                logger.error("Aborting pipeline: task %s failed", self.name)
                raise TaskAbortedError(
                    self.name, failed_message(self.name, detail, aborted=True)
                )
            return TaskResult(
                name=self.name,
                status=TaskStatus.FAILED,
                message=failed_message(self.name, detail),
            )

        return TaskResult(
            name=self.name,
            status=TaskStatus.PASSED,
            message=passed_message(self.name),
        )

    async def _dispatch(
        self,
        command: BuiltinCommand | CustomCommand,
        args: list[str],
        registry: CommandRegistry,
    ) -> str | None:
        """Execute one command; return a failure detail, or ``None`` on success."""
        if isinstance(command, BuiltinCommand):
            logger.info("Running builtin command: %s with (%s)", command.action, args)
            try:
                await registry.execute(command.action, args)
            except CommandExecutionError as exc:
                logger.error("Error executing builtin command '%s': %s", command.action, exc)
                return f"{exc}\n{exc.output}" if exc.output else str(exc)
            except Exception as exc:
                logger.error("Error executing builtin command '%s': %s", command.action, exc)
                return str(exc)
            return None

        logger.info("Running custom command: %s with (%s)", command.action, args)
        try:
            result = await run_command(
                [command.action, *args],
                env=build_command_env(self.root_dir),
                timeout_seconds=command.timeout_seconds,
            )
        except CommandExecutionError as exc:
            logger.error("Error executing custom command '%s': %s", command.action, exc)
            return str(exc)

        if result.timed_out:
            logger.error("Custom command '%s' timed out", command.action)
            return (
                f"{command.action} timed out after {command.timeout_seconds}s\n"
                f"{result.combined_output()}"
            )
        if result.exit_code != 0:
            logger.error(
                "Custom command '%s' exited with status %d", command.action, result.exit_code
            )
            output = result.combined_output()
            return output or f"{command.action} exited with status {result.exit_code}"
        return None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class PipelineEngine:
    """Run a pipeline definition's steps in order against one variable store.

    The engine owns the store for its whole lifetime and hands it to each
    task in turn; tasks never run concurrently.

    Args:
        definition: The loaded pipeline.
        registry: Builtin actions; defaults to the stock registry.
        root_dir: Project root exposed to custom commands; defaults to
            the current working directory.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        *,
        registry: CommandRegistry | None = None,
        root_dir: str | None = None,
    ) -> None:
        self.definition = definition
        self.registry = registry if registry is not None else create_builtin_registry()
        self.root_dir = root_dir or os.getcwd()
        self.variables = VariableStore(definition.variables)
        self.tasks = [
            Task(name, step.commands, root_dir=self.root_dir)
            for name, step in definition.steps.items()
        ]

    def set_variable(self, name: str, value: Value) -> None:
        """Overwrite a pre-declared variable before the run.

        Raises:
            UndeclaredVariableError: If *name* is not declared.
        """
        self.variables.set(name, value)

    async def run(self) -> PipelineResult:
        """Run all tasks and read the final score.

        Each call reports only its own task results. The variable store is
        not reset, so a second run starts from the values the first left.

        Returns:
            The ordered task results and the integer score.

        Raises:
            UndeclaredVariableError: A command referenced an undeclared
                or unset variable; the remaining steps are not run.
            InvalidScoreError: The ``score`` variable is missing or not
                an integer after the run.
        """
        results: list[TaskResult] = []
        aborted = False
        for task in self.tasks:
            try:
                result = await task.run(self.variables, self.registry)
            except TaskAbortedError as exc:
                logger.error("Task %s aborted the pipeline", task.name)
                results.append(
                    TaskResult(name=task.name, status=TaskStatus.ABORTED, message=exc.message)
                )
                aborted = True
                break
            logger.info("Task %s finished: %s", task.name, result.status)
            results.append(result)

        score = read_final_score(self.variables)
        logger.info("Final score: %d", score)
        return PipelineResult(results=results, score=score, aborted=aborted)


async def run_pipeline(
    definition: PipelineDefinition,
    *,
    overrides: dict[str, Value] | None = None,
    registry: CommandRegistry | None = None,
    root_dir: str | None = None,
) -> PipelineResult:
    """Build an engine for *definition*, apply *overrides*, and run it.

    Overrides naming undeclared variables are skipped with a warning.
    """
    engine = PipelineEngine(definition, registry=registry, root_dir=root_dir)
    for name, value in (overrides or {}).items():
        if name not in engine.variables:
            logger.warning("Pipeline does not declare variable %s; ignoring override", name)
            continue
        engine.set_variable(name, value)
    return await engine.run()
