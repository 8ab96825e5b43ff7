"""CLI entry point for gradebot.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``gradebot = "gradebot.cli:main"``. Two
subcommands are available:

* ``daemon``: poll Canvas and grade every eligible submission in a
  container, forever.
* ``execute``: run a grading pipeline for one submission and report
  the resulting score and comment.
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
import sys
from typing import Any

from pydantic import ValidationError
import yaml

from gradebot.canvas import CanvasClient
from gradebot.models import GraderConfig
from gradebot.orchestrator import (
    Orchestrator,
    apply_env_overrides,
    configure_logging,
    execute_submission,
)
from gradebot.pipeline import PipelineDefinitionError, load_pipeline
from gradebot.sandbox import DockerSandboxRuntime
from gradebot.scoring import InvalidScoreError
from gradebot.variables import UndeclaredVariableError


class ConfigValidationError(ValueError):
    """The configuration file is missing, malformed, or incomplete."""


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gradebot",
        description="Runs lab assignments in Docker containers and grades them on Canvas.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    daemon = subparsers.add_parser("daemon", help="Poll and grade submissions continuously.")
    daemon.add_argument(
        "-f",
        "--config",
        default="config.json",
        help="Path to the configuration file.",
    )

    execute = subparsers.add_parser("execute", help="Run a grading pipeline once.")
    execute.add_argument(
        "-f",
        "--config",
        default="config.json",
        help="Path to the configuration file.",
    )
    execute.add_argument(
        "-p",
        "--pipeline",
        default="pipeline.toml",
        help="Path to the pipeline definition file.",
    )
    execute.add_argument("-s", "--sub-id", required=True, type=int, help="Submission (user) id.")
    execute.add_argument("-u", "--url", required=True, help="URL of the attachment.")
    execute.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the score and comment without reporting them.",
    )
    return parser


def _load_document(path: str) -> dict[str, Any]:
    """Load a JSON or YAML configuration file as a dict.

    Raises:
        ConfigValidationError: If the file is missing, unparsable, or not
            a mapping.
    """
    file_path = Path(path)
    if not file_path.exists():
        msg = f"config file not found: {path}"
        raise ConfigValidationError(msg)

    try:
        with open(file_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        msg = f"config file {path} is not valid JSON/YAML: {exc}"
        raise ConfigValidationError(msg) from exc

    if not isinstance(data, dict):
        msg = f"config file must contain a mapping, got {type(data).__name__}"
        raise ConfigValidationError(msg)

    return data


def load_config(path: str) -> GraderConfig:
    """Load, override from the environment, and validate the configuration.

    Raises:
        ConfigValidationError: If any required field is missing, empty,
            or zero.
    """
    data = apply_env_overrides(_load_document(path))
    try:
        return GraderConfig(**data)
    except ValidationError as exc:
        msg = f"invalid configuration in {path}: {exc}"
        raise ConfigValidationError(msg) from exc


async def _run_daemon(config: GraderConfig) -> None:
    runtime = DockerSandboxRuntime(max_waiters=config.max_concurrent_sandboxes)
    try:
        async with CanvasClient(config) as source:
            await Orchestrator(source, runtime, config).run_forever()
    finally:
        runtime.close()


async def _run_execute(config: GraderConfig, args: argparse.Namespace) -> int:
    definition = load_pipeline(args.pipeline)
    root_dir = str(Path(args.pipeline).resolve().parent)

    if args.dry_run:
        result, report = await execute_submission(
            definition,
            user_id=args.sub_id,
            attachment_url=args.url,
            source=None,
            root_dir=root_dir,
        )
    else:
        async with CanvasClient(config) as source:
            result, report = await execute_submission(
                definition,
                user_id=args.sub_id,
                attachment_url=args.url,
                source=source,
                root_dir=root_dir,
            )

    print(f"Final score: {result.score}")
    print(f"Comment:\n{result.comment}")
    if report is not None and not report.ok:
        print(f"Score update failed: {report.error}", file=sys.stderr)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for the gradebot CLI application.

    Returns:
        Exit code: 0 on success, 1 on error.
    """
    args = _build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigValidationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    configure_logging(config)

    try:
        if args.command == "daemon":
            asyncio.run(_run_daemon(config))
            return 0
        return asyncio.run(_run_execute(config, args))
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130
    except PipelineDefinitionError as exc:
        print(f"Pipeline error: {exc}", file=sys.stderr)
        return 1
    except (UndeclaredVariableError, InvalidScoreError) as exc:
        print(f"Pipeline aborted: {exc}", file=sys.stderr)
        return 1
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
