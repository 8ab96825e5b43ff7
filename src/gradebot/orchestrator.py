"""Grading orchestrator: poll loop, fan-out, and one-shot pipeline runs.

``Orchestrator`` polls the submission source at a fixed interval and
runs one ``SandboxExecutor`` per eligible submission concurrently,
waiting for the whole batch before the next tick. ``execute_submission``
is the one-shot path that runs a grading pipeline against a single
submission and reports its score.

Also hosts logging configuration and ``GRADEBOT_*`` environment
overrides for the raw configuration document.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
import time
from typing import Any

from gradebot.canvas import SubmissionFetchError, SubmissionSource
from gradebot.models import (
    GraderConfig,
    PipelineDefinition,
    PipelineResult,
    SandboxOutcome,
    ScoreReport,
    Submission,
)
from gradebot.pipeline import run_pipeline
from gradebot.sandbox import SandboxExecutor, SandboxRuntime

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Environment variable support
# ---------------------------------------------------------------------------

_ENV_FIELD_MAP: dict[str, str] = {
    "GRADEBOT_API_KEY": "api_key",
    "GRADEBOT_API_URL": "api_url",
    "GRADEBOT_LOG_LEVEL": "log_level",
    "GRADEBOT_LAB_TIMEOUT": "lab_timeout",
}
"""Maps environment variable names to GraderConfig field names."""


def apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply ``GRADEBOT_*`` env var overrides to a raw config document.

    Environment values win over file values. A non-numeric
    ``GRADEBOT_LAB_TIMEOUT`` is ignored with a warning.

    Args:
        data: Parsed configuration file contents.

    Returns:
        A new dict with overrides applied.
    """
    merged = dict(data)
    for env_var, field_name in _ENV_FIELD_MAP.items():
        raw = os.environ.get(env_var)
        if raw is None:
            continue
        if field_name == "lab_timeout":
            try:
                merged[field_name] = int(raw)
            except ValueError:
                logger.warning("Ignoring non-integer %s=%r", env_var, raw)
            continue
        merged[field_name] = raw
    return merged


# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s - %(message)s"


def configure_logging(config: GraderConfig) -> None:
    """Configure Python logging for the grader.

    Sets up the ``"gradebot"`` logger with a console handler and an
    optional file handler. Repeated calls do not duplicate handlers.
    """
    root = logging.getLogger("gradebot")
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    if not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in root.handlers
    ):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(console)

    if config.log_file is not None:
        has_file = any(
            isinstance(h, logging.FileHandler)
            and getattr(h, "baseFilename", None) == str(Path(config.log_file).resolve())
            for h in root.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(config.log_file)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            root.addHandler(file_handler)


# ---------------------------------------------------------------------------
# Daemon mode
# ---------------------------------------------------------------------------


class Orchestrator:
    """Fixed-interval poll loop fanning out one sandbox per submission.

    Args:
        source: Submission source (listing and score reporting).
        runtime: Container engine handed to every executor.
        config: Grader configuration.
    """

    def __init__(
        self,
        source: SubmissionSource,
        runtime: SandboxRuntime,
        config: GraderConfig,
    ) -> None:
        self.source = source
        self.runtime = runtime
        self.config = config
        self.failed_reports: list[ScoreReport] = []
        self._semaphore = (
            asyncio.Semaphore(config.max_concurrent_sandboxes)
            if config.max_concurrent_sandboxes is not None
            else None
        )

    async def _grade(self, submission: Submission) -> SandboxOutcome:
        executor = SandboxExecutor(submission, self.runtime, self.source, self.config)
        if self._semaphore is None:
            return await executor.run()
        async with self._semaphore:
            return await executor.run()

    def _record_failed_report(self, report: ScoreReport) -> None:
        """Keep an undelivered score report for later reconciliation."""
        self.failed_reports.append(report)
        if self.config.failed_reports_file is None:
            return
        try:
            with open(self.config.failed_reports_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(report.model_dump()) + "\n")
        except OSError:
            logger.exception("Could not record failed score report for user %d", report.user_id)

    async def run_cycle(self) -> list[SandboxOutcome]:
        """Run one poll cycle: fetch, fan out, wait for every execution.

        A fetch failure skips the cycle. An exception escaping one
        submission's execution is logged and does not affect the others.

        Returns:
            The outcomes of executions that reached a terminal state.
        """
        try:
            submissions = await self.source.list_submissions(self.config.fetch_filter)
        except SubmissionFetchError as exc:
            logger.error("Failed to get submissions: %s", exc)
            return []

        if not submissions:
            logger.info("No submissions to grade")
            return []

        logger.info("Dispatching %d submissions", len(submissions))
        raw_results = await asyncio.gather(
            *(self._grade(s) for s in submissions), return_exceptions=True
        )

        outcomes: list[SandboxOutcome] = []
        for submission, result in zip(submissions, raw_results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Task for user %d failed: %r", submission.user_id, result, exc_info=result
                )
                continue
            if result.report is not None and not result.report.ok:
                self._record_failed_report(result.report)
            outcomes.append(result)
        return outcomes

    async def run_forever(self, *, max_cycles: int | None = None) -> None:
        """Poll until the process is terminated.

        Cycles start on a fixed-interval tick; a cycle that overruns
        the interval is followed immediately by the next one.

        Args:
            max_cycles: Stop after this many cycles (``None`` = never).
        """
        logger.info("%s Lab Runner Started", self.config.lab_name)
        interval = self.config.poll_interval_seconds
        cycles = 0
        next_tick = time.monotonic()

        while max_cycles is None or cycles < max_cycles:
            await self.run_cycle()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            next_tick += interval
            delay = next_tick - time.monotonic()
            if delay > 0:
                await asyncio.sleep(delay)
            else:
                next_tick = time.monotonic()


# ---------------------------------------------------------------------------
# Execute mode
# ---------------------------------------------------------------------------


async def execute_submission(
    definition: PipelineDefinition,
    *,
    user_id: int,
    attachment_url: str,
    source: SubmissionSource | None,
    root_dir: str | None = None,
) -> tuple[PipelineResult, ScoreReport | None]:
    """Run a grading pipeline for one submission and report its score.

    The attachment URL is written to the pipeline's ``url`` variable
    when the pipeline declares it.

    Args:
        definition: Grading pipeline.
        user_id: Owner of the graded submission.
        attachment_url: Download URL of the submitted attachment.
        source: Where to report the score; ``None`` skips reporting.
        root_dir: Project root exposed to custom commands.

    Returns:
        The pipeline result and the score report (``None`` when not
        reported).

    Raises:
        UndeclaredVariableError: A command referenced an undeclared or
            unset variable.
        InvalidScoreError: The pipeline produced no integer score.
    """
    result = await run_pipeline(
        definition,
        overrides={"url": attachment_url},
        root_dir=root_dir,
    )
    logger.info("Final score for user %d: %d", user_id, result.score)

    if source is None:
        return result, None

    logger.info("Updating score")
    report = await source.report_score(user_id, result.score, result.comment)
    if not report.ok:
        logger.error("Score update for user %d was not delivered: %s", user_id, report.error)
    logger.info("Pipeline finished")
    return result, report
