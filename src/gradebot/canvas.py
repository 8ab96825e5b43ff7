"""Canvas LMS client: submission discovery and score reporting.

``CanvasClient`` lists an assignment's submissions, following ``Link``
header continuation pages, and posts grades with a text comment. It
implements the ``SubmissionSource`` protocol consumed by the sandbox
executor and the orchestrator.
"""

from __future__ import annotations

import asyncio
from collections.abc import Collection
import logging
from typing import Protocol, runtime_checkable

import httpx
from pydantic import ValidationError

from gradebot.models import GraderConfig, ScoreReport, Submission

logger = logging.getLogger(__name__)


class SubmissionFetchError(RuntimeError):
    """The submission list could not be fetched or decoded."""


@runtime_checkable
class SubmissionSource(Protocol):
    """Where submissions come from and where grades go."""

    async def list_submissions(  # noqa: D102
        self, accepted_states: Collection[str]
    ) -> list[Submission]: ...

    async def report_score(  # noqa: D102
        self, user_id: int, score: int, comment: str
    ) -> ScoreReport: ...


def parse_next_link(link_header: str | None) -> str | None:
    """Return the ``rel="next"`` URL of a ``Link`` header, if any.

    >>> parse_next_link('<https://x/a?page=2>; rel="next", <https://x/a?page=9>; rel="last"')
    'https://x/a?page=2'
    """
    if not link_header:
        return None
    for link in link_header.split(","):
        parts = link.split(";")
        if any(p.strip() == 'rel="next"' for p in parts[1:]):
            return parts[0].strip().lstrip("<").rstrip(">")
    return None


def with_access_token(url: str, token: str) -> str:
    """Return *url* with an ``access_token`` query parameter set to *token*."""
    return str(httpx.URL(url).copy_set_param("access_token", token))


class CanvasClient:
    """Async Canvas REST client for one assignment.

    Args:
        config: Grader configuration (API URL, key, course and
            assignment ids, retry budget).
        client: Optional pre-built ``httpx.AsyncClient``; one is created
            (and owned) otherwise.
        retry_base_delay: First backoff delay in seconds for score
            reports; doubles on every further attempt.
    """

    AUTHORIZATION_HEADER = "Authorization"

    def __init__(
        self,
        config: GraderConfig,
        *,
        client: httpx.AsyncClient | None = None,
        retry_base_delay: float = 1.0,
    ) -> None:
        self.config = config
        self.url = config.submissions_url
        self.header = f"Bearer {config.api_key}"
        self.retry_base_delay = retry_base_delay
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> CanvasClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _headers(self) -> dict[str, str]:
        return {self.AUTHORIZATION_HEADER: self.header}

    async def list_submissions(
        self, accepted_states: Collection[str] | None = None
    ) -> list[Submission]:
        """Fetch every submission page and keep the eligible ones.

        Continuation links are followed until none remain; the bearer
        header and an ``access_token`` parameter are attached to every
        continuation request. Submissions are de-duplicated by
        ``user_id`` (first occurrence wins).

        Args:
            accepted_states: Workflow states to keep; defaults to the
                configured ``fetch_filter``.

        Raises:
            SubmissionFetchError: On network errors, non-2xx responses,
                or undecodable pages.
        """
        states = set(accepted_states if accepted_states is not None else self.config.fetch_filter)
        submissions: list[Submission] = []
        seen: set[int] = set()
        next_url: str | None = self.url
        pages = 0

        while next_url is not None:
            try:
                response = await self._client.get(next_url, headers=self._headers())
                response.raise_for_status()
                payload = response.json()
            except httpx.HTTPError as exc:
                msg = f"Failed to fetch submissions from {next_url}: {exc}"
                raise SubmissionFetchError(msg) from exc
            except ValueError as exc:
                msg = f"Invalid JSON in submissions page {next_url}: {exc}"
                raise SubmissionFetchError(msg) from exc

            if not isinstance(payload, list):
                msg = f"Submissions page must be a JSON array, got {type(payload).__name__}"
                raise SubmissionFetchError(msg)

            try:
                page = [Submission.model_validate(item) for item in payload]
            except ValidationError as exc:
                msg = f"Malformed submission record: {exc}"
                raise SubmissionFetchError(msg) from exc

            pages += 1
            for submission in page:
                if submission.workflow_state not in states or submission.user_id in seen:
                    continue
                seen.add(submission.user_id)
                submissions.append(submission)

            next_link = parse_next_link(response.headers.get("Link"))
            next_url = with_access_token(next_link, self.config.api_key) if next_link else None

        logger.info("Fetched %d eligible submissions over %d pages", len(submissions), pages)
        return submissions

    async def report_score(self, user_id: int, score: int, comment: str) -> ScoreReport:
        """Post a grade and comment for *user_id*.

        Failures are retried with exponential backoff up to
        ``config.score_report_retries`` attempts. The outcome is always
        returned, never raised.
        """
        url = f"{self.url}/{user_id}"
        body = {
            "submission": {"posted_grade": score},
            "comment": {"text_comment": comment},
        }
        max_attempts = self.config.score_report_retries
        status_code: int | None = None
        error: str | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                response = await self._client.put(url, headers=self._headers(), json=body)
                status_code = response.status_code
                response.raise_for_status()
            except httpx.HTTPError as exc:
                error = str(exc)
                if attempt < max_attempts:
                    delay = self.retry_base_delay * 2 ** (attempt - 1)
                    logger.warning(
                        "Score update for user %d attempt %d/%d failed; retrying in %.1fs",
                        user_id,
                        attempt,
                        max_attempts,
                        delay,
                    )
                    await asyncio.sleep(delay)
                continue

            logger.info("Posted score %d for user %d", score, user_id)
            return ScoreReport(
                user_id=user_id,
                score=score,
                comment=comment,
                ok=True,
                attempts=attempt,
                status_code=status_code,
            )

        logger.error("Error updating score for user %d: %s", user_id, error)
        return ScoreReport(
            user_id=user_id,
            score=score,
            comment=comment,
            ok=False,
            attempts=max_attempts,
            status_code=status_code,
            error=error,
        )
