"""Task status formatting and final score extraction.

Provides the fixed-width status lines that make up grading comments
and the final score lookup on a finished pipeline's variable store.
"""

from __future__ import annotations

from gradebot.variables import VariableStore

SCORE_VARIABLE = "score"
"""Store entry holding the final integer score."""

_LABEL_WIDTH = 10
_STATUS_WIDTH = 20

PASSED = "Passed"
FAILED = "Failed"
ABORTED_TRAILER = "Test aborted.\n"


class InvalidScoreError(ValueError):
    """The ``score`` variable is missing, unset, or not an integer."""


def status_line(name: str, status: str) -> str:
    """Return ``[name]`` left-aligned and *status* right-aligned, newline-terminated."""
    label = f"[{name}]"
    return f"{label:<{_LABEL_WIDTH}} {status:>{_STATUS_WIDTH}}\n"


def passed_message(name: str) -> str:
    return status_line(name, PASSED)


def failed_message(name: str, detail: str, *, aborted: bool = False) -> str:
    """Status line for a failed task followed by the failure detail.

    Aborting failures get a trailing ``Test aborted.`` line.
    """
    message = status_line(name, FAILED) + detail
    if not message.endswith("\n"):
        message += "\n"
    if aborted:
        message += ABORTED_TRAILER
    return message


def read_final_score(store: VariableStore, name: str = SCORE_VARIABLE) -> int:
    """Read the final score from a finished run's variable store.

    Raises:
        InvalidScoreError: If the variable is undeclared, unset, or not
            an integer (booleans are rejected).
    """
    if name not in store:
        msg = f"Pipeline does not declare a '{name}' variable"
        raise InvalidScoreError(msg)
    value = store.get(name)
    if value is None:
        msg = f"Pipeline variable '{name}' has no value"
        raise InvalidScoreError(msg)
    if isinstance(value, bool) or not isinstance(value, int):
        msg = f"Pipeline variable '{name}' must be an integer, got {type(value).__name__}"
        raise InvalidScoreError(msg)
    return value

