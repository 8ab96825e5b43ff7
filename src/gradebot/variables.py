"""Variable store shared by the commands of one pipeline run.

Holds the name -> optional scalar mapping declared by a pipeline
definition, resolves ``var::NAME`` argument references, and applies the
in-place variable operations of ``variable`` commands.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
import logging
import threading

logger = logging.getLogger(__name__)

VAR_PREFIX = "var::"
"""Marker identifying an argument as a variable reference."""

Value = bool | int | str | None


class UndeclaredVariableError(KeyError):
    """A command referenced a variable that is undeclared or unset.

    Fatal for the whole pipeline run, not just the current command.
    """

    def __init__(self, name: str, reason: str = "is not declared") -> None:
        super().__init__(name)
        self.name = name
        self.reason = reason

    def __str__(self) -> str:
        return f"Variable '{self.name}' {self.reason}"


def stringify(value: bool | int | str) -> str:
    """Render a scalar the way it is substituted into command arguments.

    Booleans become ``true``/``false``; strings lose surrounding double
    quotes.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    return value.strip('"')


class VariableStore:
    """Mutable name -> optional scalar mapping for one pipeline run.

    Only names present in the initial mapping can ever be read or
    written. Every access holds the internal lock for a single short
    read or read-modify-write.
    """

    def __init__(self, initial: Mapping[str, Value] | None = None) -> None:
        self._values: dict[str, Value] = dict(initial or {})
        self._lock = threading.Lock()

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def get(self, name: str) -> Value:
        """Return the current value of a declared variable.

        Raises:
            UndeclaredVariableError: If *name* was never declared.
        """
        with self._lock:
            if name not in self._values:
                raise UndeclaredVariableError(name)
            return self._values[name]

    def set(self, name: str, value: Value) -> None:
        """Overwrite a declared variable.

        Raises:
            UndeclaredVariableError: If *name* was never declared.
        """
        with self._lock:
            if name not in self._values:
                raise UndeclaredVariableError(name)
            self._values[name] = value

    def snapshot(self) -> dict[str, Value]:
        """Return a shallow copy of the current mapping."""
        with self._lock:
            return dict(self._values)

    def resolve(self, name: str) -> str:
        """Return the substitution text for variable *name*.

        Raises:
            UndeclaredVariableError: If *name* is undeclared or unset.
        """
        value = self.get(name)
        if value is None:
            raise UndeclaredVariableError(name, "has no value")
        return stringify(value)

    def substitute(self, args: Iterable[str]) -> list[str]:
        """Replace every ``var::NAME`` argument with the value of ``NAME``.

        Other arguments are passed through unchanged.
        """
        resolved: list[str] = []
        for arg in args:
            if arg.startswith(VAR_PREFIX):
                resolved.append(self.resolve(arg[len(VAR_PREFIX):]))
            else:
                resolved.append(arg)
        return resolved

    def apply(self, operation: str, name: str, delta: int) -> bool:
        """Apply an in-place operation to an integer variable.

        Only ``+`` is defined. An unknown operation, an absent variable, or
        a non-integer value is a no-op that logs a warning.

        Returns:
            True if the variable was modified.
        """
        if operation != "+":
            logger.warning("Unsupported variable operation %r on %s", operation, name)
            return False

        with self._lock:
            current = self._values.get(name)
            # bool is an int subclass but not an integer variable
            if (
                name not in self._values
                or not isinstance(current, int)
                or isinstance(current, bool)
            ):
                logger.warning("Variable %s is not an integer or is uninitialized", name)
                return False
            self._values[name] = current + delta
            return True
