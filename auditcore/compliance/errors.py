"""Exceptions raised while loading a rule set."""

from __future__ import annotations


class RuleSetError(ValueError):
    """Raised when a rule set is structurally invalid.

    Covers malformed rule shapes, duplicate ids and dependency cycles.
    These are fatal and reported before any record is processed.
    ``problems`` lists every defect found, one message per entry.
    """

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        self.problems = list(problems or [])
        if self.problems:
            message = message + ":\n" + "\n".join(f"  - {p}" for p in self.problems)
        super().__init__(message)
