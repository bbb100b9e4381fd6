"""Command tracking and lab step completion scoring."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


def normalize_whitespace(command: str) -> str:
    """Collapse runs of whitespace and trim both ends."""
    return " ".join(command.split())


@dataclass(frozen=True)
class StepCompletion:
    """Completion summary for one lab step."""

    matched: tuple[str, ...]
    total: int
    percentage: int
    passing_score: int

    @property
    def passed(self) -> bool:
        return self.total > 0 and self.percentage >= self.passing_score


class CommandTracker:
    """Remembers executed commands for one lab step or session."""

    def __init__(self) -> None:
        self._history: list[str] = []
        self._seen: set[str] = set()

    def record_execution(self, command: str) -> None:
        """Record one executed command line."""
        normalized = normalize_whitespace(command)
        if not normalized:
            return
        self._history.append(normalized)
        self._seen.add(normalized)

    def get_executed_commands(self, expected: Sequence[str]) -> list[str]:
        """Return the expected commands seen so far, in `expected` order."""
        return [command for command in expected if normalize_whitespace(command) in self._seen]

    def executed_history(self) -> list[str]:
        """Return every recorded command in execution order."""
        return list(self._history)

    def clear(self) -> None:
        self._history.clear()
        self._seen.clear()


def step_completion(expected: Sequence[str], tracker: CommandTracker, passing_score: int = 100) -> StepCompletion:
    """Score a step as matched expected commands over all expected commands, rounded down."""
    matched = tracker.get_executed_commands(expected)
    total = len(expected)
    percentage = (len(matched) * 100) // total if total else 0
    return StepCompletion(matched=tuple(matched), total=total, percentage=percentage, passing_score=passing_score)
