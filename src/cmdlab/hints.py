"""Graduated hint reveal for lab steps."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import Any, Literal

TriggerType = Literal["manual", "time", "attempts", "command"]

LEVEL_LABELS = {1: "Gentle Nudge", 2: "More Specific", 3: "Very Specific"}


@dataclass(frozen=True)
class HintTrigger:
    type: TriggerType = "manual"
    seconds: int | None = None
    count: int | None = None
    pattern: re.Pattern[str] | None = None


@dataclass(frozen=True)
class Hint:
    """One hint tagged with a reveal level (1 = gentle, 3 = very specific)."""

    id: str
    level: int
    message: str
    trigger: HintTrigger = HintTrigger()
    commands_not_executed: tuple[re.Pattern[str], ...] = ()


@dataclass(frozen=True)
class StepProgress:
    """Learner activity on the current step, supplied by the caller."""

    elapsed_seconds: float = 0.0
    failed_attempts: int = 0
    commands_executed: tuple[str, ...] = ()
    revealed_hint_ids: frozenset[str] = frozenset()


@dataclass(frozen=True)
class HintEvaluation:
    revealed_count: int
    total_count: int
    available: tuple[Hint, ...]
    next_hint: Hint | None


def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a case-insensitive command pattern; bad patterns raise ValueError."""
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        raise ValueError(f"Invalid hint pattern {pattern!r}: {exc}") from exc


def hints_from_raw(raw: Sequence[Any]) -> list[Hint]:
    """Build hints from step content; plain strings become manual hints by position."""
    hints: list[Hint] = []
    for index, item in enumerate(raw):
        if isinstance(item, str):
            hints.append(Hint(id=f"hint-{index}", level=min(index + 1, 3), message=item))
            continue
        trigger_raw = item.get("trigger", {})
        trigger = HintTrigger(
            type=trigger_raw.get("type", "manual"),
            seconds=trigger_raw.get("seconds"),
            count=trigger_raw.get("count"),
            pattern=compile_pattern(trigger_raw["pattern"]) if trigger_raw.get("pattern") else None,
        )
        hints.append(
            Hint(
                id=str(item.get("id", f"hint-{index}")),
                level=int(item.get("level", 1)),
                message=str(item["message"]),
                trigger=trigger,
                commands_not_executed=tuple(compile_pattern(text) for text in item.get("commands_not_executed", [])),
            )
        )
    return hints


def evaluate_hints(hints: Sequence[Hint], progress: StepProgress) -> HintEvaluation:
    """Return which hints are available now and the next one to reveal.

    Revealed hints stay available regardless of the current thresholds.
    """
    ordered = sorted(hints, key=lambda hint: hint.level)
    all_ids = {hint.id for hint in ordered}
    available = tuple(
        hint for hint in ordered if hint.id in progress.revealed_hint_ids or _is_available(hint, progress)
    )
    next_hint = next((hint for hint in available if hint.id not in progress.revealed_hint_ids), None)
    revealed = len(progress.revealed_hint_ids & all_ids)
    return HintEvaluation(
        revealed_count=revealed,
        total_count=len(ordered),
        available=available,
        next_hint=next_hint,
    )


def reveal_next(hints: Sequence[Hint], progress: StepProgress) -> tuple[Hint | None, StepProgress]:
    """Reveal the next eligible hint, returning it with the updated progress."""
    evaluation = evaluate_hints(hints, progress)
    if evaluation.next_hint is None:
        return None, progress
    revealed = progress.revealed_hint_ids | {evaluation.next_hint.id}
    return evaluation.next_hint, replace(progress, revealed_hint_ids=frozenset(revealed))


def hint_status(evaluation: HintEvaluation) -> str:
    """One-line hint status for the terminal prompt area."""
    if evaluation.total_count == 0:
        return "No hints available for this step."
    if evaluation.revealed_count == evaluation.total_count:
        return f"All hints revealed ({evaluation.total_count}/{evaluation.total_count})."
    if evaluation.next_hint is not None:
        return f"Hint available ({evaluation.revealed_count + 1}/{evaluation.total_count}). Type :hint to see it."
    return f"No new hints yet ({evaluation.revealed_count}/{evaluation.total_count} revealed). Keep trying."


def format_hint(hint: Hint, index: int, total: int) -> str:
    label = LEVEL_LABELS.get(hint.level, "Helpful Tip")
    return f"HINT {index}/{total} - {label}\n  {hint.message}"


def _is_available(hint: Hint, progress: StepProgress) -> bool:
    if not _trigger_met(hint.trigger, progress):
        return False
    for regex in hint.commands_not_executed:
        if any(regex.search(command) for command in progress.commands_executed):
            return False
    return True


def _trigger_met(trigger: HintTrigger, progress: StepProgress) -> bool:
    if trigger.type == "manual":
        return True
    if trigger.type == "time":
        return trigger.seconds is not None and progress.elapsed_seconds >= trigger.seconds
    if trigger.type == "attempts":
        return bool(trigger.count) and progress.failed_attempts >= (trigger.count or 0)
    if trigger.type == "command":
        if trigger.pattern is None:
            return False
        return any(trigger.pattern.search(command) for command in progress.commands_executed)
    return False
