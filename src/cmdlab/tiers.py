"""Command families and tier unlock rules."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .content_loader import load_bundled_json

QUIZ_PASS_THRESHOLD = 75.0
MAX_TIER = 3


@dataclass(frozen=True)
class Tool:
    name: str
    tagline: str = ""
    permissions: str = "user"


@dataclass(frozen=True)
class CommandFamily:
    """Group of related tools learned together."""

    id: str
    name: str
    description: str
    tools: tuple[Tool, ...]

    @property
    def tool_names(self) -> frozenset[str]:
        return frozenset(tool.name for tool in self.tools)


@dataclass(frozen=True)
class QuizResult:
    passed: bool
    score: float
    attempts: int


@dataclass(frozen=True)
class GateResult:
    """Recorded explanation-gate outcome for one family tier."""

    passed: bool
    scenario_id: str
    family_id: str
    tier: int


@dataclass(frozen=True)
class TierProgressState:
    """Snapshot of one learner's progress used to evaluate tier unlocks."""

    tools_used: Mapping[str, frozenset[str]] = field(default_factory=dict)
    quiz_scores: Mapping[str, QuizResult] = field(default_factory=dict)
    unlocked_tiers: Mapping[str, int] = field(default_factory=dict)
    explanation_gates: Mapping[str, GateResult] = field(default_factory=dict)


def families_from_raw(raw: Any) -> dict[str, CommandFamily]:
    """Build families from the `families.json` payload."""
    families: dict[str, CommandFamily] = {}
    for item in raw.get("families", []):
        family = CommandFamily(
            id=str(item["id"]),
            name=str(item["name"]),
            description=str(item.get("description", "")),
            tools=tuple(
                Tool(
                    name=str(tool["name"]),
                    tagline=str(tool.get("tagline", "")),
                    permissions=str(tool.get("permissions", "user")),
                )
                for tool in item.get("tools", [])
            ),
        )
        if family.id in families:
            raise ValueError(f"Duplicate family id: {family.id}")
        families[family.id] = family
    return families


def load_families() -> dict[str, CommandFamily]:
    """Load bundled command families."""
    return families_from_raw(load_bundled_json("families.json"))


def families_for_tool(families: Mapping[str, CommandFamily], tool: str) -> list[str]:
    """Return ids of families that include `tool`."""
    return sorted(family.id for family in families.values() if tool in family.tool_names)


def quiz_passed(family_id: str, state: TierProgressState) -> bool:
    result = state.quiz_scores.get(family_id)
    return result is not None and result.score >= QUIZ_PASS_THRESHOLD


def missing_tools(family: CommandFamily, state: TierProgressState) -> list[str]:
    """Return family tools not yet exercised, in family order."""
    used = state.tools_used.get(family.id, frozenset())
    return [tool.name for tool in family.tools if tool.name not in used]


def gate_passed(family_id: str, tier: int, state: TierProgressState) -> bool:
    return any(
        result.passed and result.family_id == family_id and result.tier == tier
        for result in state.explanation_gates.values()
    )


def is_tier_unlocked(
    family_id: str,
    tier: int,
    state: TierProgressState,
    families: Mapping[str, CommandFamily],
) -> bool:
    """Return whether `tier` is unlocked for a family.

    Tier 1 is always open. Tier 2 needs a passing quiz score and every family
    tool used once. Tier 3 also needs a passed tier 2 explanation gate. A tier
    recorded as unlocked stays unlocked.
    """
    if tier <= 1:
        return True
    if tier > MAX_TIER:
        return False
    if state.unlocked_tiers.get(family_id, 1) >= tier:
        return True

    family = families.get(family_id)
    if family is None:
        return False
    if not quiz_passed(family_id, state) or missing_tools(family, state):
        return False
    if tier == 2:
        return True
    return gate_passed(family_id, 2, state)


def highest_unlocked_tier(family_id: str, state: TierProgressState, families: Mapping[str, CommandFamily]) -> int:
    """Return the highest tier currently unlocked for a family."""
    highest = 1
    for tier in range(2, MAX_TIER + 1):
        if not is_tier_unlocked(family_id, tier, state, families):
            break
        highest = tier
    return highest


def unlock_requirement_message(
    family_id: str,
    tier: int,
    state: TierProgressState,
    families: Mapping[str, CommandFamily],
) -> str:
    """Explain what remains before `tier` unlocks for a family."""
    if is_tier_unlocked(family_id, tier, state, families):
        return f"Tier {tier} is unlocked."
    family = families.get(family_id)
    if family is None:
        return f"Unknown command family: {family_id}"

    missing: list[str] = []
    if not quiz_passed(family_id, state):
        result = state.quiz_scores.get(family_id)
        best = f" (best {result.score:.0f}%)" if result is not None else ""
        missing.append(f"score at least {QUIZ_PASS_THRESHOLD:.0f}% on the {family.name} quiz{best}")
    unused = missing_tools(family, state)
    if unused:
        missing.append(f"use {', '.join(unused)}")
    if tier >= 3 and not gate_passed(family_id, 2, state):
        missing.append("pass the tier 2 explanation gate")
    return f"To unlock tier {tier} of {family.name}: " + "; ".join(missing) + "."
