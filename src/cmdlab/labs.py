"""Lab scenarios: ordered steps with expected commands and hints."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

from .hints import Hint, hints_from_raw

LABS_PACKAGE = "cmdlab.content.labs"


@dataclass(frozen=True)
class LabStep:
    id: str
    title: str
    expected_commands: tuple[str, ...]
    passing_score: int = 100
    hints: tuple[Hint, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class Lab:
    """One scenario, optionally seeding simulated state for its session."""

    id: str
    title: str
    family: str
    tier: int
    description: str
    steps: tuple[LabStep, ...]
    initial_state: dict[str, dict[str, Any]] = field(default_factory=dict, hash=False, compare=False)


def _step_from_dict(lab_id: str, raw: dict[str, Any]) -> LabStep:
    """Build a step from raw JSON content."""
    expected = tuple(str(value).strip() for value in raw.get("expected_commands", []) if str(value).strip())
    if not expected:
        raise ValueError(f"Step '{raw.get('id', '<unknown>')}' in lab '{lab_id}' has no expected commands.")
    passing_score = int(raw.get("passing_score", 100))
    if not 0 <= passing_score <= 100:
        raise ValueError(f"Step '{raw.get('id')}' in lab '{lab_id}' has passing_score outside 0-100.")
    return LabStep(
        id=str(raw["id"]),
        title=str(raw["title"]),
        expected_commands=expected,
        passing_score=passing_score,
        hints=tuple(hints_from_raw(raw.get("hints", []))),
        description=str(raw.get("description", "")),
    )


def lab_from_dict(raw: dict[str, Any]) -> Lab:
    """Build a lab from raw JSON content."""
    lab_id = str(raw["id"])
    steps = tuple(_step_from_dict(lab_id, item) for item in raw.get("steps", []))
    step_ids = [step.id for step in steps]
    if len(step_ids) != len(set(step_ids)):
        raise ValueError(f"Lab '{lab_id}' has duplicate step ids.")
    initial_state = raw.get("initial_state", {})
    if not isinstance(initial_state, dict):
        raise TypeError(f"Lab '{lab_id}' initial_state must be an object.")
    return Lab(
        id=lab_id,
        title=str(raw["title"]),
        family=str(raw["family"]),
        tier=int(raw.get("tier", 1)),
        description=str(raw.get("description", "")),
        steps=steps,
        initial_state={str(name): dict(fields) for name, fields in initial_state.items()},
    )


def labs_from_raw(items: list[dict[str, Any]]) -> dict[str, Lab]:
    """Build labs keyed by id; duplicate ids are rejected."""
    labs: dict[str, Lab] = {}
    for item in items:
        lab = lab_from_dict(item)
        if lab.id in labs:
            raise ValueError(f"Duplicate lab id: {lab.id}")
        labs[lab.id] = lab
    return labs


def load_labs() -> dict[str, Lab]:
    """Load all bundled labs."""
    files = sorted(
        (entry for entry in resources.files(LABS_PACKAGE).iterdir() if entry.name.endswith(".json")),
        key=lambda entry: entry.name,
    )
    return labs_from_raw([json.loads(entry.read_text(encoding="utf-8-sig")) for entry in files])


def load_labs_from_dir(path: Path) -> dict[str, Lab]:
    """Load labs from a directory for tests/tools."""
    return labs_from_raw(
        [json.loads(file_path.read_text(encoding="utf-8-sig")) for file_path in sorted(path.glob("*.json"))]
    )
