"""Application service for profiles, lab sessions and tier progress."""

from __future__ import annotations

import logging
import re
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Literal

from .config import Settings
from .grammar import GrammarValidator, fuzzy_match
from .help_text import format_command_help, format_flag_help, format_validation_error
from .hints import StepProgress, evaluate_hints, format_hint, hint_status, reveal_next
from .labs import Lab, LabStep, load_labs
from .models import CommandDefinition
from .parser import ParsedCommand, parse_command_line
from .permissions import effect_applies
from .progress import Profile, ProgressStore, ReviewSchedule
from .registry import DefinitionStore, bundled_sources, directory_sources
from .state import ExecutionContext, Invocation, StateEngine, StateSnapshot, field_key, freeze_state
from .tiers import (
    MAX_TIER,
    QUIZ_PASS_THRESHOLD,
    CommandFamily,
    QuizResult,
    families_for_tool,
    highest_unlocked_tier,
    is_tier_unlocked,
    load_families,
    unlock_requirement_message,
)
from .tracker import CommandTracker, StepCompletion, step_completion

logger = logging.getLogger(__name__)

OutcomeStatus = Literal["ok", "invalid", "denied", "unknown_command", "empty"]

# Baseline simulated system for the free terminal; labs may seed more.
DEFAULT_STATE: dict[str, dict[str, Any]] = {
    "gpu_state": {
        "gpu_count": 8,
        "temperature": 45,
        "power_limit": 400,
        "persistence_mode": "Disabled",
        "ecc_mode": "Enabled",
        "mig_mode": "Disabled",
    },
    "cluster_state": {
        "partition": "gpu",
        "nodes_idle": 4,
        "nodes_allocated": 0,
    },
    "fabric_state": {
        "port_state": "Active",
        "rate": "400 Gb/sec (4X NDR)",
        "symbol_errors": 0,
        "link_downed": 0,
    },
    "bmc_state": {
        "power_state": "on",
        "sel_entries": 3,
        "inlet_temperature": 24,
    },
}

HISTORY_LIMIT = 100

_INTEGER = re.compile(r"^-?\d+$")


@dataclass(frozen=True)
class CommandOutcome:
    """Result of running one typed line in a session."""

    status: OutcomeStatus
    message: str = ""
    suggestions: tuple[str, ...] = ()
    delta: StateSnapshot = field(default_factory=freeze_state)

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass(frozen=True)
class TierStatus:
    """Tier summary for one family."""

    family: CommandFamily
    highest_tier: int
    next_requirement: str | None


@dataclass(frozen=True)
class LabState:
    lab: Lab
    unlocked: bool
    completed_steps: int


def resolve_invocation(definition: CommandDefinition, parsed: ParsedCommand) -> Invocation:
    """Resolve a parsed line into flags, subcommands and the values its writes carry.

    A write triggered by a value-taking flag writes that flag's value; other
    writes take the first positional argument, or ``True`` when there is none.
    Values are keyed per domain and field, and a later write to the same field
    replaces an earlier one.
    """
    if definition.subcommands:
        subcommands = parsed.subcommands[:1]
        positionals = parsed.subcommands[1:] + parsed.positionals
    else:
        subcommands = ()
        positionals = parsed.subcommands + parsed.positionals

    values: dict[str, Any] = {}
    interactions = definition.state_interactions
    if interactions is not None:
        for effect in interactions.writes_to:
            if not effect_applies(effect, parsed.flags):
                continue
            value = _effect_value(effect.requires_flags, parsed.flags, positionals)
            for name in effect.fields:
                values[field_key(effect.state_domain, name)] = value
    return Invocation(flags=parsed.flags, subcommands=subcommands, values=values)


def _effect_value(
    requires_flags: tuple[str, ...] | None, flags: Mapping[str, str | bool], positionals: tuple[str, ...]
) -> Any:
    for flag in requires_flags or ():
        value = flags.get(flag)
        if isinstance(value, str):
            return _coerce(value)
        if value is True:
            return True
    if positionals:
        return _coerce(positionals[0])
    return True


def _coerce(value: str) -> Any:
    return int(value) if _INTEGER.match(value) else value


class LabSession:
    """One learner session: simulated state, execution context and step tracking."""

    def __init__(
        self,
        service: LabService,
        profile_id: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.service = service
        self.profile_id = profile_id
        self._clock = clock
        self.context = ExecutionContext()
        self.engine = StateEngine(service.store, DEFAULT_STATE, history_limit=HISTORY_LIMIT)
        self.tracker = CommandTracker()
        self.lab: Lab | None = None
        self.step_index = 0
        self._step_started_at = clock()
        self._failed_attempts = 0
        self._revealed: frozenset[str] = frozenset()
        self._typed: list[str] = []
        # Session contexts before each successful command, paired with engine history.
        self._contexts: deque[ExecutionContext] = deque(maxlen=HISTORY_LIMIT)

    @property
    def state(self) -> StateSnapshot:
        return self.engine.state

    def start_lab(self, lab: Lab) -> None:
        """Reset simulated state and tracking for a lab."""
        initial = {name: dict(fields) for name, fields in DEFAULT_STATE.items()}
        for name, fields in lab.initial_state.items():
            initial.setdefault(name, {}).update(fields)
        self.engine = StateEngine(self.service.store, initial, history_limit=HISTORY_LIMIT)
        self.context = ExecutionContext()
        self._contexts.clear()
        self.lab = lab
        self.step_index = 0
        self._reset_step()
        logger.info("Profile %d started lab %s", self.profile_id, lab.id)

    @property
    def current_step(self) -> LabStep | None:
        if self.lab is None or self.step_index >= len(self.lab.steps):
            return None
        return self.lab.steps[self.step_index]

    @property
    def lab_complete(self) -> bool:
        return self.lab is not None and self.current_step is None

    def run_line(self, line: str) -> CommandOutcome:
        """Run one typed line end-to-end against the simulated system."""
        stripped = line.strip()
        if not stripped:
            return CommandOutcome(status="empty")
        self._typed.append(stripped)
        parsed = parse_command_line(stripped)
        if not parsed.base_command:
            return self._failed(CommandOutcome(status="invalid", message="Could not parse command line."))

        if parsed.base_command == "help":
            return self._help(parsed)
        if parsed.base_command == "whoami":
            return CommandOutcome(status="ok", message=self.context.privilege)
        if parsed.base_command == "sudo":
            inner = stripped[len("sudo") :].strip()
            if not inner:
                return self._failed(CommandOutcome(status="invalid", message="usage: sudo <command>"))
            if parse_command_line(inner).base_command == "whoami":
                return CommandOutcome(status="ok", message=self.context.elevated().privilege)
            return self._run(inner, self.context.elevated(), record_as=stripped)
        return self._run(stripped, self.context, record_as=stripped)

    def _run(self, line: str, context: ExecutionContext, record_as: str) -> CommandOutcome:
        command = parse_command_line(line).base_command
        definition = self.service.store.get(command)
        if definition is None:
            suggestions = tuple(fuzzy_match(command, self.service.store.names()))
            message = f"{command}: command not found"
            if suggestions:
                message += f"\nDid you mean '{suggestions[0]}'?"
            return self._failed(CommandOutcome(status="unknown_command", message=message, suggestions=suggestions))

        parsed = parse_command_line(line, self.service.validator.build_flag_schema(command))
        rejected = self._validate(definition, parsed)
        if rejected is not None:
            return self._failed(rejected)

        invocation = resolve_invocation(definition, parsed)
        check, result = self.engine.attempt(context, command, invocation)
        if result is None:
            return self._failed(CommandOutcome(status="denied", message=check.message or ""))

        self._contexts.append(self.context)
        if result.context.privilege == context.privilege:
            self.context = replace(result.context, privilege=self.context.privilege)
        else:
            self.context = result.context
        self.tracker.record_execution(record_as)
        self.service.mark_tool_used(self.profile_id, command)
        message = _render_result(definition, parsed, self.state, result.delta)
        return CommandOutcome(status="ok", message=message, delta=result.delta)

    def _validate(self, definition: CommandDefinition, parsed: ParsedCommand) -> CommandOutcome | None:
        validator = self.service.validator
        if definition.subcommands and parsed.subcommands:
            token = parsed.subcommands[0]
            result = validator.validate_subcommand(definition.command, token)
            if not result.valid:
                return CommandOutcome(
                    status="invalid",
                    message=format_validation_error(definition.command, token, result, kind="subcommand"),
                    suggestions=result.suggestions,
                )
        for name in parsed.flags:
            result = validator.validate_flag(definition.command, name)
            if not result.valid:
                return CommandOutcome(
                    status="invalid",
                    message=format_validation_error(definition.command, name, result, definition=definition),
                    suggestions=result.suggestions,
                )
        return None

    def _help(self, parsed: ParsedCommand) -> CommandOutcome:
        args = parsed.subcommands + parsed.positionals
        if not args:
            names = ", ".join(self.service.store.names())
            return CommandOutcome(status="ok", message=f"Available commands: {names}")
        definition = self.service.store.get(args[0])
        if definition is None:
            return CommandOutcome(status="unknown_command", message=f"help: no entry for '{args[0]}'")
        flag = next(iter(parsed.flags), None)
        if flag is not None:
            return CommandOutcome(status="ok", message=format_flag_help(definition, flag))
        return CommandOutcome(status="ok", message=format_command_help(definition))

    def _failed(self, outcome: CommandOutcome) -> CommandOutcome:
        self._failed_attempts += 1
        return outcome

    def step_completion(self) -> StepCompletion | None:
        step = self.current_step
        if step is None:
            return None
        return step_completion(step.expected_commands, self.tracker, step.passing_score)

    def advance_if_passed(self) -> StepCompletion | None:
        """Persist and move past the current step when it has passed."""
        step = self.current_step
        completion = self.step_completion()
        if step is None or completion is None or self.lab is None:
            return None
        if not completion.passed:
            return completion
        self.service.progress.record_step_result(
            self.profile_id, self.lab.id, step.id, completion.percentage, completion.passed
        )
        self.step_index += 1
        self._reset_step()
        if self.lab_complete:
            self.service.complete_lab(self.profile_id, self.lab)
        return completion

    def step_progress(self) -> StepProgress:
        return StepProgress(
            elapsed_seconds=self._clock() - self._step_started_at,
            failed_attempts=self._failed_attempts,
            commands_executed=tuple(self._typed),
            revealed_hint_ids=self._revealed,
        )

    def hint_status(self) -> str:
        step = self.current_step
        if step is None:
            return "No active step."
        return hint_status(evaluate_hints(step.hints, self.step_progress()))

    def reveal_hint(self) -> str:
        """Reveal the next eligible hint for the current step."""
        step = self.current_step
        if step is None:
            return "No active step."
        hint, progress = reveal_next(step.hints, self.step_progress())
        if hint is None:
            return hint_status(evaluate_hints(step.hints, self.step_progress()))
        self._revealed = progress.revealed_hint_ids
        return format_hint(hint, len(self._revealed), len(step.hints))

    def undo(self) -> bool:
        """Step back to the previous simulated state."""
        if self.engine.undo() is None:
            return False
        if self._contexts:
            self.context = self._contexts.pop()
        return True

    def _reset_step(self) -> None:
        self.tracker.clear()
        self._step_started_at = self._clock()
        self._failed_attempts = 0
        self._revealed = frozenset()
        self._typed.clear()


def _render_result(
    definition: CommandDefinition, parsed: ParsedCommand, state: StateSnapshot, delta: StateSnapshot
) -> str:
    """Describe what the simulated command did."""
    if delta:
        lines = []
        for domain, fields in delta.items():
            changes = ", ".join(f"{name}={value}" for name, value in fields.items())
            lines.append(f"{domain} updated: {changes}")
        return "\n".join(lines)

    interactions = definition.state_interactions
    if interactions is None:
        return f"{definition.command}: ok"
    lines = []
    for effect in interactions.reads_from:
        if not effect_applies(effect, parsed.flags):
            continue
        domain = state.get(effect.state_domain, MappingProxyType({}))
        names = effect.fields or tuple(domain)
        shown = ", ".join(f"{name}={domain[name]}" for name in names if name in domain)
        lines.append(f"{effect.state_domain}: {shown or '(no data)'}")
    return "\n".join(lines) or f"{definition.command}: ok"


class LabService:
    """Coordinates command definitions, profiles and learning progress."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: DefinitionStore | None = None,
        families: Mapping[str, CommandFamily] | None = None,
        labs: Mapping[str, Lab] | None = None,
    ) -> None:
        """Initialize service and load command definitions."""
        self.settings = settings or Settings()
        if store is None:
            content_dir = self.settings.content_dir
            sources = directory_sources(content_dir) if content_dir is not None else bundled_sources()
            store = DefinitionStore(sources)
        self.store = store
        self.store.load_all_sync()
        self.validator = GrammarValidator(self.store)
        self.families = dict(families) if families is not None else load_families()
        self.labs = dict(labs) if labs is not None else load_labs()
        self.progress = ProgressStore(self.settings.db_path)

    def list_profiles(self) -> list[Profile]:
        """Return all profiles."""
        return self.progress.list_profiles()

    def create_profile(self, name: str) -> Profile:
        """Create profile by name."""
        return self.progress.create_profile(name.strip())

    def delete_profile(self, profile_id: int) -> bool:
        """Delete one profile by id."""
        return self.progress.delete_profile(profile_id)

    def open_session(self, profile_id: int, clock: Callable[[], float] = time.monotonic) -> LabSession:
        """Start a session with a fresh simulated system."""
        if self.progress.get_profile(profile_id) is None:
            raise KeyError(profile_id)
        return LabSession(self, profile_id, clock=clock)

    def mark_tool_used(self, profile_id: int, tool: str) -> None:
        """Record tool usage for every family that includes it."""
        family_ids = families_for_tool(self.families, tool)
        for family_id in family_ids:
            self.progress.mark_tool_used(profile_id, family_id, tool)
        self._refresh_unlocks(profile_id, family_ids)

    def record_quiz(self, profile_id: int, family_id: str, score: float) -> QuizResult:
        """Record a quiz score as a percentage."""
        if family_id not in self.families:
            raise KeyError(family_id)
        if not 0 <= score <= 100:
            raise ValueError("Quiz score must be between 0 and 100.")
        result = self.progress.record_quiz(profile_id, family_id, passed=score >= QUIZ_PASS_THRESHOLD, score=score)
        self._refresh_unlocks(profile_id, [family_id])
        return result

    def record_explanation_gate(
        self, profile_id: int, family_id: str, tier: int, scenario_id: str, passed: bool
    ) -> None:
        gate_id = f"{family_id}:tier{tier}"
        self.progress.record_explanation_gate(profile_id, gate_id, scenario_id, family_id, tier, passed)
        self._refresh_unlocks(profile_id, [family_id])

    def complete_lab(self, profile_id: int, lab: Lab) -> None:
        """Record lab completion: gates its tier and schedules family review."""
        logger.info("Profile %d completed lab %s", profile_id, lab.id)
        self.record_explanation_gate(profile_id, lab.family, lab.tier, lab.id, passed=True)
        if self.progress.get_review_schedule(profile_id, lab.family) is None:
            self.progress.schedule_review(profile_id, lab.family)
        else:
            self.progress.record_review(profile_id, lab.family, success=True)

    def record_review(self, profile_id: int, family_id: str, success: bool) -> ReviewSchedule:
        return self.progress.record_review(profile_id, family_id, success)

    def due_reviews(self, profile_id: int) -> list[CommandFamily]:
        due = self.progress.due_reviews(profile_id)
        return [self.families[family_id] for family_id in due if family_id in self.families]

    def tier_statuses(self, profile_id: int) -> list[TierStatus]:
        """Return tier summary rows for every family ordered by id."""
        state = self.progress.tier_progress_state(profile_id)
        rows: list[TierStatus] = []
        for family_id in sorted(self.families):
            highest = highest_unlocked_tier(family_id, state, self.families)
            requirement = (
                unlock_requirement_message(family_id, highest + 1, state, self.families)
                if highest < MAX_TIER
                else None
            )
            rows.append(TierStatus(family=self.families[family_id], highest_tier=highest, next_requirement=requirement))
        return rows

    def list_lab_states(self, profile_id: int) -> list[LabState]:
        """Return labs ordered by family, tier and id with unlock status."""
        state = self.progress.tier_progress_state(profile_id)
        rows: list[LabState] = []
        for lab in sorted(self.labs.values(), key=lambda item: (item.family, item.tier, item.id)):
            completed = sum(1 for record in self.progress.step_results(profile_id, lab.id) if record.passed)
            rows.append(
                LabState(
                    lab=lab,
                    unlocked=is_tier_unlocked(lab.family, lab.tier, state, self.families),
                    completed_steps=completed,
                )
            )
        return rows

    def lab_requirement(self, profile_id: int, lab: Lab) -> str:
        state = self.progress.tier_progress_state(profile_id)
        return unlock_requirement_message(lab.family, lab.tier, state, self.families)

    def _refresh_unlocks(self, profile_id: int, family_ids: list[str]) -> None:
        """Persist newly reached tiers so they stay unlocked."""
        if not family_ids:
            return
        state = self.progress.tier_progress_state(profile_id)
        for family_id in family_ids:
            highest = highest_unlocked_tier(family_id, state, self.families)
            if highest > state.unlocked_tiers.get(family_id, 1):
                self.progress.record_unlocked_tier(profile_id, family_id, highest)
                logger.info("Profile %d unlocked tier %d of %s", profile_id, highest, family_id)

    def close(self) -> None:
        """Close persistent resources."""
        self.progress.close()
