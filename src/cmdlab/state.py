"""Simulated system state and the declarative command transition engine."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any

from .grammar import normalize_token
from .models import ELEVATED_PRIVILEGE, NORMAL_PRIVILEGE, CommandDefinition
from .permissions import effect_applies, invocation_requires_elevation
from .registry import DefinitionStore

logger = logging.getLogger(__name__)

# Writes to this domain update the execution context instead of simulated state.
CONTEXT_DOMAIN = "execution_context"

StateSnapshot = Mapping[str, Mapping[str, Any]]


def field_key(domain: str, name: str) -> str:
    """Key an invocation value to one field of one state domain."""
    return f"{domain}.{name}"


class UnknownCommandError(LookupError):
    """Raised when executing a command that is not in the definition store."""


class ExecutionNotApprovedError(RuntimeError):
    """Raised when ``execute`` is called without a matching approved ``can_execute``."""


@dataclass(frozen=True)
class ExecutionContext:
    """Acting privilege and ambient resource allocations for one session."""

    privilege: str = NORMAL_PRIVILEGE
    allocations: frozenset[str] = frozenset()

    @property
    def is_elevated(self) -> bool:
        return self.privilege == ELEVATED_PRIVILEGE

    def elevated(self) -> ExecutionContext:
        """Return a copy acting with elevated privilege."""
        return replace(self, privilege=ELEVATED_PRIVILEGE)


@dataclass(frozen=True)
class Invocation:
    """A validated command invocation resolved to flags, subcommands and written values.

    ``values`` may be keyed by ``field_key(domain, name)`` or by the bare field
    name; the qualified key wins.
    """

    flags: Mapping[str, str | bool] = field(default_factory=dict)
    subcommands: tuple[str, ...] = ()
    values: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        flags = {normalize_token(key): value for key, value in self.flags.items()}
        object.__setattr__(self, "flags", MappingProxyType(flags))
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))
        object.__setattr__(self, "subcommands", tuple(self.subcommands))


@dataclass(frozen=True)
class CanExecuteResult:
    allowed: bool
    reason_code: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class ExecutionResult:
    """New context and state after one execution, plus the fields it wrote."""

    context: ExecutionContext
    state: StateSnapshot
    delta: StateSnapshot


ALLOWED = CanExecuteResult(allowed=True)


def freeze_state(domains: Mapping[str, Mapping[str, Any]] | None = None) -> StateSnapshot:
    """Return an immutable snapshot of domain name -> field map."""
    if not domains:
        return MappingProxyType({})
    return MappingProxyType({name: MappingProxyType(dict(fields)) for name, fields in domains.items()})


def thaw_state(state: StateSnapshot) -> dict[str, dict[str, Any]]:
    """Return a plain, mutable copy of a snapshot for display or serialization."""
    return {name: dict(fields) for name, fields in state.items()}


class StateEngine:
    """Checks preconditions and applies declared write effects for one session.

    Snapshots are never mutated; each execution replaces the current snapshot
    and keeps the previous one in history.
    """

    def __init__(
        self,
        store: DefinitionStore,
        initial_state: Mapping[str, Mapping[str, Any]] | None = None,
        history_limit: int = 100,
    ) -> None:
        self.store = store
        self._state = freeze_state(initial_state)
        self._history: list[tuple[StateSnapshot, ExecutionContext]] = []
        self._history_limit = history_limit
        self._approval: tuple[StateSnapshot, ExecutionContext, str, Invocation] | None = None
        self._lock = threading.RLock()

    @property
    def state(self) -> StateSnapshot:
        return self._state

    @property
    def history(self) -> tuple[StateSnapshot, ...]:
        """Prior snapshots, oldest first."""
        return tuple(snapshot for snapshot, _ in self._history)

    def can_execute(self, context: ExecutionContext, command: str, invocation: Invocation) -> CanExecuteResult:
        """Check privilege and state preconditions without changing state."""
        with self._lock:
            definition = self.store.get(command)
            if definition is None:
                return CanExecuteResult(
                    allowed=False,
                    reason_code="unknown_command",
                    message=f"{command}: command not found",
                )

            result = self._check(definition, context, invocation)
            if result.allowed:
                self._approval = (self._state, context, command, invocation)
            else:
                logger.debug("Denied %s (%s): %s", command, result.reason_code, result.message)
            return result

    def _check(
        self, definition: CommandDefinition, context: ExecutionContext, invocation: Invocation
    ) -> CanExecuteResult:
        if invocation_requires_elevation(definition, invocation.flags) and not context.is_elevated:
            return CanExecuteResult(
                allowed=False,
                reason_code="privilege_required",
                message=f"{definition.command}: this operation requires root privileges",
            )
        interactions = definition.state_interactions
        if interactions is not None:
            for effect in interactions.reads_from:
                if effect.state_domain == CONTEXT_DOMAIN or not effect_applies(effect, invocation.flags):
                    continue
                if effect.state_domain not in self._state:
                    return CanExecuteResult(
                        allowed=False,
                        reason_code="missing_state_domain",
                        message=f"{definition.command}: no {effect.state_domain} available yet",
                    )
        return ALLOWED

    def execute(self, context: ExecutionContext, command: str, invocation: Invocation) -> ExecutionResult:
        """Apply the command's declared writes after an approved ``can_execute``."""
        with self._lock:
            definition = self.store.get(command)
            if definition is None:
                raise UnknownCommandError(command)
            if not self._approved(context, command, invocation):
                raise ExecutionNotApprovedError(f"execute({command!r}) called without an approved can_execute")
            self._approval = None

            delta: dict[str, dict[str, Any]] = {}
            interactions = definition.state_interactions
            if interactions is not None:
                for effect in interactions.writes_to:
                    if not effect_applies(effect, invocation.flags):
                        continue
                    written = _written_values(effect.state_domain, effect.fields, invocation.values)
                    if written:
                        delta.setdefault(effect.state_domain, {}).update(written)

            new_context = _apply_context_writes(context, delta.pop(CONTEXT_DOMAIN, {}))
            new_state = self._merged(delta)
            self._history.append((self._state, context))
            if len(self._history) > self._history_limit:
                del self._history[0]
            self._state = new_state
            logger.debug("Executed %s; wrote %s", command, sorted(delta))
            return ExecutionResult(context=new_context, state=new_state, delta=freeze_state(delta))

    def attempt(
        self, context: ExecutionContext, command: str, invocation: Invocation
    ) -> tuple[CanExecuteResult, ExecutionResult | None]:
        """Run ``can_execute`` and, when allowed, ``execute`` under one lock."""
        with self._lock:
            check = self.can_execute(context, command, invocation)
            if not check.allowed:
                return check, None
            return check, self.execute(context, command, invocation)

    def undo(self) -> ExecutionContext | None:
        """Restore the previous snapshot; return the context that preceded it."""
        with self._lock:
            if not self._history:
                return None
            self._state, context = self._history.pop()
            self._approval = None
            return context

    def _approved(self, context: ExecutionContext, command: str, invocation: Invocation) -> bool:
        if self._approval is None:
            return False
        state, approved_context, approved_command, approved_invocation = self._approval
        return (
            state is self._state
            and approved_context == context
            and approved_command == command
            and approved_invocation == invocation
        )

    def _merged(self, delta: Mapping[str, Mapping[str, Any]]) -> StateSnapshot:
        if not delta:
            return self._state
        domains: dict[str, Mapping[str, Any]] = dict(self._state)
        for name, fields in delta.items():
            merged = dict(domains.get(name, {}))
            merged.update(fields)
            domains[name] = MappingProxyType(merged)
        return MappingProxyType(domains)


def _written_values(domain: str, fields: tuple[str, ...], values: Mapping[str, Any]) -> dict[str, Any]:
    written: dict[str, Any] = {}
    for name in fields:
        key = field_key(domain, name)
        if key in values:
            written[name] = values[key]
        elif name in values:
            written[name] = values[name]
    return written


def _apply_context_writes(context: ExecutionContext, fields: Mapping[str, Any]) -> ExecutionContext:
    """Translate writes to the context domain into a new execution context."""
    if not fields:
        return context
    updated = context
    if "privilege" in fields:
        updated = replace(updated, privilege=str(fields["privilege"]))
    if "allocations" in fields:
        raw = fields["allocations"]
        if isinstance(raw, (list, tuple, set, frozenset)):
            allocations = frozenset(str(item) for item in raw)
        else:
            allocations = frozenset([str(raw)])
        updated = replace(updated, allocations=allocations)
    return updated
