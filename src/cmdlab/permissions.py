"""Classify invocations by required privilege and touched state domains."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from .grammar import normalize_token
from .models import ELEVATED_PRIVILEGE, CommandDefinition, StateEffect

# Short tokens that historically modify state on tools whose definitions only
# carry a free-text "requires root" hint. Not exhaustive.
LEGACY_WRITE_FLAGS = frozenset({"pm", "pl", "c", "e", "r", "mig", "lgc", "rgc"})


@dataclass(frozen=True)
class DomainTouch:
    """State domains an invocation would read and write."""

    reads: tuple[str, ...]
    writes: tuple[str, ...]


def requires_elevated_privilege(definition: CommandDefinition, flag: str) -> bool:
    """Return whether invoking `definition` with `flag` needs elevated privilege.

    Declared per-flag write privileges and the coarse ``permissions`` text hint
    are both consulted; either one is sufficient.
    """
    normalized = normalize_token(flag)
    interactions = definition.state_interactions
    if interactions is not None:
        for effect in interactions.writes_to:
            if effect.requires_privilege != ELEVATED_PRIVILEGE:
                continue
            if effect.requires_flags is None or normalized in effect.requires_flags:
                return True

    permissions = definition.permissions
    if permissions is not None and permissions.write_operations:
        if ELEVATED_PRIVILEGE in permissions.write_operations.lower() and normalized in LEGACY_WRITE_FLAGS:
            return True
    return False


def invocation_requires_elevation(definition: CommandDefinition, flags: Iterable[str]) -> bool:
    """Return whether any flag of an invocation, or the bare command, needs elevation."""
    flag_list = [normalize_token(flag) for flag in flags]
    if any(requires_elevated_privilege(definition, flag) for flag in flag_list):
        return True
    interactions = definition.state_interactions
    if interactions is None:
        return False
    # Unconditional privileged writes apply even when no flag is given.
    return any(
        effect.requires_privilege == ELEVATED_PRIVILEGE and effect.requires_flags is None
        for effect in interactions.writes_to
    )


def effect_applies(effect: StateEffect, flags: Iterable[str]) -> bool:
    """Return whether an effect is active for the given invocation flags."""
    if effect.requires_flags is None:
        return True
    present = {normalize_token(flag) for flag in flags}
    return any(flag in present for flag in effect.requires_flags)


def touched_domains(definition: CommandDefinition, flags: Iterable[str]) -> DomainTouch:
    """Return the state domains read and written by an invocation, in declaration order."""
    flag_list = list(flags)
    interactions = definition.state_interactions
    if interactions is None:
        return DomainTouch(reads=(), writes=())
    reads = _unique(effect.state_domain for effect in interactions.reads_from if effect_applies(effect, flag_list))
    writes = _unique(effect.state_domain for effect in interactions.writes_to if effect_applies(effect, flag_list))
    return DomainTouch(reads=reads, writes=writes)


def _unique(values: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for value in values:
        seen.setdefault(value, None)
    return tuple(seen)
