"""Flag and subcommand validation against declarative command grammars."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from .models import CommandDefinition, CommandOption, ValidationResult

if TYPE_CHECKING:
    from .registry import DefinitionStore

MAX_SUGGESTION_DISTANCE = 2
MAX_SUGGESTIONS = 3

_LEADING_DASHES = re.compile(r"^-+")


def normalize_token(token: str) -> str:
    """Strip leading dashes and one trailing `=` from an option spelling."""
    normalized = _LEADING_DASHES.sub("", token)
    if normalized.endswith("="):
        normalized = normalized[:-1]
    return normalized


def edit_distance(left: str, right: str) -> int:
    """Return the Levenshtein distance between two strings (unit costs)."""
    if left == right:
        return 0
    if len(left) < len(right):
        left, right = right, left
    if not right:
        return len(left)

    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def fuzzy_match(
    token: str,
    candidates: list[str] | tuple[str, ...],
    max_distance: int = MAX_SUGGESTION_DISTANCE,
    limit: int = MAX_SUGGESTIONS,
) -> tuple[str, ...]:
    """Return up to `limit` candidates within `max_distance` edits, closest first.

    Ties keep candidate order. Duplicate candidates are reported once.
    """
    scored: list[tuple[int, str]] = []
    seen: set[str] = set()
    for candidate in candidates:
        if candidate in seen:
            continue
        seen.add(candidate)
        distance = edit_distance(token, candidate)
        if distance <= max_distance:
            scored.append((distance, candidate))
    scored.sort(key=lambda pair: pair[0])
    return tuple(candidate for _, candidate in scored[:limit])


def option_tokens(definition: CommandDefinition) -> list[str]:
    """Return normalized option tokens from global and subcommand option lists."""
    tokens: list[str] = []
    for option in _all_options(definition):
        tokens.extend(normalize_token(token) for token in option.tokens)
    return tokens


def find_option(definition: CommandDefinition, token: str) -> CommandOption | None:
    """Return the declared option matching `token` after normalization."""
    normalized = normalize_token(token)
    for option in _all_options(definition):
        if any(normalize_token(spelling) == normalized for spelling in option.tokens):
            return option
    return None


def _all_options(definition: CommandDefinition) -> list[CommandOption]:
    options = list(definition.global_options)
    for subcommand in definition.subcommands:
        options.extend(subcommand.options)
    return options


class GrammarValidator:
    """Validate typed tokens against definitions held by a store."""

    def __init__(self, store: DefinitionStore) -> None:
        self.store = store

    def validate_flag(self, command: str, token: str) -> ValidationResult:
        """Validate one flag token for a command, suggesting close matches on a miss."""
        if not self.store.is_loaded:
            return ValidationResult(status="not_loaded")
        definition = self.store.get(command)
        if definition is None:
            return ValidationResult(status="invalid")

        valid_tokens = option_tokens(definition)
        normalized = normalize_token(token)
        if normalized in valid_tokens:
            return ValidationResult(status="valid")
        return ValidationResult(status="invalid", suggestions=fuzzy_match(normalized, valid_tokens))

    def validate_subcommand(self, command: str, token: str) -> ValidationResult:
        """Validate one subcommand name for a command."""
        if not self.store.is_loaded:
            return ValidationResult(status="not_loaded")
        definition = self.store.get(command)
        if definition is None or not definition.subcommands:
            return ValidationResult(status="invalid")

        names = [subcommand.name for subcommand in definition.subcommands]
        if token in names:
            return ValidationResult(status="valid")
        return ValidationResult(status="invalid", suggestions=fuzzy_match(token, names))

    def build_flag_schema(self, command: str) -> dict[str, bool] | None:
        """Map each normalized option token to whether it consumes a value.

        Returns ``None`` when the command is unknown or declares no options.
        """
        definition = self.store.get(command)
        if definition is None:
            return None
        return flag_schema(definition)


def flag_schema(definition: CommandDefinition) -> dict[str, bool] | None:
    """Build the token -> takes-value map for one definition."""
    schema: dict[str, bool] = {}
    # Later declarations of the same token overwrite earlier ones.
    for option in _all_options(definition):
        for token in option.tokens:
            schema[normalize_token(token)] = option.takes_value
    return schema or None
