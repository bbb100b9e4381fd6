"""Schema-aware parsing of typed command lines."""

from __future__ import annotations

import re
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field

_NUMERIC = re.compile(r"^-?\d+$")


@dataclass(frozen=True)
class ParsedCommand:
    """Typed line split into base command, subcommands, flags and positionals."""

    base_command: str
    subcommands: tuple[str, ...] = ()
    flags: dict[str, str | bool] = field(default_factory=dict)
    positionals: tuple[str, ...] = ()
    raw: str = ""


def parse_command_line(line: str, schema: Mapping[str, bool] | None = None) -> ParsedCommand:
    """Parse one command line.

    `schema` maps normalized flag names to whether they consume a value. Flags
    missing from the schema fall back to a heuristic: long flags and
    single-letter short flags consume a following non-flag token.
    """
    tokens = _tokenize(line)
    if not tokens:
        return ParsedCommand(base_command="", raw=line)

    flags: dict[str, str | bool] = {}
    subcommands: list[str] = []
    positionals: list[str] = []
    stop_flags = False
    parsing_subcommands = True

    index = 1
    while index < len(tokens):
        token = tokens[index]
        next_token = tokens[index + 1] if index + 1 < len(tokens) else None
        index += 1

        if token == "--" and not stop_flags:
            stop_flags = True
            continue

        if stop_flags or not _is_flag(token):
            if parsing_subcommands and "=" not in token and not _NUMERIC.match(token):
                subcommands.append(token)
            else:
                parsing_subcommands = False
                positionals.append(token)
            continue

        if schema is None:
            parsing_subcommands = False

        name, inline_value = _split_flag(token)
        if inline_value is not None:
            flags[name] = inline_value
            continue

        if next_token is not None and _consumes_value(name, token, next_token, schema):
            flags[name] = next_token
            index += 1
        else:
            flags[name] = True

    return ParsedCommand(
        base_command=tokens[0],
        subcommands=tuple(subcommands),
        flags=flags,
        positionals=tuple(positionals),
        raw=line,
    )


def _consumes_value(name: str, token: str, next_token: str, schema: Mapping[str, bool] | None) -> bool:
    if _is_flag(next_token):
        return False
    if schema is not None and name in schema:
        return schema[name]
    if token.startswith("--"):
        return True
    return len(name) == 1


def _split_flag(token: str) -> tuple[str, str | None]:
    """Return (normalized name, inline value) for one flag token."""
    body = token.lstrip("-")
    if token.startswith("--") and "=" in body:
        name, value = body.split("=", 1)
        return (name, value)
    return (body, None)


def _is_flag(token: str) -> bool:
    return token.startswith("-") and len(token) > 1 and not _NUMERIC.match(token)


def _tokenize(line: str) -> tuple[str, ...]:
    """Tokenize shell-like command string."""
    try:
        return tuple(shlex.split(line.strip(), posix=True))
    except ValueError:
        return ()
