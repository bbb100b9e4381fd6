"""Plain-text help rendering derived from command definitions."""

from __future__ import annotations

from .grammar import find_option, normalize_token
from .models import CommandDefinition, CommandOption, ValidationResult

MAX_OPTIONS = 10
MAX_SUBCOMMANDS = 8
MAX_EXAMPLES = 5
MAX_EXIT_CODES = 6
MAX_ERRORS = 3


def format_command_help(definition: CommandDefinition) -> str:
    """Render command help; long option and subcommand lists end with a "+N more" line."""
    lines = [f"{definition.command} - {definition.description}", "", "Usage:", f"  {definition.synopsis}"]

    if definition.global_options:
        lines += ["", "Options:"]
        for option in definition.global_options[:MAX_OPTIONS]:
            lines.append(f"  {_option_label(option):<25} {_truncate(option.description, 60)}")
        hidden = len(definition.global_options) - MAX_OPTIONS
        if hidden > 0:
            lines.append(f"  +{hidden} more options")

    if definition.subcommands:
        lines += ["", "Subcommands:"]
        for subcommand in definition.subcommands[:MAX_SUBCOMMANDS]:
            lines.append(f"  {subcommand.name:<15} {_truncate(subcommand.description, 50)}")
        hidden = len(definition.subcommands) - MAX_SUBCOMMANDS
        if hidden > 0:
            lines.append(f"  +{hidden} more subcommands")

    if definition.common_usage_patterns:
        lines += ["", "Examples:"]
        for pattern in definition.common_usage_patterns[:MAX_EXAMPLES]:
            lines.append(f"  {pattern.command}")
            lines.append(f"    {pattern.description}")
            if pattern.requires_root:
                lines.append("    (requires root)")

    if definition.exit_codes:
        lines += ["", "Exit codes:"]
        for exit_code in definition.exit_codes[:MAX_EXIT_CODES]:
            lines.append(f"  {exit_code.code:<5} {exit_code.meaning}")

    if definition.error_messages:
        lines += ["", "Common errors:"]
        for error in definition.error_messages[:MAX_ERRORS]:
            lines.append(f"  {_truncate(error.message, 50)}")
            lines.append(f"    Meaning: {error.meaning}")
            if error.resolution:
                lines.append(f"    Fix: {_truncate(error.resolution, 70)}")

    return "\n".join(lines) + "\n"


def format_flag_help(definition: CommandDefinition, flag: str) -> str:
    option = find_option(definition, flag)
    if option is None:
        return f"Unknown flag: {flag}"
    lines = [_option_label(option), f"  {option.description}"]
    if option.example:
        lines.append(f"  Example: {option.example}")
    return "\n".join(lines)


def format_validation_error(
    command: str,
    token: str,
    result: ValidationResult,
    kind: str = "option",
    definition: CommandDefinition | None = None,
) -> str:
    """Render the learner-facing message for a rejected flag or subcommand.

    With `definition`, a suggested option is shown as it is declared there.
    """
    shown = token if kind != "option" or token.startswith("-") else f"--{token}"
    message = f"{command}: unrecognized {kind} '{shown}'"
    if result.suggestions:
        message += f"\nDid you mean '{_suggested_spelling(result.suggestions[0], kind, definition)}'?"
        if len(result.suggestions) > 1:
            message += " Other close matches: " + ", ".join(result.suggestions[1:])
    return message


def exit_code_meaning(definition: CommandDefinition, code: int) -> str:
    for exit_code in definition.exit_codes:
        if exit_code.code == code:
            return exit_code.meaning
    return f"Unknown exit code: {code}"


def error_resolution(definition: CommandDefinition, error_text: str) -> str | None:
    """Return the documented fix for an error whose message prefix appears in `error_text`."""
    lowered = error_text.lower()
    for error in definition.error_messages:
        if error.message.lower()[:30] in lowered:
            return error.resolution
    return None


def _suggested_spelling(name: str, kind: str, definition: CommandDefinition | None) -> str:
    if kind != "option":
        return name
    option = find_option(definition, name) if definition is not None else None
    if option is not None:
        if option.short and normalize_token(option.short) == name:
            return f"-{name}"
        if option.long and normalize_token(option.long) == name:
            return f"--{name}"
        if option.flag:
            return option.flag.rstrip("=")
    return f"-{name}" if len(name) == 1 else f"--{name}"


def _option_label(option: CommandOption) -> str:
    parts = []
    if option.short:
        parts.append(f"-{normalize_token(option.short)}")
    if option.long:
        parts.append(f"--{normalize_token(option.long)}")
    if not parts and option.flag:
        parts.append(option.flag.rstrip("="))
    label = ", ".join(parts)
    if option.arguments:
        label += f" {option.arguments}"
    return label


def _truncate(text: str, width: int) -> str:
    if len(text) <= width:
        return text
    return text[: width - 3] + "..."
