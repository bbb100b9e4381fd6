"""Build typed command definitions from raw JSON records."""

from __future__ import annotations

import json
from importlib import resources
from pathlib import Path
from typing import Any

from .grammar import normalize_token
from .models import (
    CATEGORIES,
    CommandDefinition,
    CommandOption,
    ErrorMessage,
    ExitCode,
    Permissions,
    StateEffect,
    StateInteraction,
    Subcommand,
    UsagePattern,
)

CONTENT_PACKAGE = "cmdlab.content"
COMMANDS_PACKAGE = "cmdlab.content.commands"


def definition_from_dict(raw: object) -> CommandDefinition:
    """Build a command definition from one raw JSON record.

    Raises ``ValueError`` or ``TypeError`` when the record is malformed; the
    registry treats either as a reason to skip the record.
    """
    if not isinstance(raw, dict):
        raise TypeError(f"Definition record must be an object, got {type(raw).__name__}.")
    command = _required_str(raw, "command")
    category = str(raw.get("category", "general"))
    if category not in CATEGORIES:
        raise ValueError(f"Command '{command}' has unknown category '{category}'.")

    global_options = tuple(_option_from_dict(item) for item in _list(raw, "global_options"))
    _ensure_unique_tokens(command, global_options)

    subcommands = tuple(_subcommand_from_dict(item) for item in _list(raw, "subcommands"))
    names = [subcommand.name for subcommand in subcommands]
    if len(names) != len(set(names)):
        raise ValueError(f"Command '{command}' declares duplicate subcommands.")

    return CommandDefinition(
        command=command,
        category=category,
        description=str(raw.get("description", "")),
        synopsis=str(raw.get("synopsis", command)),
        global_options=global_options,
        subcommands=subcommands,
        exit_codes=tuple(
            ExitCode(code=int(item["code"]), meaning=str(item.get("meaning", "")))
            for item in _list(raw, "exit_codes")
        ),
        common_usage_patterns=tuple(
            UsagePattern(
                command=str(item["command"]),
                description=str(item.get("description", "")),
                requires_root=bool(item.get("requires_root", False)),
            )
            for item in _list(raw, "common_usage_patterns")
        ),
        error_messages=tuple(
            ErrorMessage(
                message=str(item["message"]),
                meaning=str(item.get("meaning", "")),
                resolution=_optional_str(item, "resolution"),
            )
            for item in _list(raw, "error_messages")
        ),
        state_interactions=_interactions_from_dict(raw.get("state_interactions")),
        permissions=_permissions_from_dict(raw.get("permissions")),
    )


def read_records(text: str) -> list[Any]:
    """Decode one JSON document holding a record or a list of records."""
    payload = json.loads(text)
    if isinstance(payload, list):
        return payload
    return [payload]


def bundled_command_files() -> list[Any]:
    """Return bundled command definition resources in name order."""
    entries = [entry for entry in resources.files(COMMANDS_PACKAGE).iterdir() if entry.name.endswith(".json")]
    return sorted(entries, key=lambda entry: entry.name)


def load_bundled_json(name: str) -> Any:
    """Load one bundled JSON document from the content package."""
    return json.loads(resources.files(CONTENT_PACKAGE).joinpath(name).read_text(encoding="utf-8-sig"))


def load_json_dir(path: Path) -> list[Any]:
    """Load every JSON document in a directory for tests/tools."""
    return [json.loads(file_path.read_text(encoding="utf-8-sig")) for file_path in sorted(path.glob("*.json"))]


def _option_from_dict(raw: Any) -> CommandOption:
    """Build one option from raw JSON content."""
    if not isinstance(raw, dict):
        raise TypeError("Option entries must be objects.")
    option = CommandOption(
        description=str(raw.get("description", "")),
        short=_optional_str(raw, "short"),
        long=_optional_str(raw, "long"),
        flag=_optional_str(raw, "flag"),
        arguments=_arguments(raw.get("arguments")),
        argument_type=_optional_str(raw, "argument_type"),
        default=_optional_str(raw, "default"),
        example=_optional_str(raw, "example"),
    )
    if not option.tokens:
        raise ValueError("Option declares none of short, long or flag.")
    return option


def _arguments(value: Any) -> str | None:
    """Normalize an option argument declaration; `true` means an unnamed value."""
    if isinstance(value, bool):
        return "VALUE" if value else None
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _subcommand_from_dict(raw: Any) -> Subcommand:
    if not isinstance(raw, dict):
        raise TypeError("Subcommand entries must be objects.")
    return Subcommand(
        name=_required_str(raw, "name"),
        description=str(raw.get("description", "")),
        options=tuple(_option_from_dict(item) for item in _list(raw, "options")),
    )


def _effect_from_dict(raw: Any) -> StateEffect:
    if not isinstance(raw, dict):
        raise TypeError("State interaction entries must be objects.")
    requires_flags = None
    if raw.get("requires_flags") is not None:
        requires_flags = tuple(normalize_token(str(item)) for item in _list(raw, "requires_flags"))
    return StateEffect(
        state_domain=_required_str(raw, "state_domain"),
        fields=tuple(str(item) for item in _list(raw, "fields")),
        requires_privilege=_optional_str(raw, "requires_privilege"),
        requires_flags=requires_flags,
    )


def _interactions_from_dict(raw: Any) -> StateInteraction | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise TypeError("state_interactions must be an object.")
    return StateInteraction(
        reads_from=tuple(_effect_from_dict(item) for item in _list(raw, "reads_from")),
        writes_to=tuple(_effect_from_dict(item) for item in _list(raw, "writes_to")),
    )


def _permissions_from_dict(raw: Any) -> Permissions | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise TypeError("permissions must be an object.")
    return Permissions(
        read_operations=_optional_str(raw, "read_operations"),
        write_operations=_optional_str(raw, "write_operations"),
        notes=_optional_str(raw, "notes"),
    )


def _ensure_unique_tokens(command: str, options: tuple[CommandOption, ...]) -> None:
    """Reject option lists where two options share one normalized spelling."""
    owners: dict[str, int] = {}
    for index, option in enumerate(options):
        for token in {normalize_token(value) for value in option.tokens}:
            previous = owners.get(token)
            if previous is not None and previous != index:
                raise ValueError(f"Command '{command}' declares option '{token}' more than once.")
            owners[token] = index


def _list(raw: dict[str, Any], key: str) -> list[Any]:
    value = raw.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise TypeError(f"Field '{key}' must be a list.")
    return value


def _required_str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Record is missing required field '{key}'.")
    return value.strip()


def _optional_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None
