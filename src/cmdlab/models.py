"""Core domain models for declarative command definitions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

ELEVATED_PRIVILEGE = "root"
NORMAL_PRIVILEGE = "user"

CATEGORIES = frozenset(
    {
        "gpu_management",
        "diagnostics",
        "networking",
        "cluster_management",
        "monitoring",
        "system_info",
        "containers",
        "firmware",
        "storage",
        "gpu_fabric",
        "cuda_tools",
        "nccl_tests",
        "mpi",
        "rdma_perf",
        "parallel_shell",
        "modules",
        "general",
    }
)

ValidationStatus = Literal["not_loaded", "valid", "invalid"]


@dataclass(frozen=True)
class CommandOption:
    """One option accepted by a command or subcommand."""

    description: str
    short: str | None = None
    long: str | None = None
    flag: str | None = None
    arguments: str | None = None
    argument_type: str | None = None
    default: str | None = None
    example: str | None = None

    @property
    def takes_value(self) -> bool:
        """Return whether the option consumes a following value."""
        return bool(self.arguments)

    @property
    def tokens(self) -> tuple[str, ...]:
        """Declared spellings in declaration order, as written in the data."""
        return tuple(token for token in (self.short, self.long, self.flag) if token)


@dataclass(frozen=True)
class Subcommand:
    """Named subcommand with its own options."""

    name: str
    description: str
    options: tuple[CommandOption, ...] = ()


@dataclass(frozen=True)
class ExitCode:
    code: int
    meaning: str


@dataclass(frozen=True)
class UsagePattern:
    command: str
    description: str
    requires_root: bool = False


@dataclass(frozen=True)
class ErrorMessage:
    message: str
    meaning: str
    resolution: str | None = None


@dataclass(frozen=True)
class StateEffect:
    """One declared read or write against a named state domain."""

    state_domain: str
    fields: tuple[str, ...]
    requires_privilege: str | None = None
    requires_flags: tuple[str, ...] | None = None


@dataclass(frozen=True)
class StateInteraction:
    reads_from: tuple[StateEffect, ...] = ()
    writes_to: tuple[StateEffect, ...] = ()


@dataclass(frozen=True)
class Permissions:
    """Free-text privilege hints carried by legacy definitions."""

    read_operations: str | None = None
    write_operations: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class CommandDefinition:
    """Declarative grammar, help text and simulated effects for one tool."""

    command: str
    category: str
    description: str
    synopsis: str
    global_options: tuple[CommandOption, ...] = ()
    subcommands: tuple[Subcommand, ...] = ()
    exit_codes: tuple[ExitCode, ...] = ()
    common_usage_patterns: tuple[UsagePattern, ...] = ()
    error_messages: tuple[ErrorMessage, ...] = ()
    state_interactions: StateInteraction | None = None
    permissions: Permissions | None = None

    def get_subcommand(self, name: str) -> Subcommand | None:
        """Return the subcommand declared under `name`, if any."""
        for subcommand in self.subcommands:
            if subcommand.name == name:
                return subcommand
        return None


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one flag or subcommand token."""

    status: ValidationStatus
    suggestions: tuple[str, ...] = ()

    @property
    def valid(self) -> bool:
        # Not-yet-loaded registries never reject input.
        return self.status != "invalid"
