"""Definition store: loads and indexes command definitions once per process."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

from .content_loader import bundled_command_files, definition_from_dict, read_records
from .models import CommandDefinition

logger = logging.getLogger(__name__)

DefinitionSource = Callable[[], Awaitable[Any]]


class DefinitionStore:
    """Read-only index of command definitions keyed by command name.

    Loading is asynchronous and shared: concurrent ``load_all`` calls await one
    in-flight load. Lookups are synchronous and only see a completed load.
    """

    def __init__(self, sources: Iterable[DefinitionSource]) -> None:
        """Initialize store with the sources to load from."""
        self._sources = tuple(sources)
        self._definitions: dict[str, CommandDefinition] = {}
        self._loaded = False
        self._pending: asyncio.Future[Mapping[str, CommandDefinition]] | None = None

    @property
    def is_loaded(self) -> bool:
        """Whether ``load_all`` has completed."""
        return self._loaded

    @property
    def definitions(self) -> Mapping[str, CommandDefinition]:
        """Read-only view of loaded definitions."""
        return MappingProxyType(self._definitions)

    async def load_all(self) -> Mapping[str, CommandDefinition]:
        """Load every source once; later and concurrent calls share the result."""
        if self._loaded:
            return self.definitions
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._load())
        return await asyncio.shield(self._pending)

    def load_all_sync(self) -> Mapping[str, CommandDefinition]:
        """Run ``load_all`` to completion from synchronous code."""
        if self._loaded:
            return self.definitions
        return asyncio.run(self.load_all())

    async def _load(self) -> Mapping[str, CommandDefinition]:
        results = await asyncio.gather(*(source() for source in self._sources), return_exceptions=True)
        loaded: dict[str, CommandDefinition] = {}
        skipped = 0
        for index, result in enumerate(results):
            if isinstance(result, BaseException):
                logger.warning("Skipping definition source %d: %s", index, result)
                skipped += 1
                continue
            records = result if isinstance(result, list) else [result]
            for raw in records:
                try:
                    definition = definition_from_dict(raw)
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping malformed definition record: %s", exc)
                    skipped += 1
                    continue
                if definition.command in loaded:
                    logger.warning("Duplicate definition for '%s'; keeping the first.", definition.command)
                    skipped += 1
                    continue
                loaded[definition.command] = definition

        self._definitions = loaded
        self._loaded = True
        logger.info("Loaded %d command definitions (%d skipped).", len(loaded), skipped)
        return self.definitions

    def get(self, command: str) -> CommandDefinition | None:
        """Return one definition by command name."""
        return self._definitions.get(command)

    def has(self, command: str) -> bool:
        return command in self._definitions

    def names(self) -> list[str]:
        """Return loaded command names sorted alphabetically."""
        return sorted(self._definitions)

    def by_category(self, category: str) -> list[CommandDefinition]:
        """Return definitions in one category sorted by command name."""
        return [
            definition
            for name, definition in sorted(self._definitions.items())
            if definition.category == category
        ]

    def __len__(self) -> int:
        return len(self._definitions)


def static_source(records: Any) -> DefinitionSource:
    """Wrap in-memory records (one or a list) as a definition source."""

    async def source() -> Any:
        return records

    return source


def file_source(path: Path) -> DefinitionSource:
    """Read one JSON file off the event loop."""

    async def source() -> Any:
        text = await asyncio.to_thread(path.read_text, encoding="utf-8-sig")
        return read_records(text)

    return source


def directory_sources(path: Path) -> list[DefinitionSource]:
    """Return one source per JSON file in a directory."""
    return [file_source(file_path) for file_path in sorted(path.glob("*.json"))]


def bundled_sources() -> list[DefinitionSource]:
    """Return one source per bundled command definition file."""
    sources: list[DefinitionSource] = []
    for entry in bundled_command_files():

        async def source(entry: Any = entry) -> Any:
            text = await asyncio.to_thread(entry.read_text, encoding="utf-8-sig")
            return read_records(text)

        sources.append(source)
    return sources
