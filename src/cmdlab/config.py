"""Runtime settings resolved from the environment."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DATA_DIR = Path(".cmdlab")
DEFAULT_LOG_LEVEL = "WARNING"

HOME_ENV = "CMDLAB_HOME"
LOG_LEVEL_ENV = "CMDLAB_LOG_LEVEL"
CONTENT_DIR_ENV = "CMDLAB_CONTENT_DIR"


@dataclass(frozen=True)
class Settings:
    """Application settings."""

    data_dir: Path = DEFAULT_DATA_DIR
    log_level: str = DEFAULT_LOG_LEVEL
    content_dir: Path | None = None

    @property
    def db_path(self) -> Path:
        return self.data_dir / "progress.db"


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build settings from environment variables, falling back to defaults."""
    env = os.environ if environ is None else environ

    home = env.get(HOME_ENV, "").strip()
    level = env.get(LOG_LEVEL_ENV, "").strip().upper() or DEFAULT_LOG_LEVEL
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"Invalid log level in {LOG_LEVEL_ENV}: {level!r}")
    content = env.get(CONTENT_DIR_ENV, "").strip()

    return Settings(
        data_dir=Path(home) if home else DEFAULT_DATA_DIR,
        log_level=level,
        content_dir=Path(content) if content else None,
    )
