"""cmdlab: a simulated terminal for practising GPU cluster tooling.

Learners type commands into a sandboxed shell. Each line is checked against
declarative command definitions, applied to simulated node state, and scored
against guided lab steps.
"""

from __future__ import annotations

import tomllib
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

__all__ = ["__version__"]

DIST_NAME = "cmdlab"


def _version_from_pyproject() -> str | None:
    """Read [project].version from a source checkout's pyproject.toml, if this is one."""
    for base in Path(__file__).resolve().parents:
        pyproject = base / "pyproject.toml"
        if not pyproject.is_file():
            continue
        with pyproject.open("rb") as handle:
            project = tomllib.load(handle).get("project", {})
        if project.get("name") == DIST_NAME and isinstance(project.get("version"), str):
            return project["version"]
    return None


__version__ = _version_from_pyproject()
if __version__ is None:
    try:
        __version__ = version(DIST_NAME)
    except PackageNotFoundError:
        __version__ = "0+unknown"
