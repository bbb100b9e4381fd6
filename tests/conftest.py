from __future__ import annotations

import shutil
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from cmdlab.registry import DefinitionStore, static_source  # noqa: E402


def _tmp_path_fixture() -> Iterator[Path]:
    """Provide per-test temporary directory path inside the workspace.

    This intentionally overrides pytest's builtin ``tmp_path`` fixture for this
    repository. In this environment, system temp locations and builtin tmp-path
    setup are not reliable, so tests keep temporary files under the project
    working directory at ``.tmp_pytest/``.
    """
    base = ROOT / ".tmp_pytest"
    base.mkdir(parents=True, exist_ok=True)
    path = base / str(uuid4())
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        try:
            next(base.iterdir())
        except StopIteration:
            base.rmdir()
        except FileNotFoundError:
            pass


tmp_path = pytest.fixture(name="tmp_path")(_tmp_path_fixture)


def gpu_tool_record() -> dict[str, Any]:
    """Small nvidia-smi style definition used across tests."""
    return {
        "command": "nvidia-smi",
        "category": "gpu_management",
        "description": "Query and manage GPUs.",
        "synopsis": "nvidia-smi [OPTIONS]",
        "global_options": [
            {"short": "q", "long": "query", "description": "Query GPU info."},
            {"short": "L", "long": "list-gpus", "description": "List GPUs."},
            {"short": "i", "long": "id", "arguments": "ID", "description": "Target GPU."},
            {"short": "pm", "long": "persistence-mode", "arguments": "0|1", "description": "Persistence mode."},
            {"short": "pl", "long": "power-limit", "arguments": "WATTS", "description": "Power limit."},
            {"flag": "--format=", "arguments": "FORMAT", "description": "Output format."},
        ],
        "subcommands": [
            {
                "name": "topo",
                "description": "Topology.",
                "options": [{"short": "m", "long": "matrix", "description": "Matrix view."}],
            },
            {"name": "nvlink", "description": "NVLink status."},
        ],
        "state_interactions": {
            "reads_from": [{"state_domain": "gpu_state", "fields": ["temperature", "power_limit"]}],
            "writes_to": [
                {
                    "state_domain": "gpu_state",
                    "fields": ["power_limit"],
                    "requires_privilege": "root",
                    "requires_flags": ["pm"],
                },
                {
                    "state_domain": "gpu_state",
                    "fields": ["power_limit"],
                    "requires_privilege": "root",
                    "requires_flags": ["pl"],
                },
                {"state_domain": "gpu_state", "fields": ["temperature"], "requires_flags": ["i"]},
            ],
        },
        "permissions": {"write_operations": "Changing GPU settings requires root."},
    }


def sensor_tool_record() -> dict[str, Any]:
    """Definition that reads a domain absent from a fresh state."""
    return {
        "command": "dcgmi",
        "category": "diagnostics",
        "description": "DCGM CLI.",
        "synopsis": "dcgmi <subcommand>",
        "subcommands": [
            {"name": "diag", "description": "Diagnostics.", "options": [{"short": "r", "arguments": "LEVEL"}]},
            {"name": "discovery", "description": "Discovery.", "options": [{"short": "l", "description": "List."}]},
        ],
        "state_interactions": {
            "reads_from": [{"state_domain": "diagnostics", "fields": ["last_run_level"], "requires_flags": ["l"]}],
            "writes_to": [{"state_domain": "diagnostics", "fields": ["last_run_level"], "requires_flags": ["r"]}],
        },
    }


@pytest.fixture
def loaded_store() -> DefinitionStore:
    store = DefinitionStore([static_source([gpu_tool_record(), sensor_tool_record()])])
    store.load_all_sync()
    return store
