from conftest import gpu_tool_record, sensor_tool_record

from cmdlab.content_loader import definition_from_dict
from cmdlab.permissions import (
    LEGACY_WRITE_FLAGS,
    effect_applies,
    invocation_requires_elevation,
    requires_elevated_privilege,
    touched_domains,
)


def test_declared_privileged_write_requires_elevation() -> None:
    definition = definition_from_dict(gpu_tool_record())
    assert requires_elevated_privilege(definition, "pm") is True
    assert requires_elevated_privilege(definition, "--pm") is True
    assert requires_elevated_privilege(definition, "pl") is True
    assert requires_elevated_privilege(definition, "q") is False
    assert requires_elevated_privilege(definition, "i") is False


def test_unrestricted_privileged_write_applies_to_any_flag() -> None:
    raw = {
        "command": "nvidia-bug-report",
        "category": "diagnostics",
        "state_interactions": {
            "writes_to": [{"state_domain": "diagnostics", "fields": ["bug_report"], "requires_privilege": "root"}]
        },
    }
    definition = definition_from_dict(raw)
    assert requires_elevated_privilege(definition, "safe-mode") is True
    assert invocation_requires_elevation(definition, []) is True


def test_text_hint_fallback_uses_legacy_flag_list() -> None:
    raw = {
        "command": "legacy-tool",
        "category": "gpu_management",
        "permissions": {"write_operations": "Requires ROOT for configuration changes."},
    }
    definition = definition_from_dict(raw)
    assert requires_elevated_privilege(definition, "-e") is True
    assert requires_elevated_privilege(definition, "lgc") is True
    assert requires_elevated_privilege(definition, "q") is False
    assert "q" not in LEGACY_WRITE_FLAGS


def test_text_hint_without_privilege_word_is_ignored() -> None:
    raw = {
        "command": "legacy-tool",
        "category": "gpu_management",
        "permissions": {"write_operations": "Any user may change this."},
    }
    assert requires_elevated_privilege(definition_from_dict(raw), "e") is False


def test_no_privilege_data_means_no_elevation() -> None:
    definition = definition_from_dict({"command": "sinfo", "category": "cluster_management"})
    assert requires_elevated_privilege(definition, "pm") is False
    assert invocation_requires_elevation(definition, ["pm"]) is False


def test_invocation_requires_elevation_checks_each_flag() -> None:
    definition = definition_from_dict(gpu_tool_record())
    assert invocation_requires_elevation(definition, ["q"]) is False
    assert invocation_requires_elevation(definition, ["q", "pl"]) is True


def test_effect_applies() -> None:
    definition = definition_from_dict(sensor_tool_record())
    assert definition.state_interactions is not None
    write = definition.state_interactions.writes_to[0]
    assert effect_applies(write, ["r"]) is True
    assert effect_applies(write, ["--r"]) is True
    assert effect_applies(write, ["l"]) is False


def test_touched_domains() -> None:
    definition = definition_from_dict(gpu_tool_record())
    touch = touched_domains(definition, ["q"])
    assert touch.reads == ("gpu_state",)
    assert touch.writes == ()
    touch = touched_domains(definition, ["pm", "pl"])
    assert touch.writes == ("gpu_state",)
    assert touched_domains(definition_from_dict({"command": "x"}), ["a"]).reads == ()
