from collections.abc import Iterator
from pathlib import Path

import pytest

from cmdlab.config import Settings
from cmdlab.content_loader import definition_from_dict
from cmdlab.models import CommandDefinition
from cmdlab.parser import parse_command_line
from cmdlab.registry import DefinitionStore, static_source
from cmdlab.service import DEFAULT_STATE, LabService, resolve_invocation
from cmdlab.state import ExecutionContext, StateEngine


@pytest.fixture
def service(tmp_path: Path) -> Iterator[LabService]:
    svc = LabService(Settings(data_dir=tmp_path))
    try:
        yield svc
    finally:
        svc.close()


def _session(service: LabService):
    profile = service.create_profile(" student ")
    return profile, service.open_session(profile.id)


def test_profile_lifecycle(service: LabService) -> None:
    profile = service.create_profile("  alice  ")
    assert profile.name == "alice"
    assert [item.name for item in service.list_profiles()] == ["alice"]
    assert service.delete_profile(profile.id) is True
    with pytest.raises(KeyError):
        service.open_session(profile.id)


def test_read_command_renders_state(service: LabService) -> None:
    _, session = _session(service)
    outcome = session.run_line("nvidia-smi -q")
    assert outcome.ok
    assert "gpu_state: gpu_count=8, temperature=45, power_limit=400" in outcome.message
    assert dict(outcome.delta) == {}


def test_misspelled_flag_is_invalid_with_suggestion(service: LabService) -> None:
    _, session = _session(service)
    outcome = session.run_line("nvidia-smi --qurey")
    assert outcome.status == "invalid"
    assert outcome.suggestions[0] == "query"
    assert "Did you mean '--query'?" in outcome.message


def test_misspelled_subcommand_is_invalid(service: LabService) -> None:
    _, session = _session(service)
    outcome = session.run_line("dcgmi dig -r 1")
    assert outcome.status == "invalid"
    assert outcome.suggestions == ("diag",)
    assert outcome.message.startswith("dcgmi: unrecognized subcommand 'dig'")


def test_unknown_command_suggests_close_name(service: LabService) -> None:
    _, session = _session(service)
    outcome = session.run_line("nvidai-smi -L")
    assert outcome.status == "unknown_command"
    assert outcome.suggestions[0] == "nvidia-smi"
    assert outcome.message.startswith("nvidai-smi: command not found")


def test_privileged_write_needs_sudo(service: LabService) -> None:
    _, session = _session(service)
    denied = session.run_line("nvidia-smi -pm 1")
    assert denied.status == "denied"
    assert denied.message == "nvidia-smi: this operation requires root privileges"
    assert session.state["gpu_state"]["persistence_mode"] == "Disabled"

    allowed = session.run_line("sudo nvidia-smi -pm 1")
    assert allowed.ok
    assert allowed.message == "gpu_state updated: persistence_mode=1"
    assert session.state["gpu_state"]["persistence_mode"] == 1
    assert session.context.privilege == "user"


def test_whoami_and_sudo_whoami(service: LabService) -> None:
    _, session = _session(service)
    assert session.run_line("whoami").message == "user"
    assert session.run_line("sudo whoami").message == "root"
    assert session.run_line("sudo").status == "invalid"


def test_help_builtin(service: LabService) -> None:
    _, session = _session(service)
    listing = session.run_line("help")
    assert listing.ok
    assert "nvidia-smi" in listing.message
    assert session.run_line("help nvidia-smi").message.startswith("nvidia-smi - Query and manage NVIDIA GPU devices.")
    assert session.run_line("help nvidia-smi --pl").message.startswith("-pl, --power-limit WATTS")
    assert session.run_line("help rm").status == "unknown_command"


def test_empty_and_unparseable_lines(service: LabService) -> None:
    _, session = _session(service)
    assert session.run_line("   ").status == "empty"
    assert session.run_line("nvidia-smi 'oops").status == "invalid"


def test_write_creates_domain_and_undo_restores(service: LabService) -> None:
    _, session = _session(service)
    outcome = session.run_line("dcgmi diag -r 1")
    assert outcome.ok
    assert session.state["diagnostics"]["last_run_level"] == 1

    session.run_line("sudo nvidia-smi -pl 300")
    assert session.state["gpu_state"]["power_limit"] == 300
    assert session.undo() is True
    assert session.state["gpu_state"]["power_limit"] == 400
    assert session.context.privilege == "user"
    assert session.undo() is True
    assert "diagnostics" not in session.state
    assert session.undo() is False


def test_resolve_invocation_values(service: LabService) -> None:
    definition = service.store.get("nvidia-smi")
    assert isinstance(definition, CommandDefinition)
    schema = service.validator.build_flag_schema("nvidia-smi")
    invocation = resolve_invocation(definition, parse_command_line("nvidia-smi -pl 250 -mig 1", schema))
    assert dict(invocation.values) == {"gpu_state.power_limit": 250, "gpu_state.mig_mode": 1}
    assert invocation.subcommands == ()

    dcgmi = service.store.get("dcgmi")
    assert dcgmi is not None
    parsed = parse_command_line("dcgmi diag -r 3", service.validator.build_flag_schema("dcgmi"))
    assert resolve_invocation(dcgmi, parsed).subcommands == ("diag",)


def test_tool_use_and_quiz_unlock_tier_two(service: LabService) -> None:
    profile, session = _session(service)
    for line in ["nvidia-smi -L", "nvtop", "dcgmi discovery -l"]:
        assert session.run_line(line).ok, line

    statuses = {row.family.id: row for row in service.tier_statuses(profile.id)}
    assert statuses["gpu-monitoring"].highest_tier == 1
    assert "75%" in (statuses["gpu-monitoring"].next_requirement or "")

    result = service.record_quiz(profile.id, "gpu-monitoring", 80)
    assert result.passed is True
    assert service.progress.unlocked_tiers(profile.id) == {"gpu-monitoring": 2}
    statuses = {row.family.id: row for row in service.tier_statuses(profile.id)}
    assert statuses["gpu-monitoring"].highest_tier == 2
    assert "explanation gate" in (statuses["gpu-monitoring"].next_requirement or "")
    assert service.progress.tools_used(profile.id)["diagnostics"] == frozenset({"dcgmi"})


def test_failed_commands_do_not_count_as_tool_use(service: LabService) -> None:
    profile, session = _session(service)
    session.run_line("nvidia-smi -pm 1")
    session.run_line("nvtop --bogus")
    assert service.progress.tools_used(profile.id) == {}


def test_record_quiz_rejects_bad_input(service: LabService) -> None:
    profile = service.create_profile("quiz")
    with pytest.raises(KeyError):
        service.record_quiz(profile.id, "astrology", 90)
    with pytest.raises(ValueError):
        service.record_quiz(profile.id, "gpu-monitoring", 120)


def test_locked_labs_explain_requirements(service: LabService) -> None:
    profile = service.create_profile("labs")
    states = {row.lab.id: row for row in service.list_lab_states(profile.id)}
    assert states["gpu-health-check"].unlocked is True
    assert states["power-capping"].unlocked is False
    message = service.lab_requirement(profile.id, states["power-capping"].lab)
    assert message.startswith("To unlock tier 2 of GPU Monitoring:")


def test_lab_walkthrough_with_hints(service: LabService) -> None:
    profile, session = _session(service)
    lab = service.labs["gpu-health-check"]
    session.start_lab(lab)

    assert session.run_line("nvidia-smi -L").ok
    first = session.advance_if_passed()
    assert first is not None and first.passed
    assert session.step_index == 1

    session.run_line("nvidia-smi -q -d POWER")
    second = session.advance_if_passed()
    assert second is not None and second.percentage == 50 and second.passed

    assert session.current_step is not None
    assert session.current_step.id == "persistence"
    assert session.run_line("nvidia-smi -pm 1").status == "denied"
    assert session.hint_status() == "Hint available (1/3). Type :hint to see it."
    assert session.reveal_hint().startswith("HINT 1/3 - Gentle Nudge")
    assert session.reveal_hint().startswith("HINT 2/3 - More Specific")
    assert session.hint_status() == "No new hints yet (2/3 revealed). Keep trying."

    not_yet = session.advance_if_passed()
    assert not_yet is not None and not_yet.passed is False
    assert session.run_line("sudo nvidia-smi -pm 1").ok
    assert session.advance_if_passed() is not None
    assert session.lab_complete is True
    assert session.hint_status() == "No active step."

    records = service.progress.step_results(profile.id, "gpu-health-check")
    assert len(records) == 3
    assert all(record.passed for record in records)
    gates = service.progress.explanation_gates(profile.id)
    assert gates["gpu-monitoring:tier1"].scenario_id == "gpu-health-check"
    schedule = service.progress.get_review_schedule(profile.id, "gpu-monitoring")
    assert schedule is not None and schedule.interval_days == 1


def test_repeat_lab_completion_extends_review(service: LabService) -> None:
    profile = service.create_profile("again")
    lab = service.labs["gpu-health-check"]
    service.complete_lab(profile.id, lab)
    service.complete_lab(profile.id, lab)
    schedule = service.progress.get_review_schedule(profile.id, "gpu-monitoring")
    assert schedule is not None
    assert schedule.interval_days == 2
    assert service.due_reviews(profile.id) == []


def test_tier_two_lab_completion_unlocks_tier_three(service: LabService) -> None:
    profile, session = _session(service)
    for line in ["nvidia-smi", "nvtop", "dcgmi discovery -l"]:
        session.run_line(line)
    service.record_quiz(profile.id, "gpu-monitoring", 90)
    service.complete_lab(profile.id, service.labs["power-capping"])
    assert service.progress.unlocked_tiers(profile.id)["gpu-monitoring"] == 3
    statuses = {row.family.id: row for row in service.tier_statuses(profile.id)}
    assert statuses["gpu-monitoring"].next_requirement is None


def test_lab_initial_state_overrides_defaults(service: LabService) -> None:
    _, session = _session(service)
    session.start_lab(service.labs["power-capping"])
    assert session.state["gpu_state"]["temperature"] == 88
    assert session.state["gpu_state"]["power_limit"] == 700
    assert session.state["gpu_state"]["gpu_count"] == 8
    assert DEFAULT_STATE["gpu_state"]["power_limit"] == 400


def test_content_dir_setting_overrides_bundled_commands(tmp_path: Path) -> None:
    content = tmp_path / "commands"
    content.mkdir()
    (content / "sinfo.json").write_text('{"command": "sinfo", "category": "cluster_management"}', encoding="utf-8")
    svc = LabService(Settings(data_dir=tmp_path / "data", content_dir=content))
    try:
        assert svc.store.names() == ["sinfo"]
    finally:
        svc.close()


OVERLAPPING_WRITES = {
    "command": "tool",
    "category": "general",
    "global_options": [{"short": "a", "arguments": True}, {"short": "b", "arguments": True}],
    "state_interactions": {
        "writes_to": [
            {"state_domain": "d", "fields": ["mode"], "requires_flags": ["a"]},
            {"state_domain": "d", "fields": ["mode"], "requires_flags": ["b"]},
            {"state_domain": "other", "fields": ["mode"], "requires_flags": ["a"]},
        ]
    },
}


def test_later_write_to_same_field_wins() -> None:
    definition = definition_from_dict(OVERLAPPING_WRITES)
    schema = {"a": True, "b": True}
    invocation = resolve_invocation(definition, parse_command_line("tool -a 1 -b 2", schema))
    assert invocation.values["d.mode"] == 2
    assert invocation.values["other.mode"] == 1

    store = DefinitionStore([static_source(OVERLAPPING_WRITES)])
    store.load_all_sync()
    _, result = StateEngine(store).attempt(ExecutionContext(), "tool", invocation)
    assert result is not None
    assert dict(result.state["d"]) == {"mode": 2}
    assert dict(result.state["other"]) == {"mode": 1}
