from cmdlab.tracker import CommandTracker, normalize_whitespace, step_completion


def test_partial_completion_is_not_passed() -> None:
    tracker = CommandTracker()
    expected = ["nvidia-smi", "nvidia-smi -q", "nvidia-smi -L"]
    tracker.record_execution("nvidia-smi")
    tracker.record_execution("nvidia-smi -L")

    assert tracker.get_executed_commands(expected) == ["nvidia-smi", "nvidia-smi -L"]
    completion = step_completion(expected, tracker)
    assert completion.percentage == 66
    assert completion.total == 3
    assert completion.passed is False


def test_full_completion_passes() -> None:
    tracker = CommandTracker()
    for command in ["sinfo", "squeue"]:
        tracker.record_execution(command)
    completion = step_completion(["sinfo", "squeue"], tracker)
    assert completion.percentage == 100
    assert completion.passed is True


def test_passing_score_threshold() -> None:
    tracker = CommandTracker()
    tracker.record_execution("nvidia-smi -q -d POWER")
    completion = step_completion(["nvidia-smi -q -d TEMPERATURE", "nvidia-smi -q -d POWER"], tracker, 50)
    assert completion.percentage == 50
    assert completion.passed is True


def test_whitespace_is_normalized() -> None:
    tracker = CommandTracker()
    tracker.record_execution("  nvidia-smi    -q\t-d POWER ")
    assert tracker.get_executed_commands(["nvidia-smi -q -d  POWER"]) == ["nvidia-smi -q -d  POWER"]
    assert tracker.executed_history() == ["nvidia-smi -q -d POWER"]
    assert normalize_whitespace("\ta  b\n") == "a b"


def test_empty_expected_is_never_passed() -> None:
    tracker = CommandTracker()
    tracker.record_execution("sinfo")
    completion = step_completion([], tracker)
    assert completion.percentage == 0
    assert completion.passed is False


def test_blank_commands_are_ignored_and_clear_resets() -> None:
    tracker = CommandTracker()
    tracker.record_execution("   ")
    assert tracker.executed_history() == []
    tracker.record_execution("sinfo")
    tracker.record_execution("sinfo")
    assert tracker.executed_history() == ["sinfo", "sinfo"]
    tracker.clear()
    assert tracker.get_executed_commands(["sinfo"]) == []
