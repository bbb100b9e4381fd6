import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from cmdlab.progress import MAX_REVIEW_INTERVAL_DAYS, ProgressStore


def test_profiles_roundtrip() -> None:
    store = ProgressStore(":memory:")
    bob = store.create_profile("bob")
    store.create_profile("alice")
    assert [profile.name for profile in store.list_profiles()] == ["alice", "bob"]
    assert store.get_profile(bob.id) == bob
    with pytest.raises(sqlite3.IntegrityError):
        store.create_profile("bob")


def test_delete_profile_removes_related_progress() -> None:
    store = ProgressStore(":memory:")
    profile = store.create_profile("remove-me")
    store.mark_tool_used(profile.id, "gpu-monitoring", "nvidia-smi")
    store.record_quiz(profile.id, "gpu-monitoring", True, 90.0)
    store.record_unlocked_tier(profile.id, "gpu-monitoring", 2)
    store.record_explanation_gate(profile.id, "gpu-monitoring:tier2", "power-capping", "gpu-monitoring", 2, True)
    store.schedule_review(profile.id, "gpu-monitoring")
    store.record_step_result(profile.id, "gpu-health-check", "list", 100, True)

    assert store.delete_profile(profile.id) is True
    assert store.get_profile(profile.id) is None
    state = store.tier_progress_state(profile.id)
    assert state.tools_used == {}
    assert state.quiz_scores == {}
    assert state.unlocked_tiers == {}
    assert state.explanation_gates == {}
    assert store.get_review_schedule(profile.id, "gpu-monitoring") is None
    assert store.step_results(profile.id, "gpu-health-check") == []


def test_delete_profile_missing_returns_false() -> None:
    store = ProgressStore(":memory:")
    assert store.delete_profile(9999) is False


def test_migration_sets_user_version_and_schema_history() -> None:
    store = ProgressStore(":memory:")
    version = int(store._conn.execute("PRAGMA user_version").fetchone()[0])  # noqa: SLF001
    assert version == 1
    rows = store._conn.execute("SELECT version FROM schema_migrations ORDER BY version").fetchall()  # noqa: SLF001
    assert [int(row["version"]) for row in rows] == [1]


def test_newer_schema_is_refused(tmp_path: Path) -> None:
    db_path = tmp_path / "future.db"
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA user_version = 7")
        conn.commit()
    finally:
        conn.close()

    with pytest.raises(RuntimeError, match="newer"):
        ProgressStore(db_path)


def test_reopening_keeps_progress(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "progress.db"
    store = ProgressStore(db_path)
    profile = store.create_profile("carol")
    store.mark_tool_used(profile.id, "cluster-tools", "sinfo")
    store.close()

    reopened = ProgressStore(db_path)
    assert db_path.exists()
    assert reopened.tools_used(profile.id) == {"cluster-tools": frozenset({"sinfo"})}
    reopened.close()


def test_tool_usage_is_recorded_once_per_family() -> None:
    store = ProgressStore(":memory:")
    profile = store.create_profile("dana")
    store.mark_tool_used(profile.id, "gpu-monitoring", "dcgmi")
    store.mark_tool_used(profile.id, "gpu-monitoring", "dcgmi")
    store.mark_tool_used(profile.id, "diagnostics", "dcgmi")
    assert store.tools_used(profile.id) == {
        "gpu-monitoring": frozenset({"dcgmi"}),
        "diagnostics": frozenset({"dcgmi"}),
    }


def test_quiz_keeps_best_score_and_sticky_pass() -> None:
    store = ProgressStore(":memory:")
    profile = store.create_profile("erin")
    store.record_quiz(profile.id, "gpu-monitoring", False, 60.0)
    store.record_quiz(profile.id, "gpu-monitoring", True, 85.0)
    result = store.record_quiz(profile.id, "gpu-monitoring", False, 40.0)
    assert result.passed is True
    assert result.score == 85.0
    assert result.attempts == 3
    assert store.quiz_results(profile.id)["gpu-monitoring"] == result


def test_unlocked_tier_never_decreases() -> None:
    store = ProgressStore(":memory:")
    profile = store.create_profile("frank")
    assert store.record_unlocked_tier(profile.id, "gpu-monitoring", 3) == 3
    assert store.record_unlocked_tier(profile.id, "gpu-monitoring", 2) == 3
    assert store.unlocked_tiers(profile.id) == {"gpu-monitoring": 3}


def test_explanation_gate_keeps_latest_outcome() -> None:
    store = ProgressStore(":memory:")
    profile = store.create_profile("gina")
    store.record_explanation_gate(profile.id, "gate", "power-capping", "gpu-monitoring", 2, False)
    store.record_explanation_gate(profile.id, "gate", "power-capping", "gpu-monitoring", 2, True)
    gates = store.explanation_gates(profile.id)
    assert gates["gate"].passed is True
    assert gates["gate"].tier == 2


def test_step_results_keep_best() -> None:
    store = ProgressStore(":memory:")
    profile = store.create_profile("hank")
    store.record_step_result(profile.id, "lab", "b", 100, True)
    store.record_step_result(profile.id, "lab", "a", 66, False)
    store.record_step_result(profile.id, "lab", "b", 50, False)
    records = store.step_results(profile.id, "lab")
    assert [(record.step_id, record.percentage, record.passed) for record in records] == [
        ("a", 66, False),
        ("b", 100, True),
    ]


def test_review_interval_doubles_caps_and_resets() -> None:
    store = ProgressStore(":memory:")
    profile = store.create_profile("ivy")
    schedule = store.schedule_review(profile.id, "cluster-tools")
    assert schedule.interval_days == 1

    intervals = [store.record_review(profile.id, "cluster-tools", True).interval_days for _ in range(6)]
    assert intervals == [2, 4, 8, 16, 30, 30]
    assert MAX_REVIEW_INTERVAL_DAYS == 30

    failed = store.record_review(profile.id, "cluster-tools", False)
    assert failed.interval_days == 1
    assert failed.consecutive_successes == 0
    assert store.get_review_schedule(profile.id, "cluster-tools") == failed


def test_due_reviews() -> None:
    store = ProgressStore(":memory:")
    profile = store.create_profile("jack")
    store.schedule_review(profile.id, "cluster-tools")
    assert store.due_reviews(profile.id) == []
    later = datetime.now(UTC) + timedelta(days=2)
    assert store.due_reviews(profile.id, now=later) == ["cluster-tools"]
