"""SQLite persistence for profiles, tier progress and review scheduling."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .tiers import GateResult, QuizResult, TierProgressState

SCHEMA_VERSION = 1

INITIAL_REVIEW_INTERVAL_DAYS = 1
MAX_REVIEW_INTERVAL_DAYS = 30
REVIEW_INTERVAL_MULTIPLIER = 2


@dataclass(frozen=True)
class Profile:
    """User profile record."""

    id: int
    name: str


@dataclass(frozen=True)
class ReviewSchedule:
    """Spaced review snapshot for one command family."""

    family_id: str
    next_review_at: str
    interval_days: int
    consecutive_successes: int


@dataclass(frozen=True)
class StepRecord:
    lab_id: str
    step_id: str
    percentage: int
    passed: bool


class ProgressStore:
    """Database access layer for learner progress."""

    def __init__(self, db_path: Path | str) -> None:
        """Initialize database and schema."""
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_path)
        else:
            target = db_path
        self._conn = sqlite3.connect(target)
        self._conn.row_factory = sqlite3.Row
        self._apply_migrations()

    def _apply_migrations(self) -> None:
        """Apply forward-only schema migrations to latest version."""
        current = int(self._conn.execute("PRAGMA user_version").fetchone()[0])
        if current > SCHEMA_VERSION:
            raise RuntimeError(f"Database schema version {current} is newer than supported {SCHEMA_VERSION}.")

        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """)

        for version in range(current + 1, SCHEMA_VERSION + 1):
            if version == 1:
                self._migrate_to_v1()
            with self._conn:
                self._conn.execute(f"PRAGMA user_version = {version}")
                self._conn.execute(
                    "INSERT OR REPLACE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                    (version, datetime.now(UTC).isoformat()),
                )

    def _migrate_to_v1(self) -> None:
        """Create core tables."""
        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS profiles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS tool_usage (
                    profile_id INTEGER NOT NULL,
                    family_id TEXT NOT NULL,
                    tool TEXT NOT NULL,
                    first_used_at TEXT NOT NULL,
                    PRIMARY KEY (profile_id, family_id, tool)
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS quiz_results (
                    profile_id INTEGER NOT NULL,
                    family_id TEXT NOT NULL,
                    passed INTEGER NOT NULL,
                    score REAL NOT NULL,
                    attempts INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (profile_id, family_id)
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS unlocked_tiers (
                    profile_id INTEGER NOT NULL,
                    family_id TEXT NOT NULL,
                    tier INTEGER NOT NULL,
                    unlocked_at TEXT NOT NULL,
                    PRIMARY KEY (profile_id, family_id)
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS explanation_gates (
                    profile_id INTEGER NOT NULL,
                    gate_id TEXT NOT NULL,
                    scenario_id TEXT NOT NULL,
                    family_id TEXT NOT NULL,
                    tier INTEGER NOT NULL,
                    passed INTEGER NOT NULL,
                    recorded_at TEXT NOT NULL,
                    PRIMARY KEY (profile_id, gate_id)
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS review_schedule (
                    profile_id INTEGER NOT NULL,
                    family_id TEXT NOT NULL,
                    next_review_at TEXT NOT NULL,
                    interval_days INTEGER NOT NULL,
                    consecutive_successes INTEGER NOT NULL,
                    PRIMARY KEY (profile_id, family_id)
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS step_results (
                    profile_id INTEGER NOT NULL,
                    lab_id TEXT NOT NULL,
                    step_id TEXT NOT NULL,
                    percentage INTEGER NOT NULL,
                    passed INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (profile_id, lab_id, step_id)
                )
                """)

    def list_profiles(self) -> list[Profile]:
        """Return profiles ordered by name."""
        rows = self._conn.execute("SELECT id, name FROM profiles ORDER BY name").fetchall()
        return [Profile(id=int(row["id"]), name=str(row["name"])) for row in rows]

    def create_profile(self, name: str) -> Profile:
        """Create a new profile."""
        now = datetime.now(UTC).isoformat()
        with self._conn:
            cursor = self._conn.execute(
                "INSERT INTO profiles (name, created_at) VALUES (?, ?)",
                (name, now),
            )
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Could not create profile.")
        return Profile(id=int(row_id), name=name)

    def get_profile(self, profile_id: int) -> Profile | None:
        """Get one profile by id."""
        row = self._conn.execute("SELECT id, name FROM profiles WHERE id = ?", (profile_id,)).fetchone()
        if row is None:
            return None
        return Profile(id=int(row["id"]), name=str(row["name"]))

    def delete_profile(self, profile_id: int) -> bool:
        """Delete profile and all associated progress data."""
        with self._conn:
            for table in (
                "tool_usage",
                "quiz_results",
                "unlocked_tiers",
                "explanation_gates",
                "review_schedule",
                "step_results",
            ):
                self._conn.execute(f"DELETE FROM {table} WHERE profile_id = ?", (profile_id,))
            cursor = self._conn.execute("DELETE FROM profiles WHERE id = ?", (profile_id,))
        return cursor.rowcount > 0

    def mark_tool_used(self, profile_id: int, family_id: str, tool: str) -> None:
        """Record first use of a tool within a family; repeats are ignored."""
        with self._conn:
            self._conn.execute(
                """
                INSERT OR IGNORE INTO tool_usage (profile_id, family_id, tool, first_used_at)
                VALUES (?, ?, ?, ?)
                """,
                (profile_id, family_id, tool, datetime.now(UTC).isoformat()),
            )

    def tools_used(self, profile_id: int) -> dict[str, frozenset[str]]:
        rows = self._conn.execute(
            "SELECT family_id, tool FROM tool_usage WHERE profile_id = ?",
            (profile_id,),
        ).fetchall()
        used: dict[str, set[str]] = {}
        for row in rows:
            used.setdefault(str(row["family_id"]), set()).add(str(row["tool"]))
        return {family_id: frozenset(tools) for family_id, tools in used.items()}

    def record_quiz(self, profile_id: int, family_id: str, passed: bool, score: float) -> QuizResult:
        """Record a quiz attempt; keeps the best score and a pass once earned."""
        previous = self.quiz_results(profile_id).get(family_id)
        result = QuizResult(
            passed=passed or (previous.passed if previous else False),
            score=max(score, previous.score if previous else 0.0),
            attempts=(previous.attempts if previous else 0) + 1,
        )
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO quiz_results (profile_id, family_id, passed, score, attempts, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(profile_id, family_id) DO UPDATE SET
                    passed = excluded.passed,
                    score = excluded.score,
                    attempts = excluded.attempts,
                    updated_at = excluded.updated_at
                """,
                (
                    profile_id,
                    family_id,
                    int(result.passed),
                    result.score,
                    result.attempts,
                    datetime.now(UTC).isoformat(),
                ),
            )
        return result

    def quiz_results(self, profile_id: int) -> dict[str, QuizResult]:
        rows = self._conn.execute(
            "SELECT family_id, passed, score, attempts FROM quiz_results WHERE profile_id = ?",
            (profile_id,),
        ).fetchall()
        return {
            str(row["family_id"]): QuizResult(
                passed=bool(row["passed"]),
                score=float(row["score"]),
                attempts=int(row["attempts"]),
            )
            for row in rows
        }

    def record_unlocked_tier(self, profile_id: int, family_id: str, tier: int) -> int:
        """Persist a tier unlock; never lowers an already recorded tier."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO unlocked_tiers (profile_id, family_id, tier, unlocked_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(profile_id, family_id) DO UPDATE SET
                    tier = MAX(unlocked_tiers.tier, excluded.tier),
                    unlocked_at = CASE
                        WHEN excluded.tier > unlocked_tiers.tier THEN excluded.unlocked_at
                        ELSE unlocked_tiers.unlocked_at
                    END
                """,
                (profile_id, family_id, tier, datetime.now(UTC).isoformat()),
            )
        return self.unlocked_tiers(profile_id).get(family_id, 1)

    def unlocked_tiers(self, profile_id: int) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT family_id, tier FROM unlocked_tiers WHERE profile_id = ?",
            (profile_id,),
        ).fetchall()
        return {str(row["family_id"]): int(row["tier"]) for row in rows}

    def record_explanation_gate(
        self,
        profile_id: int,
        gate_id: str,
        scenario_id: str,
        family_id: str,
        tier: int,
        passed: bool,
    ) -> None:
        """Record the latest outcome of one explanation gate."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO explanation_gates (
                    profile_id, gate_id, scenario_id, family_id, tier, passed, recorded_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(profile_id, gate_id) DO UPDATE SET
                    scenario_id = excluded.scenario_id,
                    family_id = excluded.family_id,
                    tier = excluded.tier,
                    passed = excluded.passed,
                    recorded_at = excluded.recorded_at
                """,
                (profile_id, gate_id, scenario_id, family_id, tier, int(passed), datetime.now(UTC).isoformat()),
            )

    def explanation_gates(self, profile_id: int) -> dict[str, GateResult]:
        rows = self._conn.execute(
            """
            SELECT gate_id, scenario_id, family_id, tier, passed
            FROM explanation_gates
            WHERE profile_id = ?
            """,
            (profile_id,),
        ).fetchall()
        return {
            str(row["gate_id"]): GateResult(
                passed=bool(row["passed"]),
                scenario_id=str(row["scenario_id"]),
                family_id=str(row["family_id"]),
                tier=int(row["tier"]),
            )
            for row in rows
        }

    def tier_progress_state(self, profile_id: int) -> TierProgressState:
        """Build the tier evaluation snapshot for a profile."""
        return TierProgressState(
            tools_used=self.tools_used(profile_id),
            quiz_scores=self.quiz_results(profile_id),
            unlocked_tiers=self.unlocked_tiers(profile_id),
            explanation_gates=self.explanation_gates(profile_id),
        )

    def record_step_result(self, profile_id: int, lab_id: str, step_id: str, percentage: int, passed: bool) -> None:
        """Store the best completion seen for a lab step."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO step_results (profile_id, lab_id, step_id, percentage, passed, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(profile_id, lab_id, step_id) DO UPDATE SET
                    percentage = MAX(step_results.percentage, excluded.percentage),
                    passed = MAX(step_results.passed, excluded.passed),
                    updated_at = excluded.updated_at
                """,
                (profile_id, lab_id, step_id, percentage, int(passed), datetime.now(UTC).isoformat()),
            )

    def step_results(self, profile_id: int, lab_id: str) -> list[StepRecord]:
        rows = self._conn.execute(
            """
            SELECT lab_id, step_id, percentage, passed
            FROM step_results
            WHERE profile_id = ? AND lab_id = ?
            ORDER BY step_id
            """,
            (profile_id, lab_id),
        ).fetchall()
        return [
            StepRecord(
                lab_id=str(row["lab_id"]),
                step_id=str(row["step_id"]),
                percentage=int(row["percentage"]),
                passed=bool(row["passed"]),
            )
            for row in rows
        ]

    def get_review_schedule(self, profile_id: int, family_id: str) -> ReviewSchedule | None:
        """Return current review schedule for a family if present."""
        row = self._conn.execute(
            """
            SELECT family_id, next_review_at, interval_days, consecutive_successes
            FROM review_schedule
            WHERE profile_id = ? AND family_id = ?
            """,
            (profile_id, family_id),
        ).fetchone()
        if row is None:
            return None
        return _schedule_from_row(row)

    def schedule_review(self, profile_id: int, family_id: str) -> ReviewSchedule:
        """Start (or restart) review scheduling for a family at the initial interval."""
        return self._write_schedule(profile_id, family_id, INITIAL_REVIEW_INTERVAL_DAYS, 0)

    def record_review(self, profile_id: int, family_id: str, success: bool) -> ReviewSchedule:
        """Record a review outcome.

        Model:
        - success doubles the interval, capped at `MAX_REVIEW_INTERVAL_DAYS`.
        - failure resets to the initial interval and clears the success streak.
        """
        previous = self.get_review_schedule(profile_id, family_id)
        if previous is None:
            return self._write_schedule(profile_id, family_id, INITIAL_REVIEW_INTERVAL_DAYS, 1 if success else 0)
        if success:
            interval = min(previous.interval_days * REVIEW_INTERVAL_MULTIPLIER, MAX_REVIEW_INTERVAL_DAYS)
            return self._write_schedule(profile_id, family_id, interval, previous.consecutive_successes + 1)
        return self._write_schedule(profile_id, family_id, INITIAL_REVIEW_INTERVAL_DAYS, 0)

    def due_reviews(self, profile_id: int, now: datetime | None = None) -> list[str]:
        """Return family ids whose next review time has passed."""
        moment = now or datetime.now(UTC)
        rows = self._conn.execute(
            "SELECT family_id, next_review_at FROM review_schedule WHERE profile_id = ? ORDER BY next_review_at",
            (profile_id,),
        ).fetchall()
        return [
            str(row["family_id"]) for row in rows if datetime.fromisoformat(str(row["next_review_at"])) <= moment
        ]

    def _write_schedule(self, profile_id: int, family_id: str, interval_days: int, successes: int) -> ReviewSchedule:
        due = datetime.now(UTC) + timedelta(days=interval_days)
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO review_schedule (
                    profile_id, family_id, next_review_at, interval_days, consecutive_successes
                )
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(profile_id, family_id) DO UPDATE SET
                    next_review_at = excluded.next_review_at,
                    interval_days = excluded.interval_days,
                    consecutive_successes = excluded.consecutive_successes
                """,
                (profile_id, family_id, due.isoformat(), interval_days, successes),
            )
        return ReviewSchedule(
            family_id=family_id,
            next_review_at=due.isoformat(),
            interval_days=interval_days,
            consecutive_successes=successes,
        )

    def close(self) -> None:
        """Close db connection."""
        self._conn.close()


def _schedule_from_row(row: sqlite3.Row) -> ReviewSchedule:
    return ReviewSchedule(
        family_id=str(row["family_id"]),
        next_review_at=str(row["next_review_at"]),
        interval_days=int(row["interval_days"]),
        consecutive_successes=int(row["consecutive_successes"]),
    )
