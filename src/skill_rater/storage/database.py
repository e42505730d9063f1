"""SQLite persistence for ratings, exercises, attempts and dialogue sessions.

Writes that follow a read (skill ratings, exercise difficulty, dialogue
sessions) are compare-and-swap on a ``version`` column and raise
``StaleWriteError`` when another writer got there first. Multi-entity
updates run inside ``Database.transaction()`` so they land together or not
at all.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import structlog

from skill_rater.errors import StaleWriteError
from skill_rater.models.dialogue import (
    DialogueEvaluation,
    DialogueMode,
    DialogueNode,
    DialogueSession,
    Message,
    RatingDelta,
    Scenario,
    ScenarioProgress,
    SessionStatus,
)
from skill_rater.models.rating import (
    Attempt,
    CefrBand,
    Exercise,
    LanguageProfile,
    SkillRating,
)

logger = structlog.get_logger()


SCHEMA = """
CREATE TABLE IF NOT EXISTS cefr_bands (
    language_id TEXT NOT NULL,
    level TEXT NOT NULL,
    band_min INTEGER NOT NULL,
    band_max INTEGER NOT NULL,
    PRIMARY KEY (language_id, level)
);

CREATE TABLE IF NOT EXISTS exercises (
    id TEXT PRIMARY KEY,
    skill_id TEXT NOT NULL,
    language_id TEXT NOT NULL,
    difficulty_rating INTEGER NOT NULL DEFAULT 1000,
    time_limit_seconds REAL,
    correct_index INTEGER,
    is_active INTEGER NOT NULL DEFAULT 1,
    version INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS skill_ratings (
    learner_id TEXT NOT NULL,
    language_id TEXT NOT NULL,
    skill_id TEXT NOT NULL,
    rating INTEGER NOT NULL,
    rd INTEGER NOT NULL,
    attempts_count INTEGER NOT NULL DEFAULT 0,
    last_updated_at TIMESTAMP,
    version INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (learner_id, language_id, skill_id)
);

CREATE TABLE IF NOT EXISTS language_profiles (
    learner_id TEXT NOT NULL,
    language_id TEXT NOT NULL,
    overall_rating INTEGER NOT NULL,
    overall_rd INTEGER NOT NULL,
    overall_cefr TEXT,
    total_attempts INTEGER NOT NULL DEFAULT 0,
    streak_count INTEGER NOT NULL DEFAULT 0,
    last_active_at TIMESTAMP,
    PRIMARY KEY (learner_id, language_id)
);

CREATE TABLE IF NOT EXISTS attempts (
    id TEXT PRIMARY KEY,
    exercise_id TEXT NOT NULL REFERENCES exercises(id),
    learner_id TEXT NOT NULL,
    language_id TEXT NOT NULL,
    skill_id TEXT NOT NULL,
    score_raw REAL NOT NULL,
    score_adjusted REAL NOT NULL,
    elo_before INTEGER NOT NULL,
    elo_after INTEGER NOT NULL,
    difficulty_before INTEGER NOT NULL,
    difficulty_after INTEGER NOT NULL,
    k_factor_used INTEGER NOT NULL,
    rd_before INTEGER NOT NULL,
    rd_after INTEGER NOT NULL,
    expected_score REAL NOT NULL,
    time_spent_seconds REAL NOT NULL DEFAULT 0,
    passed INTEGER NOT NULL,
    idempotency_key TEXT,
    fingerprint TEXT,
    result TEXT NOT NULL DEFAULT '{}',
    created_at TIMESTAMP NOT NULL,
    UNIQUE (learner_id, idempotency_key)
);

CREATE INDEX IF NOT EXISTS idx_attempts_learner ON attempts(learner_id, created_at);
CREATE INDEX IF NOT EXISTS idx_attempts_fingerprint ON attempts(learner_id, fingerprint);

CREATE TABLE IF NOT EXISTS scenarios (
    id TEXT PRIMARY KEY,
    language_id TEXT NOT NULL,
    title TEXT NOT NULL,
    topic TEXT NOT NULL,
    cefr_target TEXT NOT NULL,
    cultural_notes TEXT,
    grammar_targets TEXT DEFAULT '[]',
    vocabulary_clusters TEXT DEFAULT '[]',
    dialogue_nodes TEXT DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS dialogue_sessions (
    id TEXT PRIMARY KEY,
    learner_id TEXT NOT NULL,
    scenario_id TEXT NOT NULL REFERENCES scenarios(id),
    language_id TEXT NOT NULL,
    mode TEXT NOT NULL,
    status TEXT NOT NULL,
    messages TEXT NOT NULL DEFAULT '[]',
    last_evaluation TEXT,
    skill_rating_deltas TEXT,
    score REAL NOT NULL DEFAULT 0,
    last_turn_key TEXT,
    last_turn_result TEXT,
    created_at TIMESTAMP NOT NULL,
    completed_at TIMESTAMP,
    version INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_sessions_learner ON dialogue_sessions(learner_id);

CREATE TABLE IF NOT EXISTS scenario_progress (
    learner_id TEXT NOT NULL,
    scenario_id TEXT NOT NULL,
    attempts_count INTEGER NOT NULL DEFAULT 0,
    best_score REAL NOT NULL DEFAULT 0,
    controlled_completed INTEGER NOT NULL DEFAULT 0,
    guided_completed INTEGER NOT NULL DEFAULT 0,
    open_completed INTEGER NOT NULL DEFAULT 0,
    mode_unlocked TEXT NOT NULL DEFAULT 'controlled',
    last_played_at TIMESTAMP,
    PRIMARY KEY (learner_id, scenario_id)
);
"""


def _iso(value: datetime | None) -> str | None:
    # Fixed precision keeps stored timestamps comparable as strings
    return value.isoformat(timespec="microseconds") if value is not None else None


def _load_json(value: str | None, default=None):
    if value is None:
        return default
    return json.loads(value)


class Database:
    """SQLite database wrapper with thread-local connection pooling."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._local = threading.local()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create a thread-local database connection."""
        if getattr(self._local, "conn", None) is None:
            # Autocommit mode: transactions are opened explicitly below
            self._local.conn = sqlite3.connect(self.db_path, isolation_level=None)
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA foreign_keys = ON")
            self._local.depth = 0
        return self._local.conn

    @contextmanager
    def connection(self):
        """Get a database connection (reuses thread-local connection)."""
        yield self._get_connection()

    @contextmanager
    def transaction(self):
        """Run the enclosed writes as one all-or-nothing unit.

        Uses ``BEGIN IMMEDIATE`` so the write lock is taken up front. Nested
        calls join the outer transaction.
        """
        conn = self._get_connection()
        if self._local.depth:
            self._local.depth += 1
            try:
                yield conn
            finally:
                self._local.depth -= 1
            return

        conn.execute("BEGIN IMMEDIATE")
        self._local.depth = 1
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            self._local.depth = 0

    def close(self) -> None:
        """Close the thread-local connection if open."""
        if getattr(self._local, "conn", None) is not None:
            self._local.conn.close()
            self._local.conn = None

    def init_schema(self) -> None:
        """Initialize the database schema."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    # CEFR bands

    def set_cefr_bands(self, language_id: str, bands: list[CefrBand]) -> None:
        """Replace the band configuration of a language."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM cefr_bands WHERE language_id = ?", (language_id,))
            conn.executemany(
                """INSERT INTO cefr_bands (language_id, level, band_min, band_max)
                   VALUES (?, ?, ?, ?)""",
                [(language_id, b.level, b.min, b.max) for b in bands],
            )

    def get_cefr_bands(self, language_id: str) -> list[CefrBand]:
        """Bands ordered by lower bound; empty when none are configured."""
        with self.connection() as conn:
            rows = conn.execute(
                """SELECT level, band_min, band_max FROM cefr_bands
                   WHERE language_id = ? ORDER BY band_min""",
                (language_id,),
            ).fetchall()
        return [CefrBand(level=r["level"], min=r["band_min"], max=r["band_max"]) for r in rows]

    # Exercises

    def save_exercise(self, exercise: Exercise) -> None:
        with self.connection() as conn:
            conn.execute(
                """INSERT INTO exercises
                   (id, skill_id, language_id, difficulty_rating, time_limit_seconds,
                    correct_index, is_active, version)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                    skill_id = excluded.skill_id,
                    language_id = excluded.language_id,
                    difficulty_rating = excluded.difficulty_rating,
                    time_limit_seconds = excluded.time_limit_seconds,
                    correct_index = excluded.correct_index,
                    is_active = excluded.is_active,
                    version = exercises.version + 1""",
                (
                    exercise.id,
                    exercise.skill_id,
                    exercise.language_id,
                    exercise.difficulty_rating,
                    exercise.time_limit_seconds,
                    exercise.correct_index,
                    int(exercise.is_active),
                    exercise.version,
                ),
            )

    def get_exercise(self, exercise_id: str) -> Exercise | None:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM exercises WHERE id = ?", (exercise_id,)).fetchone()
        if row is None:
            return None
        return Exercise(
            id=row["id"],
            skill_id=row["skill_id"],
            language_id=row["language_id"],
            difficulty_rating=row["difficulty_rating"],
            time_limit_seconds=row["time_limit_seconds"],
            correct_index=row["correct_index"],
            is_active=bool(row["is_active"]),
            version=row["version"],
        )

    def update_exercise_difficulty(
        self, exercise_id: str, difficulty: int, expected_version: int
    ) -> int:
        """Compare-and-swap the difficulty rating.

        Returns:
            The new row version.
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """UPDATE exercises SET difficulty_rating = ?, version = version + 1
                   WHERE id = ? AND version = ?""",
                (difficulty, exercise_id, expected_version),
            )
        if cursor.rowcount != 1:
            raise StaleWriteError(f"exercise {exercise_id} changed since version {expected_version}")
        return expected_version + 1

    # Skill ratings

    @staticmethod
    def _row_to_skill_rating(row: sqlite3.Row) -> SkillRating:
        return SkillRating(
            learner_id=row["learner_id"],
            language_id=row["language_id"],
            skill_id=row["skill_id"],
            rating=row["rating"],
            rd=row["rd"],
            attempts_count=row["attempts_count"],
            last_updated_at=row["last_updated_at"],
            version=row["version"],
        )

    def get_skill_rating(
        self, learner_id: str, language_id: str, skill_id: str
    ) -> SkillRating | None:
        with self.connection() as conn:
            row = conn.execute(
                """SELECT * FROM skill_ratings
                   WHERE learner_id = ? AND language_id = ? AND skill_id = ?""",
                (learner_id, language_id, skill_id),
            ).fetchone()
        return self._row_to_skill_rating(row) if row else None

    def list_skill_ratings(self, learner_id: str, language_id: str) -> list[SkillRating]:
        with self.connection() as conn:
            rows = conn.execute(
                """SELECT * FROM skill_ratings
                   WHERE learner_id = ? AND language_id = ? ORDER BY skill_id""",
                (learner_id, language_id),
            ).fetchall()
        return [self._row_to_skill_rating(r) for r in rows]

    def save_skill_rating(self, rating: SkillRating) -> SkillRating:
        """Insert a new rating or compare-and-swap an existing one.

        ``rating.version`` is the version that was read; None means the row
        was absent when read. Returns the rating with its new version.
        """
        with self.connection() as conn:
            if rating.version is None:
                try:
                    conn.execute(
                        """INSERT INTO skill_ratings
                           (learner_id, language_id, skill_id, rating, rd,
                            attempts_count, last_updated_at, version)
                           VALUES (?, ?, ?, ?, ?, ?, ?, 1)""",
                        (
                            rating.learner_id,
                            rating.language_id,
                            rating.skill_id,
                            rating.rating,
                            rating.rd,
                            rating.attempts_count,
                            _iso(rating.last_updated_at),
                        ),
                    )
                except sqlite3.IntegrityError as e:
                    raise StaleWriteError(
                        f"skill rating {rating.skill_id} created concurrently"
                    ) from e
                return rating.model_copy(update={"version": 1})

            cursor = conn.execute(
                """UPDATE skill_ratings
                   SET rating = ?, rd = ?, attempts_count = ?, last_updated_at = ?,
                       version = version + 1
                   WHERE learner_id = ? AND language_id = ? AND skill_id = ? AND version = ?""",
                (
                    rating.rating,
                    rating.rd,
                    rating.attempts_count,
                    _iso(rating.last_updated_at),
                    rating.learner_id,
                    rating.language_id,
                    rating.skill_id,
                    rating.version,
                ),
            )
        if cursor.rowcount != 1:
            raise StaleWriteError(
                f"skill rating {rating.skill_id} changed since version {rating.version}"
            )
        return rating.model_copy(update={"version": rating.version + 1})

    # Language profiles

    def get_language_profile(self, learner_id: str, language_id: str) -> LanguageProfile | None:
        with self.connection() as conn:
            row = conn.execute(
                """SELECT * FROM language_profiles WHERE learner_id = ? AND language_id = ?""",
                (learner_id, language_id),
            ).fetchone()
        if row is None:
            return None
        return LanguageProfile(
            learner_id=row["learner_id"],
            language_id=row["language_id"],
            overall_rating=row["overall_rating"],
            overall_rd=row["overall_rd"],
            overall_cefr=row["overall_cefr"],
            total_attempts=row["total_attempts"],
            streak_count=row["streak_count"],
            last_active_at=row["last_active_at"],
        )

    def save_language_profile(self, profile: LanguageProfile) -> None:
        with self.connection() as conn:
            conn.execute(
                """INSERT INTO language_profiles
                   (learner_id, language_id, overall_rating, overall_rd, overall_cefr,
                    total_attempts, streak_count, last_active_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(learner_id, language_id) DO UPDATE SET
                    overall_rating = excluded.overall_rating,
                    overall_rd = excluded.overall_rd,
                    overall_cefr = excluded.overall_cefr,
                    total_attempts = excluded.total_attempts,
                    streak_count = excluded.streak_count,
                    last_active_at = excluded.last_active_at""",
                (
                    profile.learner_id,
                    profile.language_id,
                    profile.overall_rating,
                    profile.overall_rd,
                    profile.overall_cefr,
                    profile.total_attempts,
                    profile.streak_count,
                    _iso(profile.last_active_at),
                ),
            )

    # Attempts

    @staticmethod
    def _row_to_attempt(row: sqlite3.Row) -> Attempt:
        data = dict(row)
        data["passed"] = bool(data["passed"])
        data["result"] = _load_json(data["result"], {})
        return Attempt(**data)

    def insert_attempt(self, attempt: Attempt) -> None:
        """Append an attempt record; records are never updated."""
        data = attempt.model_dump()
        data["passed"] = int(attempt.passed)
        data["result"] = json.dumps(attempt.result)
        data["created_at"] = _iso(attempt.created_at)
        columns = ", ".join(data)
        placeholders = ", ".join(f":{k}" for k in data)
        with self.connection() as conn:
            try:
                conn.execute(f"INSERT INTO attempts ({columns}) VALUES ({placeholders})", data)
            except sqlite3.IntegrityError as e:
                raise StaleWriteError(
                    f"attempt {attempt.idempotency_key} recorded concurrently"
                ) from e

    def find_attempt_by_key(self, learner_id: str, idempotency_key: str) -> Attempt | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM attempts WHERE learner_id = ? AND idempotency_key = ?",
                (learner_id, idempotency_key),
            ).fetchone()
        return self._row_to_attempt(row) if row else None

    def find_recent_attempt_by_fingerprint(
        self, learner_id: str, fingerprint: str, since: datetime
    ) -> Attempt | None:
        with self.connection() as conn:
            row = conn.execute(
                """SELECT * FROM attempts
                   WHERE learner_id = ? AND fingerprint = ? AND created_at >= ?
                   ORDER BY created_at DESC LIMIT 1""",
                (learner_id, fingerprint, _iso(since)),
            ).fetchone()
        return self._row_to_attempt(row) if row else None

    def list_attempts(self, learner_id: str, limit: int = 50) -> list[Attempt]:
        with self.connection() as conn:
            rows = conn.execute(
                """SELECT * FROM attempts WHERE learner_id = ?
                   ORDER BY created_at DESC LIMIT ?""",
                (learner_id, limit),
            ).fetchall()
        return [self._row_to_attempt(r) for r in rows]

    # Scenarios

    def save_scenario(self, scenario: Scenario) -> None:
        with self.connection() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO scenarios
                   (id, language_id, title, topic, cefr_target, cultural_notes,
                    grammar_targets, vocabulary_clusters, dialogue_nodes)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    scenario.id,
                    scenario.language_id,
                    scenario.title,
                    scenario.topic,
                    scenario.cefr_target,
                    scenario.cultural_notes,
                    json.dumps(scenario.grammar_targets),
                    json.dumps(scenario.vocabulary_clusters),
                    json.dumps([n.model_dump() for n in scenario.dialogue_nodes]),
                ),
            )

    def get_scenario(self, scenario_id: str) -> Scenario | None:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM scenarios WHERE id = ?", (scenario_id,)).fetchone()
        if row is None:
            return None
        return Scenario(
            id=row["id"],
            language_id=row["language_id"],
            title=row["title"],
            topic=row["topic"],
            cefr_target=row["cefr_target"],
            cultural_notes=row["cultural_notes"],
            grammar_targets=_load_json(row["grammar_targets"], []),
            vocabulary_clusters=_load_json(row["vocabulary_clusters"], []),
            dialogue_nodes=[
                DialogueNode(**n) for n in _load_json(row["dialogue_nodes"], [])
            ],
        )

    # Dialogue sessions

    def create_dialogue_session(self, session: DialogueSession) -> None:
        with self.connection() as conn:
            conn.execute(
                """INSERT INTO dialogue_sessions
                   (id, learner_id, scenario_id, language_id, mode, status, messages,
                    score, created_at, version)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    session.id,
                    session.learner_id,
                    session.scenario_id,
                    session.language_id,
                    session.mode.value,
                    session.status.value,
                    json.dumps([m.model_dump() for m in session.messages]),
                    session.score,
                    _iso(session.created_at),
                    session.version,
                ),
            )

    def get_dialogue_session(self, session_id: str) -> DialogueSession | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM dialogue_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        if row is None:
            return None
        evaluation = _load_json(row["last_evaluation"])
        deltas = _load_json(row["skill_rating_deltas"])
        return DialogueSession(
            id=row["id"],
            learner_id=row["learner_id"],
            scenario_id=row["scenario_id"],
            language_id=row["language_id"],
            mode=DialogueMode(row["mode"]),
            status=SessionStatus(row["status"]),
            messages=[Message(**m) for m in _load_json(row["messages"], [])],
            last_evaluation=DialogueEvaluation(**evaluation) if evaluation else None,
            skill_rating_deltas=(
                {k: RatingDelta(**v) for k, v in deltas.items()} if deltas is not None else None
            ),
            score=row["score"],
            last_turn_key=row["last_turn_key"],
            last_turn_result=_load_json(row["last_turn_result"]),
            created_at=row["created_at"],
            completed_at=row["completed_at"],
            version=row["version"],
        )

    def update_dialogue_session(self, session: DialogueSession) -> DialogueSession:
        """Compare-and-swap the mutable session fields.

        ``session.version`` is the version that was read.
        """
        deltas = session.skill_rating_deltas
        with self.connection() as conn:
            cursor = conn.execute(
                """UPDATE dialogue_sessions
                   SET status = ?, messages = ?, last_evaluation = ?,
                       skill_rating_deltas = ?, score = ?, last_turn_key = ?,
                       last_turn_result = ?, completed_at = ?, version = version + 1
                   WHERE id = ? AND version = ?""",
                (
                    session.status.value,
                    json.dumps([m.model_dump() for m in session.messages]),
                    session.last_evaluation.model_dump_json() if session.last_evaluation else None,
                    (
                        json.dumps({k: v.model_dump() for k, v in deltas.items()})
                        if deltas is not None
                        else None
                    ),
                    session.score,
                    session.last_turn_key,
                    (
                        json.dumps(session.last_turn_result)
                        if session.last_turn_result is not None
                        else None
                    ),
                    _iso(session.completed_at),
                    session.id,
                    session.version,
                ),
            )
        if cursor.rowcount != 1:
            raise StaleWriteError(f"dialogue session {session.id} changed since version {session.version}")
        return session.model_copy(update={"version": session.version + 1})

    # Scenario progress

    def get_scenario_progress(self, learner_id: str, scenario_id: str) -> ScenarioProgress | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM scenario_progress WHERE learner_id = ? AND scenario_id = ?",
                (learner_id, scenario_id),
            ).fetchone()
        if row is None:
            return None
        return ScenarioProgress(
            learner_id=row["learner_id"],
            scenario_id=row["scenario_id"],
            attempts_count=row["attempts_count"],
            best_score=row["best_score"],
            controlled_completed=bool(row["controlled_completed"]),
            guided_completed=bool(row["guided_completed"]),
            open_completed=bool(row["open_completed"]),
            mode_unlocked=DialogueMode(row["mode_unlocked"]),
            last_played_at=row["last_played_at"],
        )

    def save_scenario_progress(self, progress: ScenarioProgress) -> None:
        with self.connection() as conn:
            conn.execute(
                """INSERT INTO scenario_progress
                   (learner_id, scenario_id, attempts_count, best_score,
                    controlled_completed, guided_completed, open_completed,
                    mode_unlocked, last_played_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(learner_id, scenario_id) DO UPDATE SET
                    attempts_count = excluded.attempts_count,
                    best_score = excluded.best_score,
                    controlled_completed = excluded.controlled_completed,
                    guided_completed = excluded.guided_completed,
                    open_completed = excluded.open_completed,
                    mode_unlocked = excluded.mode_unlocked,
                    last_played_at = excluded.last_played_at""",
                (
                    progress.learner_id,
                    progress.scenario_id,
                    progress.attempts_count,
                    progress.best_score,
                    int(progress.controlled_completed),
                    int(progress.guided_completed),
                    int(progress.open_completed),
                    progress.mode_unlocked.value,
                    _iso(progress.last_played_at),
                ),
            )
        logger.debug(
            "scenario_progress_saved",
            learner_id=progress.learner_id,
            scenario_id=progress.scenario_id,
            mode_unlocked=progress.mode_unlocked.value,
        )
