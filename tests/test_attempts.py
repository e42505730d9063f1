"""Tests for rating/attempts module."""

from datetime import timedelta

import pytest

from skill_rater.errors import (
    ConcurrencyError,
    InvalidRequestError,
    NotFoundError,
    StaleWriteError,
)
from skill_rater.models.rating import Exercise, LanguageProfile, SkillRating
from skill_rater.rating.attempts import AttemptProcessor, attempt_fingerprint


@pytest.fixture
def processor(db, clock):
    return AttemptProcessor(db, clock=clock)


class TestFirstAttempt:
    def test_correct_answer(self, processor, db, exercise):
        result = processor.submit("u1", exercise.id, answer_index=2)
        assert result.skill_rating.elo_before == 1000
        assert result.skill_rating.elo_after == 1020
        assert result.skill_rating.rd_after == 340
        assert result.expected_score == pytest.approx(0.5)
        assert result.difficulty_elo_before == 1000
        assert result.difficulty_elo_after == 995
        assert result.overall_elo == 1020
        assert result.overall_cefr == "A2"
        assert result.previous_cefr is None
        assert result.streak_count == 1
        assert result.replayed is False

    def test_wrong_answer(self, processor, db, exercise):
        result = processor.submit("u1", exercise.id, answer_index=0)
        assert result.skill_rating.elo_after == 980
        assert result.difficulty_elo_after == 1005

    def test_persists_everything(self, processor, db, exercise):
        processor.submit("u1", exercise.id, answer_index=2)

        rating = db.get_skill_rating("u1", "es", "reading")
        assert rating.rating == 1020
        assert rating.rd == 340
        assert rating.attempts_count == 1

        assert db.get_exercise(exercise.id).difficulty_rating == 995

        profile = db.get_language_profile("u1", "es")
        assert profile.overall_rating == 1020
        assert profile.overall_rd == 345
        assert profile.total_attempts == 1

        attempts = db.list_attempts("u1")
        assert len(attempts) == 1
        assert attempts[0].passed is True
        assert attempts[0].k_factor_used == 40
        assert attempts[0].result["skill_rating"]["elo_after"] == 1020

    def test_score_raw_is_clamped(self, processor, db):
        db.save_exercise(Exercise(id="es-write-001", skill_id="writing", language_id="es"))
        result = processor.submit("u1", "es-write-001", score_raw=1.7)
        assert result.skill_rating.elo_after == 1020

    def test_time_bonus_applied(self, processor, db):
        db.save_exercise(
            Exercise(
                id="es-write-002",
                skill_id="writing",
                language_id="es",
                time_limit_seconds=60,
            )
        )
        result = processor.submit("u1", "es-write-002", score_raw=0.5, time_spent_seconds=30)
        assert result.skill_rating.elo_after == 1002


class TestCefrChange:
    def test_crossing_band_reports_previous_level(self, processor, db, exercise):
        db.save_skill_rating(
            SkillRating(
                learner_id="u1",
                language_id="es",
                skill_id="reading",
                rating=1195,
                rd=150,
                attempts_count=30,
            )
        )
        db.save_language_profile(
            LanguageProfile(
                learner_id="u1", language_id="es", overall_rating=1195, overall_cefr="A2"
            )
        )
        db.update_exercise_difficulty(exercise.id, 1195, exercise.version)

        result = processor.submit("u1", exercise.id, answer_index=2)
        assert result.skill_rating.elo_after == 1205
        assert result.previous_cefr == "A2"
        assert result.overall_cefr == "B1"
        assert result.cefr_changed is True


class TestValidation:
    def test_unknown_exercise(self, processor):
        with pytest.raises(NotFoundError):
            processor.submit("u1", "missing", answer_index=0)

    def test_inactive_exercise(self, processor, db):
        db.save_exercise(
            Exercise(id="old", skill_id="reading", language_id="es", is_active=False)
        )
        with pytest.raises(NotFoundError):
            processor.submit("u1", "old", answer_index=0)

    def test_neither_answer_nor_score(self, processor, exercise):
        with pytest.raises(InvalidRequestError):
            processor.submit("u1", exercise.id)

    def test_both_answer_and_score(self, processor, exercise):
        with pytest.raises(InvalidRequestError):
            processor.submit("u1", exercise.id, answer_index=1, score_raw=0.5)

    def test_answer_index_without_correct_index(self, processor, db):
        db.save_exercise(Exercise(id="essay", skill_id="writing", language_id="es"))
        with pytest.raises(InvalidRequestError):
            processor.submit("u1", "essay", answer_index=1)

    def test_score_raw_on_discrete_exercise(self, processor, db, exercise):
        with pytest.raises(InvalidRequestError):
            processor.submit("u1", exercise.id, score_raw=1.0)
        assert db.get_skill_rating("u1", "es", "reading") is None

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_score_raw(self, processor, db, value):
        db.save_exercise(Exercise(id="essay", skill_id="writing", language_id="es"))
        with pytest.raises(InvalidRequestError):
            processor.submit("u1", "essay", score_raw=value)
        assert db.get_skill_rating("u1", "es", "writing") is None
        assert db.list_attempts("u1") == []

    @pytest.mark.parametrize("value", [float("nan"), float("inf")])
    def test_non_finite_time_spent(self, processor, db, exercise, value):
        with pytest.raises(InvalidRequestError):
            processor.submit("u1", exercise.id, answer_index=2, time_spent_seconds=value)
        assert db.list_attempts("u1") == []

    def test_nothing_written_on_validation_error(self, processor, db, exercise):
        with pytest.raises(InvalidRequestError):
            processor.submit("u1", exercise.id)
        assert db.get_skill_rating("u1", "es", "reading") is None
        assert db.list_attempts("u1") == []


class TestIdempotency:
    def test_same_key_replays(self, processor, db, exercise):
        first = processor.submit("u1", exercise.id, answer_index=2, idempotency_key="k1")
        second = processor.submit("u1", exercise.id, answer_index=0, idempotency_key="k1")
        assert second.replayed is True
        assert second.skill_rating.elo_after == first.skill_rating.elo_after == 1020
        assert db.get_skill_rating("u1", "es", "reading").attempts_count == 1
        assert len(db.list_attempts("u1")) == 1

    def test_keys_are_per_learner(self, processor, exercise):
        processor.submit("u1", exercise.id, answer_index=2, idempotency_key="k1")
        other = processor.submit("u2", exercise.id, answer_index=2, idempotency_key="k1")
        assert other.replayed is False

    def test_identical_payload_within_window(self, processor, db, exercise, clock):
        processor.submit("u1", exercise.id, answer_index=2)
        clock.now += timedelta(seconds=10)
        second = processor.submit("u1", exercise.id, answer_index=2)
        assert second.replayed is True
        assert len(db.list_attempts("u1")) == 1

    def test_identical_payload_after_window(self, processor, db, exercise, clock):
        processor.submit("u1", exercise.id, answer_index=2)
        clock.now += timedelta(seconds=31)
        second = processor.submit("u1", exercise.id, answer_index=2)
        assert second.replayed is False
        assert len(db.list_attempts("u1")) == 2

    def test_fingerprint_differs_by_payload(self):
        assert attempt_fingerprint("e1", 1, None, 5.0) != attempt_fingerprint("e1", 2, None, 5.0)
        assert attempt_fingerprint("e1", 1, None, 5.0) == attempt_fingerprint("e1", 1, None, 5.0)


class TestConcurrency:
    def test_stale_write_is_retried(self, processor, db, exercise, monkeypatch):
        original = db.update_exercise_difficulty
        calls = []

        def flaky(exercise_id, difficulty, expected_version):
            calls.append(expected_version)
            if len(calls) == 1:
                raise StaleWriteError("exercise changed")
            return original(exercise_id, difficulty, expected_version)

        monkeypatch.setattr(db, "update_exercise_difficulty", flaky)
        result = processor.submit("u1", exercise.id, answer_index=2)

        assert len(calls) == 2
        assert result.skill_rating.elo_after == 1020
        # The first try rolled back completely
        rating = db.get_skill_rating("u1", "es", "reading")
        assert rating.attempts_count == 1
        assert db.get_language_profile("u1", "es").total_attempts == 1
        assert len(db.list_attempts("u1")) == 1

    def test_retries_exhausted(self, processor, db, exercise, monkeypatch):
        def always_stale(*args):
            raise StaleWriteError("exercise changed")

        monkeypatch.setattr(db, "update_exercise_difficulty", always_stale)
        with pytest.raises(ConcurrencyError) as exc_info:
            processor.submit("u1", exercise.id, answer_index=2)

        assert exc_info.value.retryable is True
        assert db.get_skill_rating("u1", "es", "reading") is None
        assert db.get_language_profile("u1", "es") is None
        assert db.list_attempts("u1") == []
