"""Tests for storage/database module."""

import pytest

from skill_rater.errors import StaleWriteError
from skill_rater.models.dialogue import (
    DialogueMode,
    DialogueSession,
    ScenarioProgress,
    SessionStatus,
)
from skill_rater.models.rating import CefrBand, SkillRating


def _rating(**overrides) -> SkillRating:
    data = {"learner_id": "u1", "language_id": "es", "skill_id": "reading"}
    data.update(overrides)
    return SkillRating(**data)


class TestSkillRatings:
    def test_insert_then_update(self, db):
        saved = db.save_skill_rating(_rating(rating=1010))
        assert saved.version == 1

        updated = db.save_skill_rating(saved.model_copy(update={"rating": 1030}))
        assert updated.version == 2
        stored = db.get_skill_rating("u1", "es", "reading")
        assert stored.rating == 1030
        assert stored.version == 2

    def test_stale_update_rejected(self, db):
        saved = db.save_skill_rating(_rating())
        db.save_skill_rating(saved.model_copy(update={"rating": 1020}))
        with pytest.raises(StaleWriteError):
            db.save_skill_rating(saved.model_copy(update={"rating": 980}))
        assert db.get_skill_rating("u1", "es", "reading").rating == 1020

    def test_concurrent_create_rejected(self, db):
        db.save_skill_rating(_rating())
        with pytest.raises(StaleWriteError):
            db.save_skill_rating(_rating())

    def test_list_by_language(self, db):
        db.save_skill_rating(_rating(skill_id="writing"))
        db.save_skill_rating(_rating(skill_id="reading"))
        db.save_skill_rating(_rating(language_id="fr"))
        assert [r.skill_id for r in db.list_skill_ratings("u1", "es")] == ["reading", "writing"]


class TestTransactions:
    def test_rollback_on_error(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction():
                db.save_skill_rating(_rating())
                raise RuntimeError("boom")
        assert db.get_skill_rating("u1", "es", "reading") is None

    def test_nested_joins_outer(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction():
                with db.transaction():
                    db.save_skill_rating(_rating())
                raise RuntimeError("boom")
        assert db.get_skill_rating("u1", "es", "reading") is None

    def test_commit(self, db):
        with db.transaction():
            db.save_skill_rating(_rating())
        assert db.get_skill_rating("u1", "es", "reading") is not None


class TestExercises:
    def test_difficulty_compare_and_swap(self, db, exercise):
        assert db.update_exercise_difficulty(exercise.id, 990, exercise.version) == 2
        with pytest.raises(StaleWriteError):
            db.update_exercise_difficulty(exercise.id, 980, exercise.version)
        assert db.get_exercise(exercise.id).difficulty_rating == 990


class TestCefrBands:
    def test_default_empty(self, db):
        assert db.get_cefr_bands("es") == []

    def test_ordered_by_lower_bound(self, db):
        db.set_cefr_bands(
            "es",
            [CefrBand(level="B1", min=1200, max=1399), CefrBand(level="A2", min=1000, max=1199)],
        )
        assert [b.level for b in db.get_cefr_bands("es")] == ["A2", "B1"]

    def test_replaced(self, db):
        db.set_cefr_bands("es", [CefrBand(level="A1", min=0, max=999)])
        db.set_cefr_bands("es", [CefrBand(level="A2", min=0, max=1999)])
        assert [b.level for b in db.get_cefr_bands("es")] == ["A2"]


class TestDialogueSessions:
    def _session(self, db, scenario) -> DialogueSession:
        session = DialogueSession(
            id="s1",
            learner_id="u1",
            scenario_id=scenario.id,
            language_id="es",
            mode=DialogueMode.GUIDED,
        )
        session.add_message("system", "context")
        session.transition_to(SessionStatus.ACTIVE)
        db.create_dialogue_session(session)
        return db.get_dialogue_session("s1")

    def test_round_trip(self, db, scenario):
        stored = self._session(db, scenario)
        assert stored.mode == DialogueMode.GUIDED
        assert stored.status == SessionStatus.ACTIVE
        assert stored.system_context == "context"
        assert stored.version == 1

    def test_update_compare_and_swap(self, db, scenario):
        stored = self._session(db, scenario)
        stored.add_message("user", "hola")
        updated = db.update_dialogue_session(stored)
        assert updated.version == 2

        stale = stored.model_copy(update={"score": 0.9})
        with pytest.raises(StaleWriteError):
            db.update_dialogue_session(stale)
        assert len(db.get_dialogue_session("s1").messages) == 2

    def test_scenario_nodes_round_trip(self, db, scenario):
        stored = db.get_scenario(scenario.id)
        assert stored.first_node.node_order == 1
        assert stored.vocabulary_clusters == ["food", "drinks"]


class TestScenarioProgress:
    def test_upsert(self, db, scenario):
        assert db.get_scenario_progress("u1", scenario.id) is None
        progress = ScenarioProgress(learner_id="u1", scenario_id=scenario.id)
        progress.attempts_count = 2
        progress.mode_unlocked = DialogueMode.OPEN
        db.save_scenario_progress(progress)
        stored = db.get_scenario_progress("u1", scenario.id)
        assert stored.attempts_count == 2
        assert stored.mode_unlocked == DialogueMode.OPEN
