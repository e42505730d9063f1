"""Smoke tests for Pydantic models."""

from datetime import UTC, datetime

import pytest

from skill_rater.errors import InvalidTransitionError
from skill_rater.models.dialogue import (
    DialogueEvaluation,
    DialogueMode,
    DialogueSession,
    ScenarioProgress,
    SessionStatus,
)
from skill_rater.models.rating import AttemptResult, CefrBand, SkillRating, SkillRatingChange

NOW = datetime(2026, 3, 2, tzinfo=UTC)


class TestSkillRating:
    def test_defaults(self):
        rating = SkillRating(learner_id="u1", language_id="es", skill_id="reading")
        assert rating.rating == 1000
        assert rating.rd == 350
        assert rating.attempts_count == 0
        assert rating.version is None


class TestCefrBand:
    def test_contains_is_inclusive(self):
        band = CefrBand(level="A2", min=1000, max=1199)
        assert band.contains(1000)
        assert band.contains(1199)
        assert not band.contains(1200)


class TestAttemptResult:
    def _result(self, previous, current):
        return AttemptResult(
            skill_rating=SkillRatingChange(elo_before=1000, elo_after=1020, rd_after=340),
            overall_elo=1020,
            overall_cefr=current,
            previous_cefr=previous,
            expected_score=0.5,
            difficulty_elo_before=1000,
            difficulty_elo_after=995,
            streak_count=1,
        )

    def test_cefr_changed(self):
        assert self._result("A2", "B1").cefr_changed is True
        assert self._result("B1", "A2").cefr_changed is True
        assert self._result("A2", "A2").cefr_changed is False
        assert self._result(None, "A2").cefr_changed is False


class TestDialogueMode:
    def test_successor(self):
        assert DialogueMode.CONTROLLED.successor == DialogueMode.GUIDED
        assert DialogueMode.GUIDED.successor == DialogueMode.OPEN
        assert DialogueMode.OPEN.successor == DialogueMode.OPEN

    def test_highest(self):
        assert DialogueMode.highest(DialogueMode.OPEN, DialogueMode.GUIDED) == DialogueMode.OPEN


class TestDialogueSession:
    def _session(self) -> DialogueSession:
        return DialogueSession(id="s1", learner_id="u1", scenario_id="sc", language_id="es")

    def test_starts_not_started(self):
        assert self._session().status == SessionStatus.NOT_STARTED

    def test_cannot_skip_active(self):
        session = self._session()
        with pytest.raises(InvalidTransitionError):
            session.transition_to(SessionStatus.COMPLETED)

    def test_completed_is_terminal(self):
        session = self._session()
        session.transition_to(SessionStatus.ACTIVE)
        session.transition_to(SessionStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            session.transition_to(SessionStatus.ACTIVE)

    def test_conversation_hides_system(self):
        session = self._session()
        session.add_message("system", "context")
        session.add_message("assistant", "¡Hola!")
        assert [m.role for m in session.conversation] == ["assistant"]
        assert session.system_context == "context"


class TestScenarioProgress:
    def test_defaults_lock_to_controlled(self):
        progress = ScenarioProgress(learner_id="u1", scenario_id="sc")
        assert progress.is_unlocked(DialogueMode.CONTROLLED)
        assert not progress.is_unlocked(DialogueMode.GUIDED)

    def test_completion_never_regresses(self):
        progress = ScenarioProgress(
            learner_id="u1", scenario_id="sc", mode_unlocked=DialogueMode.OPEN, best_score=0.8
        )
        progress.record_completion(DialogueMode.CONTROLLED, 0.4, NOW)
        assert progress.mode_unlocked == DialogueMode.OPEN
        assert progress.best_score == 0.8
        assert progress.controlled_completed is True
        assert progress.attempts_count == 1
        assert progress.last_played_at == NOW


class TestDialogueEvaluation:
    def test_neutral_defaults(self):
        evaluation = DialogueEvaluation()
        assert set(evaluation.criteria().values()) == {0.5}
        assert evaluation.corrections == []

    def test_register_alias(self):
        by_alias = DialogueEvaluation(register=0.9)
        by_name = DialogueEvaluation(register_score=0.9)
        assert by_alias.register_score == by_name.register_score == 0.9
        assert by_alias.criteria()["register"] == 0.9
        assert "register" not in DialogueEvaluation.model_fields

    def test_stored_json_reloads(self):
        evaluation = DialogueEvaluation(fluency=0.7, register=0.2, composite_score=0.4)
        restored = DialogueEvaluation.model_validate_json(evaluation.model_dump_json())
        assert restored == evaluation
