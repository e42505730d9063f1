"""Tests for dialogue/prompts module."""

from skill_rater.dialogue.prompts import (
    DEFAULT_MODE_INSTRUCTIONS,
    adaptive_modifiers,
    build_system_context,
    mode_instruction,
)
from skill_rater.models.dialogue import DialogueMode, Scenario


class TestAdaptiveModifiers:
    def test_advanced(self):
        assert any("idioms" in m for m in adaptive_modifiers(1700))

    def test_intermediate(self):
        assert any("moderate complexity" in m for m in adaptive_modifiers(1400))

    def test_beginner(self):
        modifiers = adaptive_modifiers(1300)
        assert any("simple, clear language" in m for m in modifiers)


class TestModeInstruction:
    def test_every_mode_has_text(self):
        for mode in DialogueMode:
            assert mode_instruction(mode)
        assert set(DEFAULT_MODE_INSTRUCTIONS) == {m.value for m in DialogueMode}


class TestBuildSystemContext:
    def test_includes_scenario_metadata(self, scenario):
        context = build_system_context(scenario, DialogueMode.GUIDED, 1200)
        assert "A2-level learners" in context
        assert "Ordering food and drinks" in context
        assert "Greet staff before ordering." in context
        assert "present tense" in context
        assert "food, drinks" in context
        assert "The waiter asks what the learner would like." in context
        assert mode_instruction(DialogueMode.GUIDED) in context

    def test_without_nodes(self):
        scenario = Scenario(id="s", language_id="es", title="Free talk", topic="Weekend plans")
        context = build_system_context(scenario, DialogueMode.OPEN, 1700)
        assert "Start a natural conversation on the topic." in context
        assert "Cultural notes" not in context
