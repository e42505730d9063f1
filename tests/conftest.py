"""Shared fixtures: a temporary SQLite store seeded with Spanish content."""

from datetime import UTC, datetime

import pytest

from skill_rater.models.dialogue import DialogueNode, Scenario
from skill_rater.models.rating import Exercise
from skill_rater.storage.database import Database


class FakeClock:
    """Settable clock for time-dependent behaviour."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 10, 0, 0, tzinfo=UTC))


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "test.db"))
    database.init_schema()
    yield database
    database.close()


@pytest.fixture
def exercise(db):
    ex = Exercise(
        id="es-read-001",
        skill_id="reading",
        language_id="es",
        difficulty_rating=1000,
        correct_index=2,
    )
    db.save_exercise(ex)
    return db.get_exercise(ex.id)


@pytest.fixture
def scenario(db):
    sc = Scenario(
        id="es-cafe",
        language_id="es",
        title="Ordering at a café",
        topic="Ordering food and drinks",
        cefr_target="A2",
        cultural_notes="Greet staff before ordering.",
        grammar_targets=["present tense"],
        vocabulary_clusters=["food", "drinks"],
        dialogue_nodes=[
            DialogueNode(
                node_order=2,
                prompt_text="The waiter brings the bill.",
                possible_responses=["La cuenta, por favor."],
            ),
            DialogueNode(
                node_order=1,
                prompt_text="The waiter asks what the learner would like.",
                possible_responses=["Un café, por favor.", "Un té, por favor."],
                hints=["Use 'quisiera' for a polite request."],
            ),
        ],
    )
    db.save_scenario(sc)
    return sc
