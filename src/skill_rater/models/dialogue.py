"""Dialogue session, scenario and progress models."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from skill_rater.errors import InvalidTransitionError
from skill_rater.models.rating import utcnow


class SessionStatus(StrEnum):
    """Dialogue session lifecycle states."""

    NOT_STARTED = "not_started"
    ACTIVE = "active"
    COMPLETED = "completed"


_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.NOT_STARTED: frozenset({SessionStatus.ACTIVE}),
    SessionStatus.ACTIVE: frozenset({SessionStatus.COMPLETED}),
    SessionStatus.COMPLETED: frozenset(),
}


class DialogueMode(StrEnum):
    """Conversation modes, ordered from most to least scaffolded."""

    CONTROLLED = "controlled"
    GUIDED = "guided"
    OPEN = "open"

    @property
    def rank(self) -> int:
        return _MODE_ORDER.index(self)

    @property
    def successor(self) -> "DialogueMode":
        """Next mode in the unlock order; open is its own successor."""
        return _MODE_ORDER[min(self.rank + 1, len(_MODE_ORDER) - 1)]

    @classmethod
    def highest(cls, a: "DialogueMode", b: "DialogueMode") -> "DialogueMode":
        return a if a.rank >= b.rank else b


_MODE_ORDER: list[DialogueMode] = [
    DialogueMode.CONTROLLED,
    DialogueMode.GUIDED,
    DialogueMode.OPEN,
]


class DialogueNode(BaseModel):
    node_order: int = 0
    prompt_text: str = ""
    possible_responses: list[str] = Field(default_factory=list)
    hints: list[str] = Field(default_factory=list)


class Scenario(BaseModel):
    """Conversation scenario authored by the content team."""

    id: str
    language_id: str
    title: str
    topic: str
    cefr_target: str = "A2"
    cultural_notes: str | None = None
    grammar_targets: list[str] = Field(default_factory=list)
    vocabulary_clusters: list[str] = Field(default_factory=list)
    dialogue_nodes: list[DialogueNode] = Field(default_factory=list)

    @property
    def first_node(self) -> DialogueNode | None:
        if not self.dialogue_nodes:
            return None
        return min(self.dialogue_nodes, key=lambda n: n.node_order)


class Message(BaseModel):
    role: str  # "system", "user" or "assistant"
    content: str


class DialogueEvaluation(BaseModel):
    """Scores for one learner turn, each in [0, 1]."""

    model_config = ConfigDict(populate_by_name=True)

    grammar_accuracy: float = 0.5
    lexical_complexity: float = 0.5
    fluency: float = 0.5
    register_score: float = Field(default=0.5, alias="register")
    corrections: list[str] = Field(default_factory=list)
    composite_score: float = 0.5

    def criteria(self) -> dict[str, float]:
        return {
            "grammar_accuracy": self.grammar_accuracy,
            "lexical_complexity": self.lexical_complexity,
            "fluency": self.fluency,
            "register": self.register_score,
        }


class GatewayReply(BaseModel):
    """Reply text plus evaluation returned by the evaluation service."""

    reply: str
    evaluation: DialogueEvaluation = Field(default_factory=DialogueEvaluation)
    fallback: bool = False


class RatingDelta(BaseModel):
    skill_id: str
    before: int
    after: int
    delta: int


class DialogueSession(BaseModel):
    id: str
    learner_id: str
    scenario_id: str
    language_id: str
    mode: DialogueMode = DialogueMode.CONTROLLED
    status: SessionStatus = SessionStatus.NOT_STARTED
    messages: list[Message] = Field(default_factory=list)
    last_evaluation: DialogueEvaluation | None = None
    skill_rating_deltas: dict[str, RatingDelta] | None = None
    score: float = 0.0
    last_turn_key: str | None = None
    last_turn_result: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    version: int = 1

    def transition_to(self, status: SessionStatus) -> None:
        """Move to ``status``, rejecting transitions the lifecycle forbids."""
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Session {self.id} cannot move from {self.status} to {status}"
            )
        self.status = status

    def add_message(self, role: str, content: str) -> Message:
        message = Message(role=role, content=content)
        self.messages.append(message)
        return message

    @property
    def system_context(self) -> str:
        for m in self.messages:
            if m.role == "system":
                return m.content
        return ""

    @property
    def conversation(self) -> list[Message]:
        """Messages without system bookkeeping."""
        return [m for m in self.messages if m.role != "system"]


class ScenarioProgress(BaseModel):
    learner_id: str
    scenario_id: str
    attempts_count: int = 0
    best_score: float = 0.0
    controlled_completed: bool = False
    guided_completed: bool = False
    open_completed: bool = False
    mode_unlocked: DialogueMode = DialogueMode.CONTROLLED
    last_played_at: datetime | None = None

    def is_unlocked(self, mode: DialogueMode) -> bool:
        return mode.rank <= self.mode_unlocked.rank

    def record_completion(self, mode: DialogueMode, score: float, now: datetime) -> None:
        """Apply one completed session; flags and unlocks only move forward."""
        self.attempts_count += 1
        self.best_score = max(self.best_score, score)
        self.last_played_at = now
        setattr(self, f"{mode.value}_completed", True)
        self.mode_unlocked = DialogueMode.highest(self.mode_unlocked, mode.successor)


class DialogueStart(BaseModel):
    """Outcome of starting a session."""

    session: DialogueSession
    ai_message: str
    options: list[str] | None = None
    hints: list[str] = Field(default_factory=list)
    user_cefr: str
    user_avg_rating: int


class TurnResult(BaseModel):
    """Outcome of one learner turn."""

    ai_reply: str
    evaluation: DialogueEvaluation
    rating_deltas: dict[str, RatingDelta] = Field(default_factory=dict)
    user_cefr: str
    replayed: bool = False
