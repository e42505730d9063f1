"""Rating, exercise and attempt models."""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class CefrBand(BaseModel):
    """Inclusive rating range mapped to a CEFR level."""

    level: str
    min: int
    max: int

    def contains(self, rating: float) -> bool:
        return self.min <= rating <= self.max


class CefrProgress(BaseModel):
    level: str
    progress: float
    band_min: int
    band_max: int
    next_level: str | None = None


class SkillRating(BaseModel):
    """A learner's rating for one skill in one language."""

    learner_id: str
    language_id: str
    skill_id: str
    rating: int = 1000
    rd: int = 350
    attempts_count: int = 0
    last_updated_at: datetime | None = None
    # None until the row exists in the store
    version: int | None = None


class LanguageProfile(BaseModel):
    """Aggregate standing of a learner in one language."""

    learner_id: str
    language_id: str
    overall_rating: int = 1000
    overall_rd: int = 350
    overall_cefr: str | None = None
    total_attempts: int = 0
    streak_count: int = 0
    last_active_at: datetime | None = None


class Exercise(BaseModel):
    id: str
    skill_id: str
    language_id: str
    difficulty_rating: int = 1000
    time_limit_seconds: float | None = None
    correct_index: int | None = None
    is_active: bool = True
    version: int = 1


class Attempt(BaseModel):
    """Immutable log entry for one scored exercise attempt."""

    id: str
    exercise_id: str
    learner_id: str
    language_id: str
    skill_id: str
    score_raw: float
    score_adjusted: float
    elo_before: int
    elo_after: int
    difficulty_before: int
    difficulty_after: int
    k_factor_used: int
    rd_before: int
    rd_after: int
    expected_score: float
    time_spent_seconds: float = 0.0
    passed: bool = False
    idempotency_key: str | None = None
    fingerprint: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    result: dict[str, Any] = Field(default_factory=dict)


class SkillRatingChange(BaseModel):
    elo_before: int
    elo_after: int
    rd_after: int


class AttemptResult(BaseModel):
    """Outcome of processing one attempt, as returned to the caller."""

    skill_rating: SkillRatingChange
    overall_elo: int
    overall_cefr: str
    previous_cefr: str | None = None
    expected_score: float
    difficulty_elo_before: int
    difficulty_elo_after: int
    streak_count: int
    replayed: bool = False

    @property
    def cefr_changed(self) -> bool:
        return self.previous_cefr is not None and self.previous_cefr != self.overall_cefr
