"""Discrete exercise attempt processing."""

import hashlib
import json
import math
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from skill_rater.config import RatingSettings
from skill_rater.errors import ConcurrencyError, InvalidRequestError, NotFoundError, StaleWriteError
from skill_rater.models.rating import (
    Attempt,
    AttemptResult,
    CefrBand,
    Exercise,
    LanguageProfile,
    SkillRating,
    SkillRatingChange,
)
from skill_rater.rating.elo import (
    clamp_unit,
    expected_score,
    k_factor,
    next_deviation,
    round_half_up,
    time_bonus,
    update_rating,
)
from skill_rater.rating.profile import refresh_profile
from skill_rater.storage.database import Database

logger = structlog.get_logger()


def attempt_fingerprint(
    exercise_id: str,
    answer_index: int | None,
    score_raw: float | None,
    time_spent_seconds: float,
) -> str:
    """Stable hash of an attempt payload, used to spot client retries."""
    payload = json.dumps(
        [exercise_id, answer_index, score_raw, time_spent_seconds], separators=(",", ":")
    )
    return hashlib.sha256(payload.encode()).hexdigest()


class AttemptProcessor:
    """Scores an exercise attempt and moves learner and exercise ratings.

    Rating, exercise difficulty, profile and the attempt log are written in
    one transaction. Stale reads are retried up to
    ``settings.max_write_retries`` times.

    Args:
        db: Persistent store.
        settings: Rating constants.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        db: Database,
        settings: RatingSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.settings = settings or RatingSettings()
        self._clock = clock or (lambda: datetime.now(UTC))

    def submit(
        self,
        learner_id: str,
        exercise_id: str,
        answer_index: int | None = None,
        score_raw: float | None = None,
        time_spent_seconds: float = 0.0,
        idempotency_key: str | None = None,
    ) -> AttemptResult:
        """Process one attempt.

        Args:
            learner_id: Authenticated learner.
            exercise_id: Exercise answered.
            answer_index: Chosen option for discrete-answer exercises.
            score_raw: Externally computed score for other exercises.
            time_spent_seconds: Time the learner took.
            idempotency_key: Client token; a repeat replays the first result.

        Returns:
            AttemptResult; ``replayed`` is True when a duplicate was detected
            and no rating moved.
        """
        if (answer_index is None) == (score_raw is None):
            raise InvalidRequestError("Either answer or scoreRaw required")
        if time_spent_seconds is not None and not math.isfinite(time_spent_seconds):
            raise InvalidRequestError("timeSpentSeconds must be a finite number")

        exercise = self._get_active_exercise(exercise_id)
        raw = self._raw_score(exercise, answer_index, score_raw)
        time_spent = max(0.0, time_spent_seconds or 0.0)
        fingerprint = attempt_fingerprint(exercise_id, answer_index, score_raw, time_spent)

        for attempt_no in range(1, self.settings.max_write_retries + 1):
            replay = self._find_replay(learner_id, idempotency_key, fingerprint)
            if replay is not None:
                logger.info(
                    "attempt_replayed",
                    learner_id=learner_id,
                    exercise_id=exercise_id,
                    attempt_id=replay.id,
                )
                return AttemptResult(**{**replay.result, "replayed": True})
            try:
                return self._apply(
                    learner_id,
                    exercise_id,
                    raw,
                    time_spent,
                    idempotency_key,
                    fingerprint,
                )
            except StaleWriteError as e:
                logger.info(
                    "attempt_write_conflict",
                    learner_id=learner_id,
                    exercise_id=exercise_id,
                    retry=attempt_no,
                    reason=str(e),
                )

        raise ConcurrencyError("Attempt could not be saved due to concurrent updates; retry")

    def _get_active_exercise(self, exercise_id: str) -> Exercise:
        exercise = self.db.get_exercise(exercise_id)
        if exercise is None or not exercise.is_active:
            raise NotFoundError("Exercise not found")
        return exercise

    @staticmethod
    def _raw_score(exercise: Exercise, answer_index: int | None, score_raw: float | None) -> float:
        if answer_index is not None:
            if exercise.correct_index is None:
                raise InvalidRequestError("Exercise does not accept an answer index; send scoreRaw")
            return 1.0 if answer_index == exercise.correct_index else 0.0
        if exercise.correct_index is not None:
            raise InvalidRequestError("Exercise is scored by answer index; send answer")
        if not math.isfinite(score_raw):
            raise InvalidRequestError("scoreRaw must be a finite number")
        return clamp_unit(float(score_raw))

    def _find_replay(
        self, learner_id: str, idempotency_key: str | None, fingerprint: str
    ) -> Attempt | None:
        if idempotency_key:
            return self.db.find_attempt_by_key(learner_id, idempotency_key)
        since = self._clock() - timedelta(seconds=self.settings.duplicate_window_seconds)
        return self.db.find_recent_attempt_by_fingerprint(learner_id, fingerprint, since)

    def bands_for(self, language_id: str) -> list[CefrBand]:
        bands = self.db.get_cefr_bands(language_id)
        if bands:
            return bands
        return [CefrBand(**b.model_dump()) for b in self.settings.default_cefr_bands]

    def _apply(
        self,
        learner_id: str,
        exercise_id: str,
        score_raw: float,
        time_spent: float,
        idempotency_key: str | None,
        fingerprint: str,
    ) -> AttemptResult:
        s = self.settings
        now = self._clock()
        exercise = self._get_active_exercise(exercise_id)
        adjusted = time_bonus(score_raw, time_spent, exercise.time_limit_seconds, s.max_time_bonus)

        current = self.db.get_skill_rating(learner_id, exercise.language_id, exercise.skill_id)
        if current is None:
            current = SkillRating(
                learner_id=learner_id,
                language_id=exercise.language_id,
                skill_id=exercise.skill_id,
                rating=s.default_rating,
                rd=s.default_rd,
            )

        expected = expected_score(current.rating, exercise.difficulty_rating)
        k = k_factor(current.rd, current.attempts_count, current.rating, s)
        new_rating = update_rating(current.rating, k, adjusted, expected)
        new_rd = next_deviation(current.rd, s.attempt_rd_step, s)

        # The exercise plays the other side of the match
        exercise_k = max(s.difficulty_k_min, round_half_up(k / s.difficulty_k_divisor))
        new_difficulty = update_rating(
            exercise.difficulty_rating,
            exercise_k,
            1 - adjusted,
            expected_score(exercise.difficulty_rating, current.rating),
        )

        bands = self.bands_for(exercise.language_id)

        with self.db.transaction():
            self.db.save_skill_rating(
                current.model_copy(
                    update={
                        "rating": new_rating,
                        "rd": new_rd,
                        "attempts_count": current.attempts_count + 1,
                        "last_updated_at": now,
                    }
                )
            )
            self.db.update_exercise_difficulty(exercise.id, new_difficulty, exercise.version)

            profile = self.db.get_language_profile(learner_id, exercise.language_id)
            if profile is None:
                profile = LanguageProfile(
                    learner_id=learner_id,
                    language_id=exercise.language_id,
                    overall_rating=s.default_rating,
                    overall_rd=s.default_rd,
                )
            previous_cefr = refresh_profile(
                profile,
                self.db.list_skill_ratings(learner_id, exercise.language_id),
                bands,
                now,
                default_rating=s.default_rating,
            )
            profile.overall_rd = next_deviation(profile.overall_rd, s.profile_rd_step, s)
            profile.total_attempts += 1
            self.db.save_language_profile(profile)

            result = AttemptResult(
                skill_rating=SkillRatingChange(
                    elo_before=current.rating, elo_after=new_rating, rd_after=new_rd
                ),
                overall_elo=profile.overall_rating,
                overall_cefr=profile.overall_cefr,
                previous_cefr=previous_cefr,
                expected_score=expected,
                difficulty_elo_before=exercise.difficulty_rating,
                difficulty_elo_after=new_difficulty,
                streak_count=profile.streak_count,
            )
            self.db.insert_attempt(
                Attempt(
                    id=str(uuid.uuid4()),
                    exercise_id=exercise.id,
                    learner_id=learner_id,
                    language_id=exercise.language_id,
                    skill_id=exercise.skill_id,
                    score_raw=score_raw,
                    score_adjusted=adjusted,
                    elo_before=current.rating,
                    elo_after=new_rating,
                    difficulty_before=exercise.difficulty_rating,
                    difficulty_after=new_difficulty,
                    k_factor_used=k,
                    rd_before=current.rd,
                    rd_after=new_rd,
                    expected_score=expected,
                    time_spent_seconds=time_spent,
                    passed=adjusted >= s.pass_threshold,
                    idempotency_key=idempotency_key,
                    fingerprint=fingerprint,
                    created_at=now,
                    result=result.model_dump(mode="json"),
                )
            )

        logger.info(
            "attempt_processed",
            learner_id=learner_id,
            exercise_id=exercise.id,
            skill_id=exercise.skill_id,
            elo_before=current.rating,
            elo_after=new_rating,
            difficulty_after=new_difficulty,
            overall_cefr=profile.overall_cefr,
            previous_cefr=previous_cefr,
        )
        return result
