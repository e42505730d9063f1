"""Multi-turn dialogue sessions: start, respond, complete."""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from skill_rater.config import RatingSettings
from skill_rater.dialogue.gateway import EvaluationGateway
from skill_rater.dialogue.prompts import EVALUATION_INSTRUCTIONS, build_system_context
from skill_rater.errors import (
    ConcurrencyError,
    InvalidRequestError,
    InvalidTransitionError,
    ModeLockedError,
    NotFoundError,
    StaleWriteError,
    TurnInProgressError,
)
from skill_rater.models.dialogue import (
    DialogueEvaluation,
    DialogueMode,
    DialogueSession,
    DialogueStart,
    GatewayReply,
    Message,
    RatingDelta,
    Scenario,
    ScenarioProgress,
    SessionStatus,
    TurnResult,
)
from skill_rater.models.rating import CefrBand, LanguageProfile, SkillRating
from skill_rater.rating.elo import (
    expected_score,
    k_factor,
    map_to_cefr,
    next_deviation,
    round_half_up,
    update_rating,
)
from skill_rater.rating.profile import refresh_profile
from skill_rater.storage.database import Database

logger = structlog.get_logger()


class DialogueSessionMachine:
    """Drives dialogue sessions through NotStarted -> Active -> Completed.

    Turns on one session are serialized: a turn arriving while another is
    waiting on the evaluation service is rejected. No transaction is held
    across the service call; the learner's message only reaches the store
    together with the reply and the rating updates.

    Args:
        db: Persistent store.
        gateway: Evaluation service client.
        settings: Rating constants.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        db: Database,
        gateway: EvaluationGateway,
        settings: RatingSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings or RatingSettings()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._turns_in_flight: set[str] = set()

    def _bands(self, language_id: str) -> list[CefrBand]:
        bands = self.db.get_cefr_bands(language_id)
        if bands:
            return bands
        return [CefrBand(**b.model_dump()) for b in self.settings.default_cefr_bands]

    def _core_average(self, ratings: list[SkillRating]) -> int:
        core = [r.rating for r in ratings if r.skill_id in self.settings.core_skills]
        if not core:
            return self.settings.dialogue_default_rating
        return round_half_up(sum(core) / len(core))

    def _scenario(self, scenario_id: str) -> Scenario:
        scenario = self.db.get_scenario(scenario_id)
        if scenario is None:
            raise NotFoundError("Scenario not found")
        return scenario

    def _session(self, learner_id: str, session_id: str) -> DialogueSession:
        session = self.db.get_dialogue_session(session_id)
        if session is None or session.learner_id != learner_id:
            raise NotFoundError("Session not found")
        return session

    def _progress(self, learner_id: str, scenario_id: str) -> ScenarioProgress:
        progress = self.db.get_scenario_progress(learner_id, scenario_id)
        return progress or ScenarioProgress(learner_id=learner_id, scenario_id=scenario_id)

    def difficulty_anchor(self, cefr_target: str) -> int:
        return self.settings.cefr_difficulty_anchors.get(
            cefr_target, self.settings.default_difficulty_anchor
        )

    async def start(self, learner_id: str, scenario_id: str, mode: str) -> DialogueStart:
        """Open a session and fetch the partner's first message."""
        try:
            dialogue_mode = DialogueMode(mode)
        except ValueError:
            raise InvalidRequestError(f"Unknown dialogue mode: {mode}") from None

        scenario = self._scenario(scenario_id)
        if self.settings.enforce_mode_unlock:
            progress = self._progress(learner_id, scenario_id)
            if not progress.is_unlocked(dialogue_mode):
                raise ModeLockedError(
                    f"Mode {dialogue_mode} is locked; complete {progress.mode_unlocked} first"
                )

        ratings = self.db.list_skill_ratings(learner_id, scenario.language_id)
        avg_rating = self._core_average(ratings)
        context = build_system_context(scenario, dialogue_mode, avg_rating)

        ai_message = await self.gateway.open_conversation(context)

        session = DialogueSession(
            id=str(uuid.uuid4()),
            learner_id=learner_id,
            scenario_id=scenario.id,
            language_id=scenario.language_id,
            mode=dialogue_mode,
            created_at=self._clock(),
        )
        session.add_message("system", context)
        session.add_message("assistant", ai_message)
        session.transition_to(SessionStatus.ACTIVE)

        bands = self._bands(scenario.language_id)
        with self.db.transaction():
            if self.db.get_language_profile(learner_id, scenario.language_id) is None:
                default = self.settings.default_rating
                self.db.save_language_profile(
                    LanguageProfile(
                        learner_id=learner_id,
                        language_id=scenario.language_id,
                        overall_rating=default,
                        overall_rd=self.settings.default_rd,
                        overall_cefr=map_to_cefr(default, bands),
                    )
                )
            self.db.create_dialogue_session(session)

        logger.info(
            "dialogue_started",
            session_id=session.id,
            learner_id=learner_id,
            scenario_id=scenario.id,
            mode=dialogue_mode.value,
            avg_rating=avg_rating,
        )

        node = scenario.first_node
        options = None
        if dialogue_mode == DialogueMode.CONTROLLED and node is not None:
            options = node.possible_responses
        return DialogueStart(
            session=session,
            ai_message=ai_message,
            options=options,
            hints=node.hints if node else [],
            user_cefr=map_to_cefr(avg_rating, bands),
            user_avg_rating=avg_rating,
        )

    async def respond(
        self,
        learner_id: str,
        session_id: str,
        message: str,
        turn_key: str | None = None,
    ) -> TurnResult:
        """Evaluate one learner message and apply the resulting rating deltas.

        Raises:
            RateLimitedError, QuotaExhaustedError: The evaluation service
                throttled the turn; nothing was persisted.
            TurnInProgressError: Another turn on this session is in flight.
        """
        if not message or not message.strip():
            raise InvalidRequestError("Message must not be empty")

        session = self._session(learner_id, session_id)
        if turn_key and session.last_turn_key == turn_key and session.last_turn_result:
            logger.info("dialogue_turn_replayed", session_id=session_id)
            return TurnResult(**{**session.last_turn_result, "replayed": True})
        if session.status != SessionStatus.ACTIVE:
            raise InvalidTransitionError("Session is not active")
        if session_id in self._turns_in_flight:
            raise TurnInProgressError("A previous message is still being evaluated")

        self._turns_in_flight.add(session_id)
        try:
            scenario = self._scenario(session.scenario_id)
            # The learner message stays local until the service call succeeds
            conversation = session.conversation + [Message(role="user", content=message)]
            reply = await self.gateway.evaluate_turn(
                session.system_context, EVALUATION_INSTRUCTIONS, conversation
            )
            if reply.fallback:
                logger.warning("dialogue_turn_neutral_evaluation", session_id=session_id)
            return self._commit_turn(session, scenario, message, reply, turn_key)
        finally:
            self._turns_in_flight.discard(session_id)

    def skill_deltas(
        self,
        ratings: list[SkillRating],
        evaluation: DialogueEvaluation,
        mode: DialogueMode,
        anchor: int,
        now: datetime,
    ) -> tuple[list[SkillRating], dict[str, RatingDelta]]:
        """Turn an evaluation into updated ratings for each mapped skill.

        The mode multiplier scales the K-factor, so a controlled turn moves a
        rating half as far as the same scores in open mode.
        """
        s = self.settings
        multiplier = s.mode_multipliers.get(mode.value, 1.0)
        criteria = evaluation.criteria()
        updated: list[SkillRating] = []
        deltas: dict[str, RatingDelta] = {}
        for rating in ratings:
            names = s.skill_criteria.get(rating.skill_id)
            if not names:
                continue
            skill_score = sum(criteria[n] for n in names) / len(names)
            expected = expected_score(rating.rating, anchor)
            k = k_factor(rating.rd, rating.attempts_count, rating.rating, s) * multiplier
            new_rating = update_rating(rating.rating, k, skill_score, expected)
            updated.append(
                rating.model_copy(
                    update={
                        "rating": new_rating,
                        "rd": next_deviation(rating.rd, s.dialogue_rd_step, s),
                        "attempts_count": rating.attempts_count + 1,
                        "last_updated_at": now,
                    }
                )
            )
            deltas[rating.skill_id] = RatingDelta(
                skill_id=rating.skill_id,
                before=rating.rating,
                after=new_rating,
                delta=new_rating - rating.rating,
            )
        return updated, deltas

    def _commit_turn(
        self,
        session: DialogueSession,
        scenario: Scenario,
        message: str,
        reply: GatewayReply,
        turn_key: str | None,
    ) -> TurnResult:
        anchor = self.difficulty_anchor(scenario.cefr_target)
        bands = self._bands(session.language_id)

        for attempt_no in range(1, self.settings.max_write_retries + 1):
            now = self._clock()
            try:
                with self.db.transaction():
                    current = self._session(session.learner_id, session.id)
                    if current.version != session.version:
                        raise TurnInProgressError("Session was updated by another turn; retry")

                    ratings = self.db.list_skill_ratings(session.learner_id, session.language_id)
                    updated, deltas = self.skill_deltas(
                        ratings, reply.evaluation, session.mode, anchor, now
                    )
                    for rating in updated:
                        self.db.save_skill_rating(rating)

                    all_ratings = self.db.list_skill_ratings(
                        session.learner_id, session.language_id
                    )
                    profile = self.db.get_language_profile(
                        session.learner_id, session.language_id
                    ) or LanguageProfile(
                        learner_id=session.learner_id,
                        language_id=session.language_id,
                        overall_rating=self.settings.default_rating,
                        overall_rd=self.settings.default_rd,
                    )
                    refresh_profile(
                        profile, all_ratings, bands, now, default_rating=self.settings.default_rating
                    )
                    self.db.save_language_profile(profile)

                    result = TurnResult(
                        ai_reply=reply.reply,
                        evaluation=reply.evaluation,
                        rating_deltas=deltas,
                        user_cefr=map_to_cefr(self._core_average(all_ratings), bands),
                    )
                    current.add_message("user", message)
                    current.add_message("assistant", reply.reply)
                    current.last_evaluation = reply.evaluation
                    current.skill_rating_deltas = deltas
                    current.score = reply.evaluation.composite_score
                    current.last_turn_key = turn_key
                    current.last_turn_result = result.model_dump(mode="json")
                    self.db.update_dialogue_session(current)
            except StaleWriteError as e:
                logger.info(
                    "dialogue_turn_write_conflict",
                    session_id=session.id,
                    retry=attempt_no,
                    reason=str(e),
                )
                continue

            logger.info(
                "dialogue_turn_committed",
                session_id=session.id,
                composite_score=reply.evaluation.composite_score,
                deltas={k: v.delta for k, v in deltas.items()},
            )
            return result

        raise ConcurrencyError("Turn could not be saved due to concurrent updates; retry")

    async def complete(self, learner_id: str, session_id: str) -> ScenarioProgress:
        """Close a session and advance scenario progress.

        Completing an already completed session changes nothing. Progress is
        read and written under the write lock so concurrent completions of
        the same scenario both count.
        """
        for attempt_no in range(1, self.settings.max_write_retries + 1):
            now = self._clock()
            try:
                with self.db.transaction():
                    session = self._session(learner_id, session_id)
                    progress = self._progress(learner_id, session.scenario_id)
                    if session.status == SessionStatus.COMPLETED:
                        logger.info("dialogue_already_completed", session_id=session_id)
                        return progress

                    session.transition_to(SessionStatus.COMPLETED)
                    session.completed_at = now
                    progress.record_completion(session.mode, session.score, now)
                    self.db.update_dialogue_session(session)
                    self.db.save_scenario_progress(progress)
            except StaleWriteError:
                logger.info("dialogue_complete_conflict", session_id=session_id, retry=attempt_no)
                continue

            logger.info(
                "dialogue_completed",
                session_id=session_id,
                mode=session.mode.value,
                score=session.score,
                mode_unlocked=progress.mode_unlocked.value,
            )
            return progress

        raise ConcurrencyError("Session could not be completed due to concurrent updates; retry")
