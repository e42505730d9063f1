"""REST API routes for attempts, dialogue practice and profiles."""

from functools import lru_cache
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException

from skill_rater.config import get_settings
from skill_rater.dialogue.gateway import EvaluationGateway
from skill_rater.dialogue.session import DialogueSessionMachine
from skill_rater.errors import SkillRaterError
from skill_rater.models.dialogue import DialogueEvaluation, DialogueSession, TurnResult
from skill_rater.models.rating import AttemptResult
from skill_rater.rating.attempts import AttemptProcessor
from skill_rater.rating.elo import cefr_progress
from skill_rater.storage.database import Database

logger = structlog.get_logger()
router = APIRouter(prefix="/api")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AttemptRequest(CamelModel):
    exercise_id: str
    answer_index: int | None = None
    score_raw: float | None = Field(default=None, allow_inf_nan=False)
    time_spent_seconds: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    idempotency_key: str | None = None


class DialogueStartRequest(CamelModel):
    scenario_id: str
    mode: str = "controlled"


class DialogueRespondRequest(CamelModel):
    session_id: str
    message: str
    turn_key: str | None = None


class DialogueCompleteRequest(CamelModel):
    session_id: str


# Dependencies (overridden in tests)


@lru_cache
def get_database() -> Database:
    settings = get_settings()
    db = Database(settings.resolved_database_path)
    db.init_schema()
    return db


@lru_cache
def get_gateway() -> EvaluationGateway:
    settings = get_settings()
    return EvaluationGateway(
        api_key=settings.openai_api_key,
        model=settings.evaluation_model,
        base_url=settings.openai_base_url,
        composite_weights=settings.rating.composite_weights,
        neutral_score=settings.rating.neutral_criterion_score,
        timeout=settings.evaluation_timeout_seconds,
    )


@lru_cache
def get_attempt_processor() -> AttemptProcessor:
    return AttemptProcessor(get_database(), get_settings().rating)


@lru_cache
def get_dialogue_machine() -> DialogueSessionMachine:
    return DialogueSessionMachine(get_database(), get_gateway(), get_settings().rating)


def current_learner(x_learner_id: Annotated[str | None, Header()] = None) -> str:
    """Learner identity set by the upstream auth layer."""
    if not x_learner_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_learner_id


Learner = Annotated[str, Depends(current_learner)]


def register_exception_handlers(app: FastAPI) -> None:
    """Render engine errors as ``{"error": ..., "retryable": ...}``."""

    @app.exception_handler(SkillRaterError)
    async def skill_rater_error_handler(request: Request, exc: SkillRaterError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.message)
        return JSONResponse(
            {"error": exc.message, "retryable": exc.retryable},
            status_code=exc.status_code,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            {"error": exc.detail, "retryable": False}, status_code=exc.status_code
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0]["msg"] if errors else "Invalid request"
        return JSONResponse({"error": message, "retryable": False}, status_code=400)


# Serializers


def _attempt_body(result: AttemptResult) -> dict:
    return {
        "skillRating": {
            "eloBefore": result.skill_rating.elo_before,
            "eloAfter": result.skill_rating.elo_after,
            "rdAfter": result.skill_rating.rd_after,
        },
        "overallElo": result.overall_elo,
        "overallCefr": result.overall_cefr,
        "previousCefr": result.previous_cefr,
        "expectedScore": result.expected_score,
        "difficultyEloBefore": result.difficulty_elo_before,
        "difficultyEloAfter": result.difficulty_elo_after,
        "streakCount": result.streak_count,
        "cefrChanged": result.cefr_changed,
        "replayed": result.replayed,
    }


def _evaluation_body(evaluation: DialogueEvaluation) -> dict:
    return {
        **evaluation.criteria(),
        "compositeScore": evaluation.composite_score,
        "corrections": evaluation.corrections,
    }


def _session_body(session: DialogueSession) -> dict:
    return {
        "id": session.id,
        "scenarioId": session.scenario_id,
        "languageId": session.language_id,
        "mode": session.mode.value,
        "status": session.status.value,
        "messages": [m.model_dump() for m in session.conversation],
        "createdAt": session.created_at.isoformat(),
    }


def _turn_body(result: TurnResult) -> dict:
    return {
        "aiReply": result.ai_reply,
        "evaluation": _evaluation_body(result.evaluation),
        "ratingDeltas": {
            skill: {"before": d.before, "after": d.after, "delta": d.delta}
            for skill, d in result.rating_deltas.items()
        },
        "userCefr": result.user_cefr,
        "replayed": result.replayed,
    }


# Endpoints


@router.post("/attempts")
def submit_attempt(
    body: AttemptRequest,
    learner_id: Learner,
    processor: Annotated[AttemptProcessor, Depends(get_attempt_processor)],
    idempotency_key: Annotated[str | None, Header()] = None,
) -> dict:
    """Score one exercise attempt and update ratings."""
    result = processor.submit(
        learner_id,
        body.exercise_id,
        answer_index=body.answer_index,
        score_raw=body.score_raw,
        time_spent_seconds=body.time_spent_seconds,
        idempotency_key=body.idempotency_key or idempotency_key,
    )
    return _attempt_body(result)


@router.get("/attempts")
def list_attempts(
    learner_id: Learner,
    db: Annotated[Database, Depends(get_database)],
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> list[dict]:
    """Most recent attempts of the learner, newest first."""
    return [
        {
            "id": a.id,
            "exerciseId": a.exercise_id,
            "skillId": a.skill_id,
            "languageId": a.language_id,
            "scoreAdjusted": a.score_adjusted,
            "eloBefore": a.elo_before,
            "eloAfter": a.elo_after,
            "passed": a.passed,
            "createdAt": a.created_at.isoformat(),
        }
        for a in db.list_attempts(learner_id, limit=limit)
    ]


@router.post("/dialogue/start")
async def start_dialogue(
    body: DialogueStartRequest,
    learner_id: Learner,
    machine: Annotated[DialogueSessionMachine, Depends(get_dialogue_machine)],
) -> dict:
    """Open a dialogue session on a scenario."""
    start = await machine.start(learner_id, body.scenario_id, body.mode)
    response = {
        "session": _session_body(start.session),
        "aiMessage": start.ai_message,
        "hints": start.hints,
        "userCefr": start.user_cefr,
        "userAvgElo": start.user_avg_rating,
    }
    if start.options is not None:
        response["options"] = start.options
    return response


@router.post("/dialogue/respond")
async def respond_dialogue(
    body: DialogueRespondRequest,
    learner_id: Learner,
    machine: Annotated[DialogueSessionMachine, Depends(get_dialogue_machine)],
) -> dict:
    """Submit one learner turn."""
    result = await machine.respond(learner_id, body.session_id, body.message, body.turn_key)
    return _turn_body(result)


@router.post("/dialogue/complete")
async def complete_dialogue(
    body: DialogueCompleteRequest,
    learner_id: Learner,
    machine: Annotated[DialogueSessionMachine, Depends(get_dialogue_machine)],
) -> dict:
    await machine.complete(learner_id, body.session_id)
    return {"success": True}


@router.get("/profiles/{language_id}")
def get_profile(
    language_id: str,
    learner_id: Learner,
    db: Annotated[Database, Depends(get_database)],
    processor: Annotated[AttemptProcessor, Depends(get_attempt_processor)],
) -> dict:
    """Return the learner's standing in one language."""
    profile = db.get_language_profile(learner_id, language_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    ratings = db.list_skill_ratings(learner_id, language_id)
    progress = cefr_progress(profile.overall_rating, processor.bands_for(language_id))
    return {
        "languageId": language_id,
        "overallElo": profile.overall_rating,
        "overallRd": profile.overall_rd,
        "overallCefr": profile.overall_cefr,
        "totalAttempts": profile.total_attempts,
        "streakCount": profile.streak_count,
        "lastActiveAt": profile.last_active_at.isoformat() if profile.last_active_at else None,
        "skills": [
            {
                "skillId": r.skill_id,
                "elo": r.rating,
                "rd": r.rd,
                "attempts": r.attempts_count,
            }
            for r in ratings
        ],
        "cefrProgress": {
            "level": progress.level,
            "progress": progress.progress,
            "bandMin": progress.band_min,
            "bandMax": progress.band_max,
            "nextLevel": progress.next_level,
        },
    }


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}
