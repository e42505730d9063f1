"""Evaluation service client: conversational replies plus turn scores."""

import json
import math
from typing import Any

import openai
import structlog
from openai import AsyncOpenAI

from skill_rater.errors import QuotaExhaustedError, RateLimitedError, UpstreamError
from skill_rater.models.dialogue import DialogueEvaluation, GatewayReply, Message

logger = structlog.get_logger()

MAX_CONTEXT_MESSAGES = 30
OPENING_FALLBACK = "Hello!"
REPLY_FALLBACK = "I understand."
QUOTA_ERROR_CODES = {"insufficient_quota", "billing_hard_limit_reached"}

CRITERIA = ("grammar_accuracy", "lexical_complexity", "fluency", "register")

EVALUATE_RESPONSE_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "evaluate_response",
        "description": "Evaluate the learner's last message and provide the conversational reply",
        "parameters": {
            "type": "object",
            "properties": {
                "ai_reply": {"type": "string", "description": "The conversational reply"},
                "grammar_accuracy": {"type": "number", "description": "0.0-1.0 grammar score"},
                "lexical_complexity": {"type": "number", "description": "0.0-1.0 vocabulary score"},
                "fluency": {"type": "number", "description": "0.0-1.0 fluency score"},
                "register": {"type": "number", "description": "0.0-1.0 register appropriateness"},
                "corrections": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Specific corrections, if any",
                },
            },
            "required": list(("ai_reply",) + CRITERIA),
            "additionalProperties": False,
        },
    },
}


def _truncate(messages: list[Message]) -> list[Message]:
    """Limit the conversation to the last N messages to control token usage."""
    if len(messages) <= MAX_CONTEXT_MESSAGES:
        return messages
    return messages[-MAX_CONTEXT_MESSAGES:]


def _score(value: Any, neutral: float) -> float:
    """Coerce one criterion to [0, 1]; missing or non-numeric values are neutral."""
    if value is None or isinstance(value, bool):
        return neutral
    try:
        value = float(value)
    except (TypeError, ValueError):
        return neutral
    if math.isnan(value):
        return neutral
    return max(0.0, min(1.0, value))


def parse_evaluation(
    payload: dict[str, Any],
    weights: dict[str, float],
    neutral: float = 0.5,
) -> DialogueEvaluation:
    """Build a bounded evaluation from an untrusted payload.

    Args:
        payload: Decoded tool-call arguments.
        weights: Composite weight per criterion.
        neutral: Score used for missing or unparseable criteria.

    Returns:
        DialogueEvaluation with clamped criteria and the weighted composite.
    """
    scores = {name: _score(payload.get(name), neutral) for name in CRITERIA}
    corrections = payload.get("corrections") or []
    if not isinstance(corrections, list):
        corrections = [str(corrections)]
    composite = sum(scores[name] * weights.get(name, 0.0) for name in CRITERIA)
    return DialogueEvaluation(
        **scores,
        corrections=[str(c) for c in corrections],
        composite_score=round(composite, 4),
    )


class EvaluationGateway:
    """Chat-completions client used for dialogue practice.

    Args:
        api_key: API key for the OpenAI-compatible endpoint.
        model: Model used for replies and evaluation.
        base_url: Optional alternative endpoint.
        composite_weights: Weight per criterion for the composite score.
        neutral_score: Default for criteria the service omits.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        composite_weights: dict[str, float] | None = None,
        neutral_score: float = 0.5,
        timeout: float = 30.0,
    ):
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        self.model = model
        self.composite_weights = composite_weights or {
            "grammar_accuracy": 0.3,
            "lexical_complexity": 0.2,
            "fluency": 0.3,
            "register": 0.2,
        }
        self.neutral_score = neutral_score

    async def _create(self, **kwargs: Any):
        """Call the service, translating throttling into caller-visible errors."""
        try:
            return await self.client.chat.completions.create(model=self.model, **kwargs)
        except openai.RateLimitError as e:
            if e.code in QUOTA_ERROR_CODES:
                logger.warning("evaluation_quota_exhausted", code=e.code)
                raise QuotaExhaustedError("AI credits exhausted. Please add funds.") from e
            logger.warning("evaluation_rate_limited")
            raise RateLimitedError("Rate limited. Please try again later.") from e
        except openai.APIStatusError as e:
            if e.status_code == 402:
                logger.warning("evaluation_quota_exhausted", code=e.code)
                raise QuotaExhaustedError("AI credits exhausted. Please add funds.") from e
            logger.error("evaluation_service_error", status_code=e.status_code)
            raise UpstreamError("Evaluation service error") from e
        except openai.APIError as e:
            logger.error("evaluation_service_unreachable", error=str(e))
            raise UpstreamError("Evaluation service unavailable") from e

    async def open_conversation(self, system_context: str) -> str:
        """Ask for the opening line of a new conversation."""
        response = await self._create(
            messages=[
                {"role": "system", "content": system_context},
                {"role": "user", "content": "Start the conversation."},
            ],
        )
        content = response.choices[0].message.content if response.choices else None
        return content or OPENING_FALLBACK

    async def evaluate_turn(
        self,
        system_context: str,
        instructions: str,
        conversation: list[Message],
    ) -> GatewayReply:
        """Continue the conversation and score the learner's last message.

        Args:
            system_context: Scenario and mode context stored on the session.
            instructions: Evaluation instructions appended to the context.
            conversation: Messages without system bookkeeping, ending with the
                learner's new message.

        Returns:
            GatewayReply; ``fallback`` is set when the evaluation could not be
            parsed and neutral scores were used.
        """
        response = await self._create(
            messages=[
                {"role": "system", "content": f"{system_context}\n{instructions}"},
                *({"role": m.role, "content": m.content} for m in _truncate(conversation)),
            ],
            tools=[EVALUATE_RESPONSE_TOOL],
            tool_choice={"type": "function", "function": {"name": "evaluate_response"}},
        )

        message = response.choices[0].message if response.choices else None
        payload: dict[str, Any] | None = None
        tool_calls = getattr(message, "tool_calls", None) or []
        if tool_calls:
            try:
                decoded = json.loads(tool_calls[0].function.arguments or "")
                if isinstance(decoded, dict):
                    payload = decoded
            except (json.JSONDecodeError, TypeError):
                logger.warning("evaluation_payload_unparseable")

        if payload is None:
            reply = (getattr(message, "content", None) or REPLY_FALLBACK)
            logger.warning("evaluation_fallback_neutral")
            return GatewayReply(
                reply=reply,
                evaluation=parse_evaluation({}, self.composite_weights, self.neutral_score),
                fallback=True,
            )

        evaluation = parse_evaluation(payload, self.composite_weights, self.neutral_score)
        reply = payload.get("ai_reply")
        if not isinstance(reply, str) or not reply.strip():
            reply = getattr(message, "content", None) or REPLY_FALLBACK
        logger.info(
            "turn_evaluated",
            composite_score=evaluation.composite_score,
            corrections=len(evaluation.corrections),
        )
        return GatewayReply(reply=reply, evaluation=evaluation)
