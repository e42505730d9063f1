"""System context and evaluation instructions for dialogue practice."""

from functools import lru_cache
from pathlib import Path

import yaml

from skill_rater.models.dialogue import DialogueMode, Scenario

PROMPTS_DIR = Path(__file__).parent.parent.parent.parent / "config" / "prompts"

DEFAULT_MODE_INSTRUCTIONS: dict[str, str] = {
    "controlled": (
        "Keep responses very structured. Provide multiple choice or "
        "fill-in-the-blank options the learner can pick from."
    ),
    "guided": (
        "Allow free text but offer vocabulary suggestions when appropriate."
    ),
    "open": (
        "Engage in fully natural conversation with no scaffolding. Use natural, "
        "high-fidelity language and ask follow-up questions naturally."
    ),
}

EVALUATION_INSTRUCTIONS = """\
Also evaluate the learner's latest message internally on these criteria (0.0-1.0 each):
- grammar_accuracy: correctness of grammar
- lexical_complexity: richness and appropriateness of vocabulary
- fluency: natural flow, sentence length and structure
- register: appropriate formality level for the context
Then continue the conversation naturally. Keep responses to 2-3 sentences."""


@lru_cache(maxsize=1)
def _load_yaml(filename: str) -> dict:
    path = PROMPTS_DIR / filename
    if not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def mode_instruction(mode: DialogueMode) -> str:
    """Instruction for ``mode``, overridable in modes.yaml."""
    modes = _load_yaml("modes.yaml").get("modes", {})
    return modes.get(mode.value) or DEFAULT_MODE_INSTRUCTIONS[mode.value]


def adaptive_modifiers(rating: int) -> list[str]:
    """Difficulty guidance for the partner based on the learner's rating."""
    if rating > 1600:
        return [
            "Use complex sentence structures, idioms, and nuanced vocabulary.",
            "Ask unexpected follow-up questions to test depth of understanding.",
            "Remove scaffolding; do not offer hints or simplifications.",
        ]
    if rating > 1300:
        return [
            "Use moderate complexity. Mix simple and compound sentences.",
            "Occasionally use idiomatic expressions with context clues.",
        ]
    return [
        "Use simple, clear language. Short sentences.",
        "Offer supportive phrasing. Provide gentle corrections.",
        "If the learner struggles, simplify further and offer hints.",
    ]


def build_system_context(scenario: Scenario, mode: DialogueMode, rating: int) -> str:
    """Compose the system context stored at the head of a session.

    Args:
        scenario: Scenario being practised.
        mode: Conversation mode.
        rating: Learner's average core-skill rating.

    Returns:
        Multi-line system prompt.
    """
    parts = [
        f"You are a language practice partner for {scenario.cefr_target}-level learners.",
        f"Topic: {scenario.topic}. Title: {scenario.title}.",
    ]
    if scenario.cultural_notes:
        parts.append(f"Cultural notes: {scenario.cultural_notes}")
    if scenario.grammar_targets:
        parts.append(f"Grammar targets: {', '.join(scenario.grammar_targets)}")
    if scenario.vocabulary_clusters:
        parts.append(f"Vocabulary clusters: {', '.join(scenario.vocabulary_clusters)}")

    parts.append(" ".join(adaptive_modifiers(rating) + [mode_instruction(mode)]))

    node = scenario.first_node
    if node and node.prompt_text:
        parts.append(f"Start the conversation with this context: {node.prompt_text}")
    else:
        parts.append("Start a natural conversation on the topic.")
    parts.append("Keep your response concise (2-3 sentences). Speak in the target language primarily.")

    return "\n".join(parts)
