"""Elo-style rating math.

Pure functions only: no I/O and no state. Callers clamp raw scores to
[0, 1] before passing them in.
"""

import math
from collections.abc import Sequence

from skill_rater.config import DEFAULT_CEFR_BANDS, RatingSettings
from skill_rater.models.rating import CefrBand, CefrProgress

DEFAULT_RATING_SETTINGS = RatingSettings()


def _default_bands() -> list[CefrBand]:
    return [CefrBand(**band.model_dump()) for band in DEFAULT_CEFR_BANDS]


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def clamp_unit(value: float) -> float:
    """Clamp a score to [0, 1]."""
    return max(0.0, min(1.0, value))


def expected_score(rating: float, opponent: float) -> float:
    """Probability that ``rating`` beats ``opponent`` under the logistic model."""
    return 1.0 / (1.0 + 10 ** ((opponent - rating) / 400.0))


def k_factor(
    rd: int,
    attempts: int,
    rating: int,
    settings: RatingSettings = DEFAULT_RATING_SETTINGS,
) -> int:
    """Select the update sensitivity for a rating.

    Uncertain or new ratings (high RD, few attempts) move fast; mature or
    high ratings move slowly.
    """
    if rd > settings.uncertain_rd_threshold or attempts < settings.provisional_attempts:
        return settings.k_provisional
    if rating >= settings.established_rating or attempts > settings.established_attempts:
        return settings.k_established
    return settings.k_standard


def update_rating(old: int, k: float, actual: float, expected: float) -> int:
    """Return ``old + k * (actual - expected)`` rounded half up."""
    return round_half_up(old + k * (actual - expected))


def next_deviation(
    rd: int,
    step: int,
    settings: RatingSettings = DEFAULT_RATING_SETTINGS,
) -> int:
    """Shrink rating deviation by ``step`` without going below the floor."""
    return max(settings.rd_floor, rd - step)


def time_bonus(
    score_raw: float,
    time_spent: float,
    time_limit: float | None,
    max_bonus: float = DEFAULT_RATING_SETTINGS.max_time_bonus,
) -> float:
    """Add up to ``max_bonus`` for unused time, capped at 1.0.

    Args:
        score_raw: Score in [0, 1] before the bonus.
        time_spent: Seconds the learner used.
        time_limit: Seconds allowed, or None for untimed exercises.
        max_bonus: Bonus granted for an instant answer.

    Returns:
        Adjusted score in [0, 1].
    """
    if not time_limit or time_spent >= time_limit:
        return score_raw
    bonus = max_bonus * (1 - max(0.0, time_spent) / time_limit)
    return min(1.0, score_raw + bonus)


def map_to_cefr(rating: float, bands: Sequence[CefrBand] | None = None) -> str:
    """Map a rating to the CEFR level whose band contains it.

    Ratings outside every band fall back to the lowest level when below all
    bands and to the highest level otherwise.
    """
    ordered = sorted(bands or _default_bands(), key=lambda b: b.min)
    for band in ordered:
        if band.contains(rating):
            return band.level
    if rating < ordered[0].min:
        return ordered[0].level
    return ordered[-1].level


def cefr_progress(rating: float, bands: Sequence[CefrBand] | None = None) -> CefrProgress:
    """Locate a rating inside its CEFR band.

    Returns:
        CefrProgress with the percentage of the band covered and the next
        level, if any.
    """
    ordered = sorted(bands or _default_bands(), key=lambda b: b.min)
    level = map_to_cefr(rating, ordered)
    index = next(i for i, band in enumerate(ordered) if band.level == level)
    band = ordered[index]

    width = band.max - band.min + 1
    progress = min(100.0, max(0.0, (rating - band.min) / width * 100))
    next_level = ordered[index + 1].level if index < len(ordered) - 1 else None

    return CefrProgress(
        level=level,
        progress=round(progress, 1),
        band_min=band.min,
        band_max=band.max,
        next_level=next_level,
    )
