"""Overall rating aggregation and streak bookkeeping."""

from collections.abc import Sequence
from datetime import datetime, timedelta

from skill_rater.models.rating import CefrBand, LanguageProfile, SkillRating
from skill_rater.rating.elo import map_to_cefr, round_half_up


def overall_rating(ratings: Sequence[SkillRating], default: int = 1000) -> int:
    """Attempts-weighted mean of skill ratings.

    Each skill weighs ``max(1, attempts)`` so that a barely practised skill
    cannot swing the aggregate.
    """
    if not ratings:
        return default
    weights = [max(1, r.attempts_count) for r in ratings]
    weighted = sum(r.rating * w for r, w in zip(ratings, weights))
    return round_half_up(weighted / sum(weights))


def advance_streak(streak: int, last_active_at: datetime | None, now: datetime) -> int:
    """Return the streak after activity at ``now``.

    Calendar days are compared in the timezone of ``now``.
    """
    if last_active_at is None:
        return 1
    if last_active_at.tzinfo is not None and now.tzinfo is not None:
        last_active_at = last_active_at.astimezone(now.tzinfo)
    last_day = last_active_at.date()
    today = now.date()
    if last_day == today:
        return max(streak, 1)
    if last_day == today - timedelta(days=1):
        return streak + 1
    return 1


def refresh_profile(
    profile: LanguageProfile,
    ratings: Sequence[SkillRating],
    bands: Sequence[CefrBand],
    now: datetime,
    default_rating: int = 1000,
) -> str | None:
    """Recompute the aggregate fields of ``profile`` in place.

    Returns:
        The CEFR level the profile held before the refresh.
    """
    previous_cefr = profile.overall_cefr
    profile.overall_rating = overall_rating(ratings, default=default_rating)
    profile.overall_cefr = map_to_cefr(profile.overall_rating, bands)
    profile.streak_count = advance_streak(profile.streak_count, profile.last_active_at, now)
    profile.last_active_at = now
    return previous_cefr
