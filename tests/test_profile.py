"""Tests for rating/profile module."""

from datetime import UTC, datetime, timedelta

from skill_rater.models.rating import LanguageProfile, SkillRating
from skill_rater.rating.elo import map_to_cefr
from skill_rater.rating.profile import advance_streak, overall_rating, refresh_profile

NOW = datetime(2026, 3, 2, 10, 0, 0, tzinfo=UTC)


def _rating(skill: str, rating: int, attempts: int) -> SkillRating:
    return SkillRating(
        learner_id="u1",
        language_id="es",
        skill_id=skill,
        rating=rating,
        attempts_count=attempts,
    )


class TestOverallRating:
    def test_no_ratings_uses_default(self):
        assert overall_rating([]) == 1000
        assert overall_rating([], default=1200) == 1200

    def test_attempts_weighted(self):
        ratings = [_rating("reading", 1200, 3), _rating("writing", 1000, 1)]
        assert overall_rating(ratings) == 1150

    def test_unpractised_skill_weighs_one(self):
        ratings = [_rating("reading", 1100, 0), _rating("writing", 1000, 0)]
        assert overall_rating(ratings) == 1050


class TestStreak:
    def test_first_activity(self):
        assert advance_streak(0, None, NOW) == 1

    def test_same_day_unchanged(self):
        assert advance_streak(4, NOW - timedelta(hours=2), NOW) == 4

    def test_consecutive_day(self):
        assert advance_streak(4, NOW - timedelta(days=1), NOW) == 5

    def test_gap_resets(self):
        assert advance_streak(4, NOW - timedelta(days=2), NOW) == 1

    def test_yesterday_late_evening(self):
        late = datetime(2026, 3, 1, 23, 59, tzinfo=UTC)
        assert advance_streak(2, late, NOW) == 3


class TestRefreshProfile:
    def test_updates_aggregate_fields(self):
        profile = LanguageProfile(learner_id="u1", language_id="es", overall_cefr="A2")
        previous = refresh_profile(
            profile, [_rating("reading", 1250, 5)], bands=[], now=NOW
        )
        assert previous == "A2"
        assert profile.overall_rating == 1250
        assert profile.overall_cefr == map_to_cefr(1250)
        assert profile.streak_count == 1
        assert profile.last_active_at == NOW
