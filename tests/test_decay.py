"""Tests for half-life decay and feedback-aware importance."""

import pytest

from conftest import DAY, NOW
from companion_memory.services.decay import DecayModel
from companion_memory.utils.config import FeedbackConfig, MemoryConfig


@pytest.fixture
def decay_model():
    return DecayModel(MemoryConfig(), FeedbackConfig())


class TestDecayedImportance:

    def test_event_halves_after_its_half_life(self, decay_model, make_memory):
        memory = make_memory('event', 'Concert on Saturday', importance=0.8, created_at=NOW - 7 * DAY)

        assert decay_model.calculate_decayed_importance(memory, NOW) == pytest.approx(0.4)

    def test_identity_never_decays(self, decay_model, make_memory):
        memory = make_memory('identity', 'Name is Kai', importance=0.9, created_at=NOW - 3650 * DAY)

        assert decay_model.calculate_decayed_importance(memory, NOW) == 0.9
        assert decay_model.calculate_effective_importance(memory, NOW) == pytest.approx(0.9)

    def test_decay_is_monotonic_in_time(self, decay_model, make_memory):
        memory = make_memory('skill', 'Knows Go', importance=0.7, created_at=NOW)

        values = [decay_model.calculate_decayed_importance(memory, NOW + days * DAY) for days in (0, 1, 10, 60, 365)]

        assert values == sorted(values, reverse=True)
        assert values[0] == pytest.approx(0.7)
        assert values[3] == pytest.approx(0.35)

    def test_access_count_boost_is_capped(self, decay_model, make_memory):
        memory = make_memory('event', 'Dinner plans', importance=0.5, access_count=20)

        assert decay_model.calculate_decayed_importance(memory, NOW) == pytest.approx(0.8)

    def test_custom_half_life(self, make_memory):
        half_lives = dict(MemoryConfig().half_life_days, opinion=1.0)
        model = DecayModel(MemoryConfig(half_life_days=half_lives), FeedbackConfig())
        memory = make_memory('opinion', 'Tabs over spaces', importance=1.0)

        assert model.calculate_decayed_importance(memory, NOW + 2 * DAY) == pytest.approx(0.25)


class TestEffectiveImportance:

    def test_matches_decayed_importance_without_feedback(self, decay_model, make_memory):
        memory = make_memory('project', 'Building a game', importance=0.6, created_at=NOW - 30 * DAY)

        assert decay_model.calculate_effective_importance(memory, NOW) == pytest.approx(0.3)

    def test_user_verified_boost(self, decay_model, make_memory):
        memory = make_memory('preference', 'Prefers tea', importance=0.4, user_verified=True)

        assert decay_model.calculate_effective_importance(memory, NOW) == pytest.approx(0.6)

    def test_positive_feedback_and_usage_raise_importance(self, decay_model, make_memory):
        plain = make_memory('project', 'Writing a compiler', importance=0.5)
        liked = make_memory('project', 'Writing a compiler', importance=0.5, feedback_score=0.5, usage_count=3,
                            last_used_at=NOW)

        assert decay_model.calculate_effective_importance(liked, NOW) > decay_model.calculate_effective_importance(plain, NOW)

    def test_slower_adaptive_rate_decays_less(self, decay_model, make_memory):
        fast = make_memory('skill', 'Knows Perl', importance=0.8, created_at=NOW - 60 * DAY, adaptive_decay_rate=2.0)
        slow = make_memory('skill', 'Knows Perl', importance=0.8, created_at=NOW - 60 * DAY, adaptive_decay_rate=0.5)

        assert decay_model.calculate_effective_importance(slow, NOW) == pytest.approx(0.8 * 0.5**0.5)
        assert decay_model.calculate_effective_importance(fast, NOW) == pytest.approx(0.2)

    def test_result_is_clamped(self, decay_model, make_memory):
        memory = make_memory('identity', 'Name is Kai', importance=1.0, feedback_score=1.0, usage_count=50,
                             user_verified=True)

        assert decay_model.calculate_effective_importance(memory, NOW) == 1.0


class TestFeedback:

    def test_adjust_feedback_score_is_bounded(self, decay_model, make_memory):
        memory = make_memory(feedback_score=0.95)

        assert decay_model.adjust_feedback_score(memory, True) == 1.0
        assert decay_model.adjust_feedback_score(make_memory(feedback_score=-1.0), False) == -1.0

    def test_adaptive_rate_defaults_without_history(self, decay_model, make_memory):
        assert decay_model.calculate_adaptive_decay_rate(make_memory(), NOW) == 1.0

    def test_adaptive_rate_bounds(self, decay_model, make_memory):
        loved = make_memory(positive_interactions=10)
        hated = make_memory(negative_interactions=20, created_at=NOW - 90 * DAY)

        assert decay_model.calculate_adaptive_decay_rate(loved, NOW) == 0.5
        assert decay_model.calculate_adaptive_decay_rate(hated, NOW) == 2.0

    def test_frequent_usage_slows_decay(self, decay_model, make_memory):
        memory = make_memory(usage_count=5)

        assert decay_model.calculate_adaptive_decay_rate(memory, NOW) == pytest.approx(0.9)

    def test_stale_memories(self, decay_model, make_memory):
        stale = make_memory('skill', 'Knew COBOL', created_at=NOW - 45 * DAY)
        used = make_memory('skill', 'Knows Bash', created_at=NOW - 45 * DAY, usage_count=4)
        identity = make_memory('identity', 'Name is Kai', created_at=NOW - 45 * DAY)
        fresh = make_memory('skill', 'Knows Zig', created_at=NOW - 2 * DAY)

        assert decay_model.find_stale_memories([stale, used, identity, fresh], NOW) == [stale]
