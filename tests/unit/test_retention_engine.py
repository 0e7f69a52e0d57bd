"""
Unit tests for the spaced-repetition algorithm and scheduling options.
"""

import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from src.core.models import ObjectiveCategory
from src.study.retention_engine import (
    MAX_EASE_FACTOR,
    MIN_EASE_FACTOR,
    LearningContext,
    ReviewCard,
    SchedulingOptions,
    SpacedRepetitionAlgorithm,
    as_utc,
)


@pytest.fixture
def algorithm():
    return SpacedRepetitionAlgorithm(SchedulingOptions())


class TestReviewSequence:
    def test_success_success_success_failure(self, algorithm, now):
        card = algorithm.create_card("user-1", "obj-1", now)
        assert card.interval_days == 1
        assert card.repetition_count == 0
        assert card.due_date == now + timedelta(days=1)

        card = algorithm.next_state(card, 0.9, now=now)
        assert (card.repetition_count, card.interval_days) == (1, 1)

        card = algorithm.next_state(card, 0.85, now=now)
        assert (card.repetition_count, card.interval_days) == (2, 6)

        card = algorithm.next_state(card, 0.9, now=now)
        assert (card.repetition_count, card.interval_days) == (3, 15)
        assert card.ease_factor == pytest.approx(2.5)

        card = algorithm.next_state(card, 0.4, now=now)
        assert (card.repetition_count, card.interval_days) == (0, 3)
        assert card.ease_factor == pytest.approx(2.18)
        assert card.total_reviews == 4
        assert card.successful_reviews == 3

    def test_next_state_does_not_modify_input(self, algorithm, now):
        card = algorithm.create_card("user-1", "obj-1", now)
        algorithm.next_state(card, 0.9, now=now)
        assert card.total_reviews == 0
        assert card.last_review_date is None

    def test_due_date_follows_interval(self, algorithm, now):
        card = algorithm.create_card("user-1", "obj-1", now)
        card = algorithm.next_state(card, 0.9, now=now)
        card = algorithm.next_state(card, 0.9, now=now)
        assert card.due_date == now + timedelta(days=6)
        assert card.last_review_date == now

    def test_failure_on_new_card_keeps_one_day(self, algorithm, now):
        card = algorithm.create_card("user-1", "obj-1", now)
        card = algorithm.next_state(card, 0.2, now=now)
        assert card.interval_days == 1
        assert card.repetition_count == 0

    def test_score_is_clamped(self, algorithm, now):
        card = algorithm.create_card("user-1", "obj-1", now)
        card = algorithm.next_state(card, 1.5, now=now)
        assert card.last_score == 1.0


class TestBounds:
    def test_ease_never_below_minimum(self, algorithm, now):
        card = algorithm.create_card("user-1", "obj-1", now)
        for _ in range(10):
            card = algorithm.next_state(card, 0.0, now=now)
        assert card.ease_factor == MIN_EASE_FACTOR

    def test_ease_never_above_maximum(self, algorithm, now):
        card = algorithm.create_card("user-1", "obj-1", now)
        for _ in range(5):
            card = algorithm.next_state(card, 1.0, response_time_seconds=2, now=now)
        assert card.ease_factor == MAX_EASE_FACTOR

    def test_interval_capped_at_maximum(self, now):
        algorithm = SpacedRepetitionAlgorithm(SchedulingOptions(max_interval=10))
        card = algorithm.create_card("user-1", "obj-1", now)
        for _ in range(4):
            card = algorithm.next_state(card, 0.95, now=now)
        assert card.interval_days == 10

    def test_interval_modifier_applied_before_bounds(self, now):
        algorithm = SpacedRepetitionAlgorithm(SchedulingOptions(interval_modifier=0.5))
        card = algorithm.create_card("user-1", "obj-1", now)
        card = algorithm.next_state(card, 0.9, now=now)
        assert card.interval_days == 1  # 0.5 raised to the minimum
        card = algorithm.next_state(card, 0.9, now=now)
        assert card.interval_days == 3


class TestQuality:
    def test_quality_from_score(self):
        assert SpacedRepetitionAlgorithm.quality(0.9) == 4.0
        assert SpacedRepetitionAlgorithm.quality(0.4) == 2.0

    def test_fast_answer_adds_half_point(self):
        assert SpacedRepetitionAlgorithm.quality(0.9, 5) == 4.5

    def test_slow_answer_loses_half_point(self):
        assert SpacedRepetitionAlgorithm.quality(0.9, 45) == 3.5

    def test_normal_answer_unchanged(self):
        assert SpacedRepetitionAlgorithm.quality(0.9, 20) == 4.0

    def test_quality_capped_at_five(self):
        assert SpacedRepetitionAlgorithm.quality(1.0, 1) == 5.0


class TestSchedulingOptions:
    def test_min_above_max_rejected(self):
        with pytest.raises(ValidationError):
            SchedulingOptions(min_interval=10, max_interval=5)

    def test_ease_outside_bounds_rejected(self):
        with pytest.raises(ValidationError):
            SchedulingOptions(ease_factor=3.0)

    def test_context_preset(self):
        options = SchedulingOptions.for_context(LearningContext.BEGINNER)
        assert options.initial_interval == 1
        assert options.performance_threshold == 0.7
        assert options.urgency_boost == 2.0

    def test_context_preset_keeps_other_fields(self):
        base = SchedulingOptions(max_interval=100, performance_threshold=0.5)
        options = SchedulingOptions.for_context("advanced", base)
        assert options.max_interval == 100
        assert options.performance_threshold == 0.85
        assert options.initial_interval == 3


class TestReviewCard:
    def test_success_rate_none_before_review(self, algorithm, now):
        assert algorithm.create_card("user-1", "obj-1", now).success_rate is None

    def test_dict_round_trip(self, algorithm, now):
        card = algorithm.create_card("user-1", "obj-1", now, ObjectiveCategory.APPLICATION)
        card = algorithm.next_state(card, 0.7, response_time_seconds=12, now=now)

        data = card.to_dict()
        assert data["category"] == "application"
        assert data["due_date"] == card.due_date.isoformat()
        assert ReviewCard.from_dict(data) == card

    def test_dict_round_trip_keeps_optimized_scores(self, algorithm, now):
        card = replace(algorithm.create_card("user-1", "obj-1", now), optimized_scores=[0.5, 0.5])

        restored = ReviewCard.from_dict(json.loads(json.dumps(card.to_dict())))

        assert restored.optimized_scores == [0.5, 0.5]

    def test_naive_timestamps_read_as_utc(self, algorithm, now):
        data = algorithm.create_card("user-1", "obj-1", now).to_dict()
        data["due_date"] = "2024-03-02T12:00:00"

        card = ReviewCard.from_dict(data)

        assert card.due_date == now + timedelta(days=1)
        assert card.due_date.tzinfo == timezone.utc


class TestAsUtc:
    def test_naive_gets_utc(self):
        assert as_utc(datetime(2024, 3, 1, 12)) == datetime(2024, 3, 1, 12, tzinfo=timezone.utc)

    def test_aware_unchanged(self, now):
        assert as_utc(now) is now
