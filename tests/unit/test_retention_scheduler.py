"""
Unit tests for RetentionScheduler: seeding, outcomes, due queue, metrics,
ease optimization and card persistence.
"""

import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from src.core.models import LearningObjective, ObjectiveCategory
from src.study.retention_engine import ReviewCard, SchedulingOptions
from src.study.retention_scheduler import (
    CardStore,
    RetentionScheduler,
    ReviewRecord,
    ScheduleType,
    create_contextual_scheduler,
    difficulty_adjustment,
    estimate_duration,
)


class TestSeedInitial:
    def test_one_initial_entry_per_objective(self, scheduler, objectives, now):
        entries = scheduler.seed_initial("user-1", "lesson-1", objectives, now)

        assert [e.objective_id for e in entries] == ["obj-1", "obj-2", "obj-3"]
        assert all(e.schedule_type == ScheduleType.INITIAL for e in entries)
        assert all(e.lesson_id == "lesson-1" for e in entries)
        assert all(e.due_date == now + timedelta(days=1) for e in entries)

    def test_priority_and_duration_follow_category(self, scheduler, objectives, now):
        entries = scheduler.seed_initial("user-1", "lesson-1", objectives, now)

        assert [e.priority for e in entries] == [3, 4, 4]
        assert [e.estimated_duration_minutes for e in entries] == [3, 6, 8]

    def test_existing_cards_are_not_reset(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        scheduler.record_outcome("user-1", "obj-1", 0.9, now=now)

        scheduler.seed_initial("user-1", "lesson-1", objectives, now + timedelta(days=3))

        card = scheduler.get_card("user-1", "obj-1")
        assert card.total_reviews == 1

    def test_invalid_objective_rejected(self, scheduler, now):
        with pytest.raises(ValueError):
            scheduler.seed_initial("user-1", "lesson-1", [LearningObjective(id="")], now)


class TestRecordOutcome:
    def test_missing_card_returns_none(self, scheduler, now):
        assert scheduler.record_outcome("user-1", "unknown", 0.9, now=now) is None
        assert len(scheduler.store) == 0

    @pytest.mark.parametrize("score", [-0.1, 1.5, float("nan")])
    def test_invalid_score_returns_none(self, scheduler, objectives, now, score):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        assert scheduler.record_outcome("user-1", "obj-1", score, now=now) is None
        assert scheduler.get_card("user-1", "obj-1").total_reviews == 0

    def test_low_score_schedules_remediation(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        entry = scheduler.record_outcome("user-1", "obj-1", 0.4, now=now)

        assert entry.schedule_type == ScheduleType.REMEDIATION
        assert entry.previous_scores == [0.4]

    def test_middle_score_schedules_review(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        entry = scheduler.record_outcome("user-1", "obj-1", 0.75, now=now)
        assert entry.schedule_type == ScheduleType.REVIEW

    def test_repeated_high_scores_schedule_reinforcement(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        entries = [
            scheduler.record_outcome("user-1", "obj-1", 0.95, now=now + timedelta(days=day))
            for day in range(3)
        ]

        assert [e.schedule_type for e in entries] == [
            ScheduleType.REVIEW,
            ScheduleType.REVIEW,
            ScheduleType.REINFORCEMENT,
        ]
        assert entries[-1].previous_scores == [0.95, 0.95]

    def test_concurrent_outcomes_on_one_card(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)

        def review():
            scheduler.record_outcome("user-1", "obj-1", 0.9, now=now)

        threads = [threading.Thread(target=review) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        card = scheduler.get_card("user-1", "obj-1")
        assert card.total_reviews == 20
        assert card.successful_reviews == 20


class TestDueItems:
    def test_nothing_due_before_first_interval(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        assert scheduler.due_items("user-1", now) == []

    def test_due_items_sorted_by_priority(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        entries = scheduler.due_items("user-1", now + timedelta(days=1))

        assert {e.objective_id for e in entries[:2]} == {"obj-2", "obj-3"}
        assert entries[-1].objective_id == "obj-1"
        assert all(e.schedule_type == ScheduleType.REVIEW for e in entries)

    def test_overdue_items_become_remediation(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives[:1], now)
        entries = scheduler.due_items("user-1", now + timedelta(days=3))

        assert len(entries) == 1
        assert entries[0].schedule_type == ScheduleType.REMEDIATION
        assert entries[0].priority == 5

    def test_overdue_items_can_be_excluded(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        assert scheduler.due_items("user-1", now + timedelta(days=3), include_overdue=False) == []

    def test_other_users_not_included(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        assert scheduler.due_items("user-2", now + timedelta(days=5)) == []

    def test_naive_as_of_treated_as_utc(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        as_of = now + timedelta(days=3)

        naive = scheduler.due_items("user-1", as_of.replace(tzinfo=None))

        assert naive == scheduler.due_items("user-1", as_of)
        assert len(naive) == 3

    def test_escalate_overdue(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives[:1], now)
        as_of = now + timedelta(days=10)

        escalated = scheduler.escalate_overdue("user-1", as_of)

        assert [e.objective_id for e in escalated] == ["obj-1"]
        assert escalated[0].schedule_type == ScheduleType.REMEDIATION
        assert scheduler.get_card("user-1", "obj-1").due_date == as_of
        assert scheduler.escalate_overdue("user-1", as_of) == []


class TestMetrics:
    def test_counters(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        scheduler.record_outcome("user-1", "obj-1", 0.9, now=now)

        metrics = scheduler.metrics("user-1", now)

        assert metrics.total_scheduled == 3
        assert metrics.completed_today == 1
        assert metrics.due_today == 0
        assert metrics.overdue == 0
        assert metrics.upcoming_week == 3
        assert metrics.average_retention_rate == 1.0
        assert metrics.streak_days == 1
        assert metrics.total_review_time_minutes == 3

    def test_naive_as_of_treated_as_utc(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        scheduler.record_outcome("user-1", "obj-1", 0.9, now=now)

        assert scheduler.metrics("user-1", now.replace(tzinfo=None)) == scheduler.metrics(
            "user-1", now
        )

    def test_empty_user(self, scheduler, now):
        metrics = scheduler.metrics("nobody", now)
        assert metrics.total_scheduled == 0
        assert metrics.average_retention_rate == 0.0


class TestOptimize:
    def test_low_scores_lower_ease(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        history = [ReviewRecord("obj-1", 0.3), ReviewRecord("obj-1", 0.4)]

        assert scheduler.optimize("user-1", history) == 1
        assert scheduler.get_card("user-1", "obj-1").ease_factor == pytest.approx(2.4)

    def test_same_history_applied_once(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        history = [ReviewRecord("obj-1", 0.3), ReviewRecord("obj-1", 0.4)]

        scheduler.optimize("user-1", history)
        assert scheduler.optimize("user-1", history) == 0
        assert scheduler.get_card("user-1", "obj-1").ease_factor == pytest.approx(2.4)

    def test_new_scores_apply_again(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        history = [ReviewRecord("obj-1", 0.3), ReviewRecord("obj-1", 0.4)]

        scheduler.optimize("user-1", history)
        scheduler.optimize("user-1", [*history, ReviewRecord("obj-1", 0.5)])
        assert scheduler.get_card("user-1", "obj-1").ease_factor == pytest.approx(2.3)

    def test_applied_history_survives_save_and_reload(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        history = [ReviewRecord("obj-1", 0.5) for _ in range(4)]
        scheduler.optimize("user-1", history)

        restored = RetentionScheduler(SchedulingOptions())
        restored.import_cards(
            ReviewCard.from_dict(card.to_dict()) for card in scheduler.export_cards()
        )

        assert restored.optimize("user-1", history) == 0
        assert restored.get_card("user-1", "obj-1").ease_factor == pytest.approx(2.4)

    def test_neutral_history_is_remembered(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        history = [ReviewRecord("obj-1", 0.75), ReviewRecord("obj-1", 0.75)]

        assert scheduler.optimize("user-1", history) == 0
        card = scheduler.get_card("user-1", "obj-1")
        assert card.ease_factor == 2.5
        assert card.optimized_scores == [0.75, 0.75]

    def test_single_score_skipped(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        assert scheduler.optimize("user-1", [ReviewRecord("obj-1", 0.1)]) == 0

    def test_unknown_objective_skipped(self, scheduler, now):
        history = [ReviewRecord("obj-9", 0.1), ReviewRecord("obj-9", 0.2)]
        assert scheduler.optimize("user-1", history) == 0


class TestPersistence:
    def test_export_import_round_trip(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        scheduler.record_outcome("user-1", "obj-2", 0.7, now=now)

        restored = RetentionScheduler(SchedulingOptions())
        restored.import_cards(scheduler.export_cards())

        assert restored.get_card("user-1", "obj-2") == scheduler.get_card("user-1", "obj-2")
        assert len(restored.store) == 3

    def test_export_returns_copies(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        exported = scheduler.export_cards()
        exported[0].ease_factor = 1.3

        assert all(card.ease_factor == 2.5 for card in scheduler.export_cards())

    def test_shared_store(self, objectives, now):
        store = CardStore()
        RetentionScheduler(store=store).seed_initial("user-1", "lesson-1", objectives, now)
        assert RetentionScheduler(store=store).get_card("user-1", "obj-3") is not None


class TestHelpers:
    def test_struggling_card_gets_priority_boost(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        card = replace(scheduler.get_card("user-1", "obj-1"), total_reviews=2, successful_reviews=0)
        assert scheduler.calculate_priority(card, now) == 4

    def test_priority_accepts_naive_time(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        card = scheduler.get_card("user-1", "obj-1")
        later = now + timedelta(days=5)

        assert scheduler.calculate_priority(card, later.replace(tzinfo=None)) == 5
        assert scheduler.calculate_priority(card, later) == 5

    def test_estimate_duration(self):
        assert estimate_duration(ObjectiveCategory.COMPREHENSION) == 4
        assert estimate_duration(None) == 5

    def test_difficulty_adjustment(self, scheduler, objectives, now):
        scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        card = scheduler.get_card("user-1", "obj-1")
        assert difficulty_adjustment(card) == 0.0
        assert difficulty_adjustment(replace(card, total_reviews=10, successful_reviews=10)) == 0.2
        assert difficulty_adjustment(replace(card, total_reviews=10, successful_reviews=5)) == -0.3
        assert difficulty_adjustment(replace(card, total_reviews=10, successful_reviews=7)) == -0.1

    def test_contextual_scheduler(self, objectives, now):
        scheduler = create_contextual_scheduler("advanced")
        assert scheduler.options.performance_threshold == 0.85

        entries = scheduler.seed_initial("user-1", "lesson-1", objectives, now)
        assert entries[0].due_date == now + timedelta(days=3)
