"""
Unit tests for RetentionOptimizer.

The decide step (analyze_user) is tested without touching the scheduler;
the apply step is checked for its critical/high-only behaviour.
"""

import time
from datetime import timedelta

import pytest

from src.core.models import LearningObjective
from src.study.retention_optimizer import (
    EngagementMetrics,
    PatternType,
    PreferredDifficulty,
    RecommendationPriority,
    RecommendationType,
    RetentionOptimizer,
    classify_pattern,
    infer_motivation,
)
from src.study.retention_scheduler import ReviewRecord


def history_for(objective_id: str, scores: list[float], start=None) -> list[ReviewRecord]:
    return [
        ReviewRecord(
            objective_id=objective_id,
            score=score,
            completed_at=start + timedelta(days=i) if start else None,
        )
        for i, score in enumerate(scores)
    ]


class FakeProvider:
    """In-memory learner data; raises for users listed in `failing`."""

    def __init__(self, histories, failing=(), slow=()):
        self.histories = histories
        self.failing = set(failing)
        self.slow = set(slow)

    def get_review_history(self, user_id):
        if user_id in self.failing:
            raise RuntimeError("history unavailable")
        if user_id in self.slow:
            time.sleep(0.5)
        return self.histories.get(user_id, [])

    def get_engagement(self, user_id):
        return EngagementMetrics()


@pytest.fixture
def seeded(scheduler, now):
    scheduler.seed_initial(
        "user-1",
        "lesson-1",
        [LearningObjective(id="obj-1"), LearningObjective(id="obj-2")],
        now,
    )
    return scheduler


class TestPatterns:
    def test_single_score_is_stable(self):
        assert classify_pattern([0.3]) == PatternType.STABLE

    def test_flat_low_scores_are_stable(self):
        assert classify_pattern([0.5, 0.5, 0.5, 0.5]) == PatternType.STABLE

    def test_mastered(self):
        assert classify_pattern([0.95, 0.95, 0.95]) == PatternType.MASTERED

    def test_improving(self):
        assert classify_pattern([0.5, 0.6, 0.7, 0.8]) == PatternType.IMPROVING

    def test_declining(self):
        assert classify_pattern([1.0, 0.9, 0.8, 0.7]) == PatternType.DECLINING

    def test_volatile(self):
        assert classify_pattern([0.3, 1.0, 0.3, 1.0]) == PatternType.VOLATILE

    def test_every_objective_gets_a_pattern(self, seeded):
        optimizer = RetentionOptimizer(seeded)
        history = history_for("obj-1", [0.5, 0.6]) + history_for("obj-2", [0.9])

        patterns = optimizer.analyze_patterns("user-1", history)

        assert {p.objective_id for p in patterns} == {"obj-1", "obj-2"}
        single = next(p for p in patterns if p.objective_id == "obj-2")
        assert single.pattern == PatternType.STABLE
        assert single.total_attempts == 1

    def test_dated_history_is_sorted(self, seeded, now):
        optimizer = RetentionOptimizer(seeded)
        history = list(reversed(history_for("obj-1", [0.5, 0.6, 0.7, 0.8], start=now)))

        pattern = optimizer.analyze_patterns("user-1", history)[0]

        assert pattern.pattern == PatternType.IMPROVING
        assert pattern.recent_score == 0.8
        assert pattern.days_since_first == 3.0


class TestRecommendations:
    def test_poor_performance_is_critical(self, seeded):
        analysis = RetentionOptimizer(seeded).analyze_user(
            "user-1", history_for("obj-1", [0.5] * 4)
        )

        assert len(analysis.recommendations) == 1
        rec = analysis.recommendations[0]
        assert rec.type == RecommendationType.REMEDIATION_FOCUS
        assert rec.priority == RecommendationPriority.CRITICAL
        assert rec.objective_id == "obj-1"
        assert rec.schedule_delay_days == 1

    def test_declining_is_high(self, seeded):
        analysis = RetentionOptimizer(seeded).analyze_user(
            "user-1", history_for("obj-1", [1.0, 0.9, 0.8, 0.7])
        )
        assert [r.priority for r in analysis.recommendations] == [RecommendationPriority.HIGH]
        assert analysis.recommendations[0].adjustment_factor == 0.5

    def test_low_motivation_adds_learner_wide_item(self, seeded):
        engagement = EngagementMetrics(overdue_count=6)
        analysis = RetentionOptimizer(seeded).analyze_user(
            "user-1", history_for("obj-1", [0.8, 0.8]), engagement
        )

        rec = analysis.recommendations[-1]
        assert rec.type == RecommendationType.SCHEDULE_PAUSE
        assert rec.objective_id is None

    def test_analysis_does_not_touch_scheduler(self, seeded):
        RetentionOptimizer(seeded).analyze_user("user-1", history_for("obj-1", [0.5] * 4))
        assert seeded.get_card("user-1", "obj-1").ease_factor == 2.5

    def test_expected_improvements_capped(self, seeded):
        analysis = RetentionOptimizer(seeded).analyze_user(
            "user-1", history_for("obj-1", [0.5] * 4)
        )
        improvements = analysis.expected_improvements
        assert improvements.retention_rate == pytest.approx(0.2)
        assert improvements.time_efficiency == pytest.approx(0.12)
        assert improvements.mastery_speed == pytest.approx(0.16)


class TestApply:
    def test_critical_recommendation_adjusts_schedule(self, seeded):
        optimizer = RetentionOptimizer(seeded)
        result = optimizer.optimize_user_retention(
            "user-1", history_for("obj-1", [0.5] * 4), EngagementMetrics()
        )

        assert result.optimizations_applied == 1
        assert seeded.get_card("user-1", "obj-1").ease_factor == pytest.approx(2.4)
        assert seeded.get_card("user-1", "obj-2").ease_factor == 2.5

    def test_medium_recommendation_is_advisory(self, seeded):
        optimizer = RetentionOptimizer(seeded)
        result = optimizer.optimize_user_retention(
            "user-1", history_for("obj-1", [0.3, 1.0, 0.3, 1.0]), EngagementMetrics()
        )

        assert [r.priority for r in result.recommendations] == [RecommendationPriority.MEDIUM]
        assert result.optimizations_applied == 0
        assert seeded.get_card("user-1", "obj-1").ease_factor == 2.5

    def test_low_recommendation_is_advisory(self, seeded):
        optimizer = RetentionOptimizer(seeded)
        history = history_for("obj-1", [0.95, 0.95, 0.95])

        applied = optimizer.apply_optimizations(
            "user-1", optimizer.analyze_user("user-1", history).recommendations, history
        )
        assert applied == 0

    def test_repeat_run_reports_no_changes(self, seeded):
        optimizer = RetentionOptimizer(seeded)
        history = history_for("obj-1", [0.5] * 4)

        optimizer.optimize_user_retention("user-1", history, EngagementMetrics())
        repeat = optimizer.optimize_user_retention("user-1", history, EngagementMetrics())

        assert [r.priority for r in repeat.recommendations] == [RecommendationPriority.CRITICAL]
        assert repeat.optimizations_applied == 0
        assert seeded.get_card("user-1", "obj-1").ease_factor == pytest.approx(2.4)

    def test_missing_input_without_provider(self, seeded):
        with pytest.raises(ValueError):
            RetentionOptimizer(seeded).optimize_user_retention("user-1")

    def test_provider_supplies_missing_input(self, seeded):
        provider = FakeProvider({"user-1": history_for("obj-1", [0.5] * 4)})
        result = RetentionOptimizer(seeded, provider).optimize_user_retention("user-1")
        assert result.optimizations_applied == 1


class TestBatch:
    def test_failing_user_is_skipped(self, seeded):
        provider = FakeProvider(
            {"user-1": history_for("obj-1", [0.5] * 4), "user-2": []},
            failing=["user-3"],
        )
        optimizer = RetentionOptimizer(seeded, provider, max_workers=2)

        results = optimizer.optimize_multiple_users(["user-1", "user-3", "user-2"])

        assert [r.user_id for r in results] == ["user-1", "user-2"]

    def test_slow_user_times_out(self, seeded):
        provider = FakeProvider({"user-1": []}, slow=["user-9"])
        optimizer = RetentionOptimizer(seeded, provider, max_workers=2, user_timeout_seconds=0.05)

        results = optimizer.optimize_multiple_users(["user-9", "user-1"])

        assert [r.user_id for r in results] == ["user-1"]

    def test_timed_out_user_schedule_untouched(self, seeded):
        provider = FakeProvider({"user-1": history_for("obj-1", [0.5] * 4)}, slow=["user-1"])
        optimizer = RetentionOptimizer(seeded, provider, user_timeout_seconds=0.05)

        results = optimizer.optimize_multiple_users(["user-1"])
        time.sleep(0.6)

        assert results == []
        assert seeded.get_card("user-1", "obj-1").ease_factor == 2.5

    def test_batch_applies_finished_users(self, seeded):
        provider = FakeProvider({"user-1": history_for("obj-1", [0.5] * 4)})
        optimizer = RetentionOptimizer(seeded, provider, max_workers=2)

        results = optimizer.optimize_multiple_users(["user-1"])

        assert results[0].optimizations_applied == 1
        assert seeded.get_card("user-1", "obj-1").ease_factor == pytest.approx(2.4)

    def test_empty_batch(self, seeded):
        assert RetentionOptimizer(seeded, FakeProvider({})).optimize_multiple_users([]) == []

    def test_struggling_users_first(self, scheduler, now):
        objectives = [LearningObjective(id="obj-1"), LearningObjective(id="obj-2")]
        scheduler.seed_initial("fresh", "lesson-1", objectives, now)
        scheduler.seed_initial("behind", "lesson-1", objectives, now - timedelta(days=10))

        optimizer = RetentionOptimizer(scheduler)
        assert optimizer.sort_users_by_need(["fresh", "behind"], now) == ["behind", "fresh"]


class TestProfile:
    def test_motivation_from_engagement(self):
        engaged = EngagementMetrics(daily_time_spent_seconds=[2400] * 7, streak_days=10)
        assert infer_motivation(engaged) == 1.0
        assert infer_motivation(EngagementMetrics()) == 0.5
        assert infer_motivation(EngagementMetrics(overdue_count=6)) == pytest.approx(0.3)

    def test_profile(self, seeded, now):
        optimizer = RetentionOptimizer(seeded)
        history = history_for("obj-1", [0.95, 0.9, 0.5, 0.85], start=now)
        engagement = EngagementMetrics(session_lengths_seconds=[600, 1200])

        profile = optimizer.build_profile("user-1", history, engagement)

        assert profile.overall_retention_rate == 0.75
        assert profile.optimal_session_length_minutes == 15.0
        assert profile.preferred_difficulty == PreferredDifficulty.EASY
        assert profile.learning_velocity == pytest.approx(1.0)
