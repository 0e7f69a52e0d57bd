"""
Retention Optimizer - Tunes schedules from observed performance.

Two steps, kept apart so the decision logic can be tested without a
scheduler:
1. analyze_user: pure. Classifies each objective's score history, builds a
   learner profile and returns recommendations.
2. apply_optimizations: mutates the scheduler, but only for critical and
   high priority recommendations. Medium and low items are advisory.

Batch mode runs the analysis on a bounded thread pool and applies changes
from the calling thread; a failing or slow user is logged and left untouched.
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol

from loguru import logger

from src.core.mastery import calculate_consistency, calculate_trend, clamp, mean
from src.study.retention_scheduler import RetentionScheduler, ReviewRecord


# =============================================================================
# CONSTANTS
# =============================================================================

MASTERED_RECENT_AVERAGE = 0.9
MASTERED_CONSISTENCY = 0.8
TREND_THRESHOLD = 0.1
TRENDING_CONSISTENCY = 0.6
VOLATILE_CONSISTENCY = 0.4

REMEDIATION_AVERAGE = 0.6
REMEDIATION_MIN_ATTEMPTS = 3
LOW_MOTIVATION = 0.4
RETAINED_SCORE = 0.8

DEFAULT_SESSION_MINUTES = 15.0
DEFAULT_LEARNING_VELOCITY = 0.1


class PatternType(str, Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"
    VOLATILE = "volatile"
    MASTERED = "mastered"


class RecommendationType(str, Enum):
    INTERVAL_ADJUSTMENT = "interval_adjustment"
    DIFFICULTY_CHANGE = "difficulty_change"
    CONTENT_VARIATION = "content_variation"
    SCHEDULE_PAUSE = "schedule_pause"
    REMEDIATION_FOCUS = "remediation_focus"


class RecommendationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def auto_apply(self) -> bool:
        return self in (RecommendationPriority.CRITICAL, RecommendationPriority.HIGH)


class PreferredDifficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class EngagementMetrics:
    """Engagement aggregates for one learner, most recent day first."""

    daily_time_spent_seconds: list[float] = field(default_factory=list)
    session_lengths_seconds: list[float] = field(default_factory=list)
    streak_days: int = 0
    overdue_count: int = 0


class LearnerDataProvider(Protocol):
    """Supplies completed-review history and engagement for a learner."""

    def get_review_history(self, user_id: str) -> list[ReviewRecord]: ...

    def get_engagement(self, user_id: str) -> EngagementMetrics: ...


@dataclass
class PerformancePattern:
    user_id: str
    objective_id: str
    pattern: PatternType
    trend: float  # -1 declining .. 1 improving
    consistency: float  # 0-1
    average_score: float
    recent_score: float
    total_attempts: int
    days_since_first: float


@dataclass
class OptimizationRecommendation:
    type: RecommendationType
    priority: RecommendationPriority
    description: str
    expected_impact: float  # 0-1
    objective_id: str | None = None  # None for learner-wide items
    adjustment_factor: float | None = None
    schedule_delay_days: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class UserLearningProfile:
    user_id: str
    overall_retention_rate: float
    preferred_difficulty: PreferredDifficulty
    optimal_session_length_minutes: float
    learning_velocity: float  # retained reviews per day
    consistency_score: float
    motivation_level: float


@dataclass
class ExpectedImprovements:
    retention_rate: float = 0.0
    time_efficiency: float = 0.0
    mastery_speed: float = 0.0


@dataclass
class OptimizationResult:
    user_id: str
    optimizations_applied: int
    recommendations: list[OptimizationRecommendation]
    patterns: list[PerformancePattern]
    profile: UserLearningProfile
    expected_improvements: ExpectedImprovements


@dataclass
class UserAnalysis:
    """Output of the decide step."""

    user_id: str
    patterns: list[PerformancePattern]
    profile: UserLearningProfile
    recommendations: list[OptimizationRecommendation]
    expected_improvements: ExpectedImprovements


# =============================================================================
# SCORE SERIES ANALYSIS
# =============================================================================


def classify_pattern(scores: list[float]) -> PatternType:
    if len(scores) < 2:
        return PatternType.STABLE

    trend = calculate_trend(scores)
    consistency = calculate_consistency(scores)
    recent_average = mean(scores[-3:])

    if recent_average >= MASTERED_RECENT_AVERAGE and consistency > MASTERED_CONSISTENCY:
        return PatternType.MASTERED
    elif trend > TREND_THRESHOLD and consistency > TRENDING_CONSISTENCY:
        return PatternType.IMPROVING
    elif trend < -TREND_THRESHOLD and consistency > TRENDING_CONSISTENCY:
        return PatternType.DECLINING
    elif consistency < VOLATILE_CONSISTENCY:
        return PatternType.VOLATILE
    return PatternType.STABLE


def infer_motivation(engagement: EngagementMetrics) -> float:
    """
    Motivation 0-1 from engagement.

    Starts at 0.5; daily minutes over the last 7 entries, streak length and
    overdue backlog move it up or down.
    """
    motivation = 0.5

    recent = engagement.daily_time_spent_seconds[:7]
    daily_minutes = mean(recent) / 60 if recent else 0.0
    if daily_minutes > 30:
        motivation += 0.3
    elif daily_minutes > 15:
        motivation += 0.1

    if engagement.streak_days > 7:
        motivation += 0.2
    elif engagement.streak_days > 3:
        motivation += 0.1

    if engagement.overdue_count > 5:
        motivation -= 0.2
    elif engagement.overdue_count > 0:
        motivation -= 0.1

    return clamp(motivation, 0.0, 1.0)


def _ordered(records: list[ReviewRecord]) -> list[ReviewRecord]:
    """Chronological when every record is dated, otherwise input order."""
    if all(record.completed_at is not None for record in records):
        return sorted(records, key=lambda record: record.completed_at)
    return list(records)


# =============================================================================
# RETENTION OPTIMIZER
# =============================================================================


class RetentionOptimizer:
    """
    Pattern-driven schedule tuning for one scheduler.

    Usage:
        optimizer = RetentionOptimizer(scheduler, provider)
        analysis = optimizer.analyze_user("user-1", history, engagement)
        applied = optimizer.apply_optimizations("user-1", analysis.recommendations, history)
    """

    def __init__(
        self,
        scheduler: RetentionScheduler,
        provider: LearnerDataProvider | None = None,
        max_workers: int | None = None,
        user_timeout_seconds: float | None = None,
    ):
        self.scheduler = scheduler
        self.provider = provider
        self.max_workers = max_workers or os.cpu_count() or 1
        self.user_timeout_seconds = user_timeout_seconds

    # =========================================================================
    # DECIDE
    # =========================================================================

    def analyze_patterns(
        self, user_id: str, history: Iterable[ReviewRecord]
    ) -> list[PerformancePattern]:
        """One pattern per objective in the history."""
        by_objective: dict[str, list[ReviewRecord]] = {}
        for record in history:
            by_objective.setdefault(record.objective_id, []).append(record)

        patterns = []
        for objective_id, records in by_objective.items():
            records = _ordered(records)
            scores = [clamp(record.score, 0.0, 1.0) for record in records]
            dates = [record.completed_at for record in records if record.completed_at]
            days_since_first = (
                (max(dates) - min(dates)) / timedelta(days=1) if len(dates) > 1 else 0.0
            )

            patterns.append(
                PerformancePattern(
                    user_id=user_id,
                    objective_id=objective_id,
                    pattern=classify_pattern(scores),
                    trend=calculate_trend(scores),
                    consistency=calculate_consistency(scores),
                    average_score=mean(scores),
                    recent_score=scores[-1],
                    total_attempts=len(scores),
                    days_since_first=days_since_first,
                )
            )

        return patterns

    def build_profile(
        self,
        user_id: str,
        history: list[ReviewRecord],
        engagement: EngagementMetrics,
    ) -> UserLearningProfile:
        scores = [clamp(record.score, 0.0, 1.0) for record in history]

        retention_rate = (
            sum(1 for score in scores if score >= RETAINED_SCORE) / len(scores) if scores else 0.0
        )

        sessions = [length for length in engagement.session_lengths_seconds if length > 0]
        session_minutes = mean(sessions) / 60 if sessions else DEFAULT_SESSION_MINUTES

        return UserLearningProfile(
            user_id=user_id,
            overall_retention_rate=retention_rate,
            preferred_difficulty=self._preferred_difficulty(scores),
            optimal_session_length_minutes=session_minutes,
            learning_velocity=self._learning_velocity(history),
            consistency_score=calculate_consistency(scores),
            motivation_level=infer_motivation(engagement),
        )

    def generate_recommendations(
        self,
        patterns: list[PerformancePattern],
        profile: UserLearningProfile,
    ) -> list[OptimizationRecommendation]:
        recommendations = []

        for pattern in patterns:
            objective_id = pattern.objective_id

            if pattern.pattern == PatternType.DECLINING:
                recommendations.append(
                    OptimizationRecommendation(
                        type=RecommendationType.INTERVAL_ADJUSTMENT,
                        priority=RecommendationPriority.HIGH,
                        description=f"Reduce review interval for {objective_id} due to declining performance",
                        expected_impact=0.3,
                        objective_id=objective_id,
                        adjustment_factor=0.5,
                        metadata={"reason": "declining_performance"},
                    )
                )
            elif pattern.pattern == PatternType.VOLATILE:
                recommendations.append(
                    OptimizationRecommendation(
                        type=RecommendationType.DIFFICULTY_CHANGE,
                        priority=RecommendationPriority.MEDIUM,
                        description=f"Adjust difficulty for {objective_id} due to inconsistent performance",
                        expected_impact=0.2,
                        objective_id=objective_id,
                        adjustment_factor=-0.2,
                        metadata={"reason": "volatile_performance"},
                    )
                )
            elif pattern.pattern == PatternType.MASTERED:
                recommendations.append(
                    OptimizationRecommendation(
                        type=RecommendationType.INTERVAL_ADJUSTMENT,
                        priority=RecommendationPriority.LOW,
                        description=f"Increase review interval for {objective_id} due to mastery",
                        expected_impact=0.1,
                        objective_id=objective_id,
                        adjustment_factor=1.5,
                        metadata={"reason": "mastered"},
                    )
                )

            # Independent of the pattern
            if (
                pattern.average_score < REMEDIATION_AVERAGE
                and pattern.total_attempts >= REMEDIATION_MIN_ATTEMPTS
            ):
                recommendations.append(
                    OptimizationRecommendation(
                        type=RecommendationType.REMEDIATION_FOCUS,
                        priority=RecommendationPriority.CRITICAL,
                        description=f"Focus on remediation for {objective_id} due to poor performance",
                        expected_impact=0.4,
                        objective_id=objective_id,
                        schedule_delay_days=1,
                        metadata={"reason": "poor_performance", "target_score": 0.8},
                    )
                )

        if profile.motivation_level < LOW_MOTIVATION:
            recommendations.append(
                OptimizationRecommendation(
                    type=RecommendationType.SCHEDULE_PAUSE,
                    priority=RecommendationPriority.MEDIUM,
                    description="Consider reducing schedule intensity due to low motivation",
                    expected_impact=0.15,
                    adjustment_factor=0.7,
                    metadata={"reason": "low_motivation"},
                )
            )

        return recommendations

    @staticmethod
    def expected_improvements(
        recommendations: list[OptimizationRecommendation],
    ) -> ExpectedImprovements:
        total_impact = sum(rec.expected_impact for rec in recommendations)
        return ExpectedImprovements(
            retention_rate=min(0.3, total_impact * 0.5),
            time_efficiency=min(0.2, total_impact * 0.3),
            mastery_speed=min(0.25, total_impact * 0.4),
        )

    def analyze_user(
        self,
        user_id: str,
        history: list[ReviewRecord],
        engagement: EngagementMetrics | None = None,
    ) -> UserAnalysis:
        """
        Decide step. Reads nothing but its arguments and mutates nothing.

        Args:
            user_id: Learner
            history: Completed reviews with scores 0-1
            engagement: Engagement aggregates (neutral defaults when omitted)

        Returns:
            UserAnalysis with patterns, profile and recommendations
        """
        history = list(history)
        engagement = engagement or EngagementMetrics()

        patterns = self.analyze_patterns(user_id, history)
        profile = self.build_profile(user_id, history, engagement)
        recommendations = self.generate_recommendations(patterns, profile)

        return UserAnalysis(
            user_id=user_id,
            patterns=patterns,
            profile=profile,
            recommendations=recommendations,
            expected_improvements=self.expected_improvements(recommendations),
        )

    # =========================================================================
    # APPLY
    # =========================================================================

    def apply_optimizations(
        self,
        user_id: str,
        recommendations: list[OptimizationRecommendation],
        history: list[ReviewRecord],
    ) -> int:
        """
        Apply critical and high priority recommendations through the
        scheduler's optimize(). Medium and low items never touch the schedule.

        Returns:
            Number of cards whose schedule changed
        """
        actionable = [rec for rec in recommendations if rec.priority.auto_apply]
        if not actionable:
            return 0

        history = list(history)
        objectives = {rec.objective_id for rec in actionable if rec.objective_id}
        relevant = [record for record in history if record.objective_id in objectives]
        if not objectives:
            relevant = history

        adjusted = self.scheduler.optimize(user_id, relevant)
        logger.debug(
            f"Applied {len(actionable)} recommendations for {user_id} "
            f"({adjusted} cards adjusted, {len(recommendations) - len(actionable)} advisory)"
        )
        return adjusted

    def optimize_user_retention(
        self,
        user_id: str,
        history: list[ReviewRecord] | None = None,
        engagement: EngagementMetrics | None = None,
    ) -> OptimizationResult:
        """
        Decide and apply for one learner.

        Missing inputs are fetched from the data provider.

        Raises:
            ValueError: If inputs are missing and no provider is configured
        """
        history, analysis = self._decide(user_id, history, engagement)
        return self._apply(user_id, history, analysis)

    def _decide(
        self,
        user_id: str,
        history: list[ReviewRecord] | None = None,
        engagement: EngagementMetrics | None = None,
    ) -> tuple[list[ReviewRecord], UserAnalysis]:
        if history is None or engagement is None:
            if self.provider is None:
                raise ValueError(f"No learner data for {user_id} and no provider configured")
            if history is None:
                history = self.provider.get_review_history(user_id)
            if engagement is None:
                engagement = self.provider.get_engagement(user_id)

        history = list(history)
        return history, self.analyze_user(user_id, history, engagement)

    def _apply(
        self, user_id: str, history: list[ReviewRecord], analysis: UserAnalysis
    ) -> OptimizationResult:
        applied = self.apply_optimizations(user_id, analysis.recommendations, history)

        return OptimizationResult(
            user_id=user_id,
            optimizations_applied=applied,
            recommendations=analysis.recommendations,
            patterns=analysis.patterns,
            profile=analysis.profile,
            expected_improvements=analysis.expected_improvements,
        )

    # =========================================================================
    # BATCH
    # =========================================================================

    def optimize_multiple_users(
        self,
        user_ids: list[str],
        prioritize_struggling_users: bool = False,
        as_of: datetime | None = None,
    ) -> list[OptimizationResult]:
        """
        Optimize many learners in parallel.

        Only the decide step runs on the pool. Schedules are changed here,
        in the calling thread, for learners whose analysis finished in time;
        a learner whose run raises or exceeds the per-user timeout is logged
        and left untouched. Results come back in processing order.
        """
        ordered = list(user_ids)
        if prioritize_struggling_users:
            ordered = self.sort_users_by_need(ordered, as_of)

        results: list[OptimizationResult] = []
        if not ordered:
            return results

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(ordered))) as executor:
            futures = [(user_id, executor.submit(self._decide, user_id)) for user_id in ordered]

            for user_id, future in futures:
                try:
                    history, analysis = future.result(timeout=self.user_timeout_seconds)
                except FutureTimeoutError:
                    future.cancel()
                    logger.error(
                        f"Timed out optimizing retention for {user_id} "
                        f"after {self.user_timeout_seconds}s"
                    )
                    continue
                except Exception as e:
                    logger.error(f"Failed to optimize retention for {user_id}: {e}")
                    continue

                try:
                    results.append(self._apply(user_id, history, analysis))
                except Exception as e:
                    logger.error(f"Failed to apply optimizations for {user_id}: {e}")

        logger.info(f"Optimized retention for {len(results)}/{len(ordered)} users")
        return results

    def sort_users_by_need(self, user_ids: list[str], as_of: datetime | None = None) -> list[str]:
        """Most urgent first: overdue backlog, low retention, no recent activity."""
        need: dict[str, int] = {}
        for user_id in user_ids:
            metrics = self.scheduler.metrics(user_id, as_of)
            score = metrics.overdue * 2
            if metrics.average_retention_rate < 0.6:
                score += 10
            if metrics.streak_days == 0:
                score += 5
            need[user_id] = score

        return sorted(user_ids, key=lambda user_id: need[user_id], reverse=True)

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _preferred_difficulty(scores: list[float]) -> PreferredDifficulty:
        """Score bands stand in for difficulty: >= 0.9 easy, >= 0.7 medium, else hard."""
        easy = mean([s for s in scores if s >= 0.9])
        medium = mean([s for s in scores if 0.7 <= s < 0.9])
        hard = mean([s for s in scores if s < 0.7])

        if hard > medium and hard > easy:
            return PreferredDifficulty.HARD
        elif easy > medium:
            return PreferredDifficulty.EASY
        return PreferredDifficulty.MEDIUM

    @staticmethod
    def _learning_velocity(history: list[ReviewRecord]) -> float:
        retained = sorted(
            record.completed_at
            for record in history
            if record.completed_at is not None and record.score >= RETAINED_SCORE
        )
        if len(retained) < 2:
            return DEFAULT_LEARNING_VELOCITY

        span_days = max(1.0, (retained[-1] - retained[0]) / timedelta(days=1))
        return len(retained) / span_days


def create_retention_optimizer(
    scheduler: RetentionScheduler,
    provider: LearnerDataProvider | None = None,
    max_workers: int | None = None,
    user_timeout_seconds: float | None = None,
) -> RetentionOptimizer:
    return RetentionOptimizer(scheduler, provider, max_workers, user_timeout_seconds)
