"""
Retention Engine - Spaced Repetition for Learning Objectives.

One ReviewCard per (user, objective). Each retention check moves the card
through an SM-2 style transition:
1. Success (score >= performance threshold) grows the interval
2. Failure resets repetitions and shrinks the interval to 20%
3. Ease factor follows answer quality, bounded to [1.3, 2.5]
4. Fast answers nudge quality up, slow answers nudge it down

The transition is pure: it returns a new card and never touches a store.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, model_validator

from src.core.mastery import clamp, round_half_away
from src.core.models import ObjectiveCategory


# =============================================================================
# CONSTANTS
# =============================================================================

MIN_EASE_FACTOR = 1.3
MAX_EASE_FACTOR = 2.5
SECOND_INTERVAL_DAYS = 6
FAILURE_INTERVAL_FACTOR = 0.2

FAST_RESPONSE_SECONDS = 10  # quality +0.5
NORMAL_RESPONSE_SECONDS = 30  # quality unchanged; slower is -0.5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat a naive datetime as UTC; aware datetimes are returned unchanged."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class LearningContext(str, Enum):
    """Learner level used to pick scheduling presets."""

    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class SchedulingOptions(BaseModel):
    """Tunable parameters of the spaced-repetition algorithm."""

    model_config = {"frozen": True}

    min_interval: float = Field(default=1, gt=0, description="Minimum interval in days")
    max_interval: float = Field(default=365, gt=0, description="Maximum interval in days")
    initial_interval: float = Field(default=1, gt=0, description="First interval in days")
    ease_factor: float = Field(
        default=2.5, ge=MIN_EASE_FACTOR, le=MAX_EASE_FACTOR, description="Starting ease"
    )
    interval_modifier: float = Field(default=1.0, gt=0)
    performance_threshold: float = Field(
        default=0.8, ge=0, le=1, description="Score counted as a successful review"
    )
    urgency_boost: float = Field(default=1.5, gt=0)

    @model_validator(mode="after")
    def _check_interval_bounds(self) -> SchedulingOptions:
        if self.min_interval > self.max_interval:
            raise ValueError(
                f"min_interval ({self.min_interval}) exceeds max_interval ({self.max_interval})"
            )
        return self

    @classmethod
    def for_context(
        cls,
        context: LearningContext | str,
        base: SchedulingOptions | None = None,
    ) -> SchedulingOptions:
        """
        Preset options for a learner level.

        Preset fields (initial interval, threshold, urgency) replace the
        matching fields of `base`; every other field is kept.
        """
        context = LearningContext(context)
        values = base.model_dump() if base else {}
        values.update(CONTEXT_PRESETS[context])
        return cls(**values)


CONTEXT_PRESETS: dict[LearningContext, dict[str, float]] = {
    LearningContext.BEGINNER: {
        "initial_interval": 1,
        "performance_threshold": 0.7,
        "urgency_boost": 2.0,
    },
    LearningContext.INTERMEDIATE: {
        "initial_interval": 2,
        "performance_threshold": 0.8,
        "urgency_boost": 1.5,
    },
    LearningContext.ADVANCED: {
        "initial_interval": 3,
        "performance_threshold": 0.85,
        "urgency_boost": 1.2,
    },
}


# =============================================================================
# REVIEW CARD
# =============================================================================


@dataclass
class ReviewCard:
    """Spaced-repetition state for one user on one objective."""

    user_id: str
    objective_id: str
    interval_days: float
    repetition_count: int
    ease_factor: float
    due_date: datetime
    last_review_date: datetime | None = None
    last_score: float | None = None  # 0-1
    total_reviews: int = 0
    successful_reviews: int = 0
    category: ObjectiveCategory | None = None
    # Score sequence last applied by RetentionScheduler.optimize
    optimized_scores: list[float] | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.user_id, self.objective_id)

    @property
    def success_rate(self) -> float | None:
        """Fraction of successful reviews, None before the first review."""
        if self.total_reviews == 0:
            return None
        return self.successful_reviews / self.total_reviews

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form with ISO-8601 timestamps."""
        data = asdict(self)
        data["due_date"] = self.due_date.isoformat()
        data["last_review_date"] = (
            self.last_review_date.isoformat() if self.last_review_date else None
        )
        data["category"] = self.category.value if self.category else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewCard:
        last_review = data.get("last_review_date")
        category = data.get("category")
        return cls(
            user_id=data["user_id"],
            objective_id=data["objective_id"],
            interval_days=data["interval_days"],
            repetition_count=data["repetition_count"],
            ease_factor=data["ease_factor"],
            due_date=as_utc(datetime.fromisoformat(data["due_date"])),
            last_review_date=(
                as_utc(datetime.fromisoformat(last_review)) if last_review else None
            ),
            last_score=data.get("last_score"),
            total_reviews=data.get("total_reviews", 0),
            successful_reviews=data.get("successful_reviews", 0),
            category=ObjectiveCategory(category) if category else None,
            optimized_scores=data.get("optimized_scores"),
        )


# =============================================================================
# SPACED REPETITION ALGORITHM
# =============================================================================


class SpacedRepetitionAlgorithm:
    """
    SM-2 variant operating on 0-1 scores.

    Usage:
        algorithm = SpacedRepetitionAlgorithm(SchedulingOptions())
        card = algorithm.create_card("user-1", "obj-1", now)
        card = algorithm.next_state(card, 0.9, response_time_seconds=8, now=now)
    """

    def __init__(self, options: SchedulingOptions | None = None):
        self.options = options or SchedulingOptions()

    def create_card(
        self,
        user_id: str,
        objective_id: str,
        now: datetime | None = None,
        category: ObjectiveCategory | None = None,
    ) -> ReviewCard:
        now = as_utc(now) if now else utcnow()
        interval = self._bound_interval(self.options.initial_interval)
        return ReviewCard(
            user_id=user_id,
            objective_id=objective_id,
            interval_days=interval,
            repetition_count=0,
            ease_factor=self.options.ease_factor,
            due_date=now + timedelta(days=interval),
            category=category,
        )

    def next_state(
        self,
        card: ReviewCard,
        score: float,
        response_time_seconds: float | None = None,
        now: datetime | None = None,
    ) -> ReviewCard:
        """
        Compute the card state after one retention check.

        Args:
            card: Current card (not modified)
            score: Result as a fraction 0-1 (clamped)
            response_time_seconds: Optional answer time, adjusts quality
            now: Review time

        Returns:
            New ReviewCard
        """
        now = as_utc(now) if now else utcnow()
        score = clamp(score, 0.0, 1.0)
        success = score >= self.options.performance_threshold

        if success:
            if card.repetition_count == 0:
                interval = self.options.initial_interval
            elif card.repetition_count == 1:
                interval = SECOND_INTERVAL_DAYS
            else:
                # Growth uses the ease from before this review
                interval = round_half_away(card.interval_days * card.ease_factor)
            repetitions = card.repetition_count + 1
        else:
            interval = max(1, round_half_away(card.interval_days * FAILURE_INTERVAL_FACTOR))
            repetitions = 0

        quality = self.quality(score, response_time_seconds)
        ease = self.next_ease(card.ease_factor, quality)
        interval = self._bound_interval(interval * self.options.interval_modifier)

        logger.debug(
            f"Card {card.user_id}/{card.objective_id}: score={score:.2f} q={quality:.1f} "
            f"interval {card.interval_days} -> {interval}, ease {card.ease_factor:.2f} -> {ease:.2f}"
        )

        return replace(
            card,
            interval_days=interval,
            repetition_count=repetitions,
            ease_factor=ease,
            due_date=now + timedelta(days=interval),
            last_review_date=now,
            last_score=score,
            total_reviews=card.total_reviews + 1,
            successful_reviews=card.successful_reviews + (1 if success else 0),
        )

    @staticmethod
    def quality(score: float, response_time_seconds: float | None = None) -> float:
        """Answer quality 0-5 from score and optional response time."""
        quality = float(math.floor(clamp(score, 0.0, 1.0) * 5))

        if response_time_seconds is not None:
            if response_time_seconds < FAST_RESPONSE_SECONDS:
                quality += 0.5
            elif response_time_seconds >= NORMAL_RESPONSE_SECONDS:
                quality -= 0.5

        return clamp(quality, 0.0, 5.0)

    @staticmethod
    def next_ease(ease_factor: float, quality: float) -> float:
        miss = 5 - quality
        ease = ease_factor + 0.1 - miss * (0.08 + miss * 0.02)
        return clamp(ease, MIN_EASE_FACTOR, MAX_EASE_FACTOR)

    def _bound_interval(self, interval: float) -> float:
        return clamp(float(interval), self.options.min_interval, self.options.max_interval)
