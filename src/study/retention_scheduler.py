"""
Retention Scheduler - Decides when each objective is re-tested.

Owns a CardStore of ReviewCards keyed by (user_id, objective_id) and turns
card state into RetentionScheduleEntry records:
- seed_initial: first retention check after a lesson is completed
- record_outcome: apply a retention-check result to the card
- due_items: what a learner should review now
- optimize: nudge ease factors from score history
- metrics: dashboard counters for one learner
- escalate_overdue: re-queue long-overdue checks as remediation

Writers for the same key are serialised by a per-key lock; different keys
never contend.
"""

from __future__ import annotations

import math
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum

from loguru import logger

from src.core.mastery import clamp, mean, population_variance
from src.core.models import (
    LearningObjective,
    ObjectiveCategory,
    is_valid_fraction,
    validate_objective,
)
from src.study.retention_engine import (
    MAX_EASE_FACTOR,
    MIN_EASE_FACTOR,
    LearningContext,
    ReviewCard,
    SchedulingOptions,
    SpacedRepetitionAlgorithm,
    as_utc,
    utcnow,
)


# =============================================================================
# CONSTANTS
# =============================================================================

BASE_PRIORITY = 3
MIN_PRIORITY = 1
MAX_PRIORITY = 5
STRUGGLING_SUCCESS_RATE = 0.7

REMEDIATION_SCORE = 0.6
REINFORCEMENT_SCORE = 0.9
REINFORCEMENT_MIN_SUCCESSES = 3

MINUTES_PER_REVIEW = 3
STREAK_WINDOW_DAYS = 7

EASE_STEP = 0.1
OPTIMIZE_HIGH_AVERAGE = 0.9
OPTIMIZE_LOW_AVERAGE = 0.7
OPTIMIZE_MAX_VARIANCE = 0.1

DEFAULT_DURATION_MINUTES = 5
DURATION_BY_CATEGORY: dict[ObjectiveCategory, int] = {
    ObjectiveCategory.KNOWLEDGE: 3,
    ObjectiveCategory.COMPREHENSION: 4,
    ObjectiveCategory.APPLICATION: 6,
    ObjectiveCategory.ANALYSIS: 8,
    ObjectiveCategory.SYNTHESIS: 8,
    ObjectiveCategory.EVALUATION: 8,
}
PRIORITY_CATEGORIES = {ObjectiveCategory.APPLICATION, ObjectiveCategory.ANALYSIS}

CardKey = tuple[str, str]


class ScheduleType(str, Enum):
    INITIAL = "initial"
    REVIEW = "review"
    REMEDIATION = "remediation"
    REINFORCEMENT = "reinforcement"


class AssessmentType(str, Enum):
    DIAGNOSTIC = "diagnostic"
    FORMATIVE = "formative"
    SUMMATIVE = "summative"
    RETENTION_CHECK = "retention_check"


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class RetentionScheduleEntry:
    """A scheduled retention activity. Derived from a card, never stored."""

    user_id: str
    objective_id: str
    schedule_type: ScheduleType
    due_date: datetime
    priority: int  # 1-5
    estimated_duration_minutes: int
    assessment_type: AssessmentType = AssessmentType.RETENTION_CHECK
    lesson_id: str | None = None
    previous_scores: list[float] = field(default_factory=list)
    difficulty_adjustment: float = 0.0


@dataclass
class ReviewRecord:
    """One completed review of an objective."""

    objective_id: str
    score: float  # 0-1
    completed_at: datetime | None = None


@dataclass
class RetentionMetrics:
    """Retention dashboard counters for one learner."""

    total_scheduled: int = 0
    completed_today: int = 0
    due_today: int = 0
    overdue: int = 0
    upcoming_week: int = 0
    average_retention_rate: float = 0.0
    streak_days: int = 0
    total_review_time_minutes: int = 0


# =============================================================================
# CARD STORE
# =============================================================================


class CardStore:
    """
    In-memory card table with per-key write locks.

    The table lock only guards the dict structure; long read-modify-write
    sequences hold the key lock returned by `lock_for`.
    """

    def __init__(self, cards: Iterable[ReviewCard] | None = None):
        self._cards: dict[CardKey, ReviewCard] = {}
        self._locks: dict[CardKey, threading.Lock] = {}
        self._table_lock = threading.Lock()
        if cards:
            self.replace_all(cards)

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._cards)

    def lock_for(self, key: CardKey) -> threading.Lock:
        with self._table_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def get(self, key: CardKey) -> ReviewCard | None:
        with self._table_lock:
            return self._cards.get(key)

    def put(self, card: ReviewCard) -> None:
        with self._table_lock:
            self._cards[card.key] = card

    def add_if_absent(self, card: ReviewCard) -> ReviewCard:
        """Insert card unless its key exists; return the stored card."""
        with self._table_lock:
            return self._cards.setdefault(card.key, card)

    def for_user(self, user_id: str) -> list[ReviewCard]:
        with self._table_lock:
            return [card for (owner, _), card in self._cards.items() if owner == user_id]

    def all(self) -> list[ReviewCard]:
        with self._table_lock:
            return list(self._cards.values())

    def replace_all(self, cards: Iterable[ReviewCard]) -> None:
        with self._table_lock:
            self._cards = {card.key: card for card in cards}


# =============================================================================
# RETENTION SCHEDULER
# =============================================================================


class RetentionScheduler:
    """
    Schedules retention checks for learners.

    Usage:
        scheduler = create_contextual_scheduler("beginner")
        scheduler.seed_initial("user-1", "lesson-1", lesson.objectives)
        entry = scheduler.record_outcome("user-1", "obj-1", 0.85)
        queue = scheduler.due_items("user-1")
    """

    def __init__(
        self,
        options: SchedulingOptions | None = None,
        store: CardStore | None = None,
    ):
        self.options = options or SchedulingOptions()
        self.algorithm = SpacedRepetitionAlgorithm(self.options)
        self.store = store if store is not None else CardStore()

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    def seed_initial(
        self,
        user_id: str,
        lesson_id: str,
        objectives: list[LearningObjective],
        now: datetime | None = None,
    ) -> list[RetentionScheduleEntry]:
        """
        Schedule the first retention check for each objective of a completed lesson.

        Existing cards are reused, never reset.

        Raises:
            ValueError: If an objective is missing or has no id
        """
        now = as_utc(now) if now else utcnow()
        objectives = [validate_objective(objective) for objective in objectives]

        entries = []
        for objective in objectives:
            fresh = self.algorithm.create_card(
                user_id, objective.id, now=now, category=objective.category
            )
            card = self.store.add_if_absent(fresh)

            entries.append(
                RetentionScheduleEntry(
                    user_id=user_id,
                    objective_id=objective.id,
                    lesson_id=lesson_id,
                    schedule_type=ScheduleType.INITIAL,
                    due_date=card.due_date,
                    priority=self.calculate_priority(card, now, objective.category),
                    estimated_duration_minutes=estimate_duration(objective.category),
                )
            )

        logger.debug(f"Seeded {len(entries)} retention checks for {user_id} ({lesson_id})")
        return entries

    def record_outcome(
        self,
        user_id: str,
        objective_id: str,
        score: float,
        response_time_seconds: float | None = None,
        now: datetime | None = None,
    ) -> RetentionScheduleEntry | None:
        """
        Apply a retention-check result to the card.

        Args:
            user_id: Learner
            objective_id: Objective that was checked
            score: Result as a fraction 0-1
            response_time_seconds: Optional answer time
            now: Completion time

        Returns:
            The next scheduled entry, or None when the score is invalid or no
            card exists for the key
        """
        now = as_utc(now) if now else utcnow()

        if not is_valid_fraction(score):
            logger.warning(f"Rejected score {score!r} for {user_id}/{objective_id}")
            return None

        key = (user_id, objective_id)
        with self.store.lock_for(key):
            card = self.store.get(key)
            if card is None:
                logger.warning(f"No review card for {user_id}/{objective_id}; seed it first")
                return None

            updated = self.algorithm.next_state(card, score, response_time_seconds, now)
            self.store.put(updated)

        if score < REMEDIATION_SCORE:
            schedule_type = ScheduleType.REMEDIATION
        elif score > REINFORCEMENT_SCORE and updated.successful_reviews >= REINFORCEMENT_MIN_SUCCESSES:
            schedule_type = ScheduleType.REINFORCEMENT
        else:
            schedule_type = ScheduleType.REVIEW

        previous = [card.last_score] if card.last_score is not None else []
        return RetentionScheduleEntry(
            user_id=user_id,
            objective_id=objective_id,
            schedule_type=schedule_type,
            due_date=updated.due_date,
            priority=self.calculate_priority(updated, now),
            estimated_duration_minutes=estimate_duration(updated.category),
            previous_scores=[*previous, score],
            difficulty_adjustment=difficulty_adjustment(updated),
        )

    def due_items(
        self,
        user_id: str,
        as_of: datetime | None = None,
        include_overdue: bool = True,
    ) -> list[RetentionScheduleEntry]:
        """
        Retention checks due at or before `as_of`.

        Items more than a day late are overdue: they become remediation with
        one extra priority point, or are dropped when include_overdue is False.
        Sorted by priority (high first), then due date (oldest first).
        """
        as_of = as_utc(as_of) if as_of else utcnow()
        overdue_cutoff = as_of - timedelta(days=1)

        entries = []
        for card in self.store.for_user(user_id):
            if card.due_date > as_of:
                continue

            is_overdue = card.due_date < overdue_cutoff
            if is_overdue and not include_overdue:
                continue

            priority = self.calculate_priority(card, as_of)
            entries.append(
                RetentionScheduleEntry(
                    user_id=user_id,
                    objective_id=card.objective_id,
                    schedule_type=ScheduleType.REMEDIATION if is_overdue else ScheduleType.REVIEW,
                    due_date=card.due_date,
                    priority=min(MAX_PRIORITY, priority + 1) if is_overdue else priority,
                    estimated_duration_minutes=estimate_duration(card.category),
                    previous_scores=[card.last_score] if card.last_score is not None else [],
                    difficulty_adjustment=difficulty_adjustment(card),
                )
            )

        entries.sort(key=lambda entry: (-entry.priority, entry.due_date))
        return entries

    def escalate_overdue(
        self,
        user_id: str,
        as_of: datetime | None = None,
        max_age_days: float = 7,
    ) -> list[RetentionScheduleEntry]:
        """
        Re-queue checks overdue by more than max_age_days as remediation due now.

        The card due date moves to `as_of` so the check shows up immediately.
        """
        as_of = as_utc(as_of) if as_of else utcnow()
        cutoff = as_of - timedelta(days=max_age_days)

        escalated = []
        for stale in self.store.for_user(user_id):
            if stale.due_date >= cutoff:
                continue

            with self.store.lock_for(stale.key):
                card = self.store.get(stale.key)
                if card is None or card.due_date >= cutoff:
                    continue
                priority = self.calculate_priority(card, as_of)
                self.store.put(replace(card, due_date=as_of))

            escalated.append(
                RetentionScheduleEntry(
                    user_id=user_id,
                    objective_id=card.objective_id,
                    schedule_type=ScheduleType.REMEDIATION,
                    due_date=as_of,
                    priority=min(MAX_PRIORITY, priority + 1),
                    estimated_duration_minutes=estimate_duration(card.category),
                    previous_scores=[card.last_score] if card.last_score is not None else [],
                    difficulty_adjustment=difficulty_adjustment(card),
                )
            )

        if escalated:
            logger.info(f"Escalated {len(escalated)} overdue retention checks for {user_id}")
        return escalated

    # =========================================================================
    # OPTIMIZATION
    # =========================================================================

    def optimize(self, user_id: str, history: Iterable[ReviewRecord]) -> int:
        """
        Nudge ease factors from a learner's score history.

        High and consistent scores raise ease by 0.1; low or erratic scores
        lower it by 0.1. Objectives without a card or with fewer than two
        scores are skipped. Re-applying the same score sequence to a card is
        a no-op.

        Returns:
            Number of cards whose ease factor changed
        """
        by_objective: dict[str, list[float]] = {}
        for record in history:
            by_objective.setdefault(record.objective_id, []).append(record.score)

        adjusted = 0
        for objective_id, scores in by_objective.items():
            if len(scores) < 2:
                continue

            key = (user_id, objective_id)
            with self.store.lock_for(key):
                card = self.store.get(key)
                if card is None or card.optimized_scores == scores:
                    continue

                average = mean(scores)
                consistent = population_variance(scores) < OPTIMIZE_MAX_VARIANCE

                step = 0.0
                if average > OPTIMIZE_HIGH_AVERAGE and consistent:
                    step = EASE_STEP
                elif average < OPTIMIZE_LOW_AVERAGE or not consistent:
                    step = -EASE_STEP

                ease = clamp(card.ease_factor + step, MIN_EASE_FACTOR, MAX_EASE_FACTOR)
                self.store.put(replace(card, ease_factor=ease, optimized_scores=scores))
                if ease != card.ease_factor:
                    adjusted += 1

        if adjusted:
            logger.info(f"Adjusted ease factor on {adjusted} cards for {user_id}")
        return adjusted

    # =========================================================================
    # METRICS
    # =========================================================================

    def metrics(self, user_id: str, as_of: datetime | None = None) -> RetentionMetrics:
        """Counters for one learner, using the calendar day of `as_of`."""
        as_of = as_utc(as_of) if as_of else utcnow()
        cards = self.store.for_user(user_id)

        today_start = as_of.replace(hour=0, minute=0, second=0, microsecond=0)
        today_end = today_start + timedelta(days=1)
        week_end = today_end + timedelta(days=7)
        streak_start = as_of - timedelta(days=STREAK_WINDOW_DAYS)

        total_reviews = sum(card.total_reviews for card in cards)
        successful = sum(card.successful_reviews for card in cards)
        recently_active = sum(
            1 for card in cards if card.last_review_date and card.last_review_date > streak_start
        )

        return RetentionMetrics(
            total_scheduled=len(cards),
            completed_today=sum(
                1
                for card in cards
                if card.last_review_date and today_start <= card.last_review_date < today_end
            ),
            due_today=sum(1 for card in cards if today_start <= card.due_date < today_end),
            overdue=sum(1 for card in cards if card.due_date < today_start),
            upcoming_week=sum(1 for card in cards if today_end <= card.due_date < week_end),
            average_retention_rate=successful / total_reviews if total_reviews else 0.0,
            streak_days=min(STREAK_WINDOW_DAYS, recently_active),
            total_review_time_minutes=total_reviews * MINUTES_PER_REVIEW,
        )

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def get_card(self, user_id: str, objective_id: str) -> ReviewCard | None:
        card = self.store.get((user_id, objective_id))
        return replace(card) if card else None

    def export_cards(self) -> list[ReviewCard]:
        """Copies of every card, for the caller to persist."""
        return [replace(card) for card in self.store.all()]

    def import_cards(self, cards: Iterable[ReviewCard]) -> None:
        """Replace the whole card table with copies of `cards`."""
        self.store.replace_all(replace(card) for card in cards)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def calculate_priority(
        self,
        card: ReviewCard,
        now: datetime | None = None,
        category: ObjectiveCategory | None = None,
    ) -> int:
        """
        Priority 1-5: base 3, up to +2 when overdue, +1 when struggling,
        +1 for application and analysis objectives.
        """
        now = as_utc(now) if now else utcnow()
        category = category or card.category
        priority = BASE_PRIORITY

        days_past_due = math.floor((now - card.due_date) / timedelta(days=1))
        if days_past_due > 0:
            priority += min(2, days_past_due)

        success_rate = card.success_rate
        if success_rate is not None and success_rate < STRUGGLING_SUCCESS_RATE:
            priority += 1

        if category in PRIORITY_CATEGORIES:
            priority += 1

        return int(clamp(priority, MIN_PRIORITY, MAX_PRIORITY))


def estimate_duration(category: ObjectiveCategory | None) -> int:
    """Expected minutes for a retention check of this category."""
    if category is None:
        return DEFAULT_DURATION_MINUTES
    return DURATION_BY_CATEGORY.get(category, DEFAULT_DURATION_MINUTES)


def difficulty_adjustment(card: ReviewCard) -> float:
    """Suggested difficulty shift for the next check from the success rate."""
    success_rate = card.success_rate
    if success_rate is None:
        return 0.0
    if success_rate > 0.9:
        return 0.2
    elif success_rate < 0.6:
        return -0.3
    elif success_rate < 0.8:
        return -0.1
    return 0.0


# =============================================================================
# FACTORIES
# =============================================================================


def create_retention_scheduler(
    options: SchedulingOptions | None = None,
    store: CardStore | None = None,
) -> RetentionScheduler:
    return RetentionScheduler(options, store)


def create_contextual_scheduler(
    context: LearningContext | str,
    options: SchedulingOptions | None = None,
    store: CardStore | None = None,
) -> RetentionScheduler:
    """Scheduler using the beginner/intermediate/advanced presets."""
    return RetentionScheduler(SchedulingOptions.for_context(context, options), store)
