"""
Core Mastery Module.

Pure scoring primitives shared by the study and adaptive modules.

Design:
- MASTERY_THRESHOLDS / PERFORMANCE_LEVELS: fixed threshold tables
- PenaltyPolicy: hint and time-overrun penalty constants
- calculate_*: stateless score and status functions
- ExerciseScoring: per exercise type scorers
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, Field


# ============================================================================
# Numeric helpers
# ============================================================================


def clamp(value: float, low: float, high: float) -> float:
    """Clamp value into [low, high]. NaN collapses to low."""
    if value != value:  # NaN
        return low
    return max(low, min(high, value))


def round_half_away(value: float, digits: int = 0) -> float:
    """
    Round half away from zero.

    Python's round() uses banker's rounding (round(2.5) == 2); intervals and
    percentages here use the conventional 2.5 -> 3 behaviour.
    """
    quantum = Decimal(1).scaleb(-digits)
    rounded = Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    return float(rounded)


def mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def population_variance(values: list[float]) -> float:
    if len(values) < 2:
        return 0.0
    avg = mean(values)
    return sum((v - avg) ** 2 for v in values) / len(values)


def linear_slope(values: list[float]) -> float:
    """Least-squares slope of values against their index. 0 for n < 2."""
    n = len(values)
    if n < 2:
        return 0.0
    sum_x = n * (n - 1) / 2
    sum_y = sum(values)
    sum_xy = sum(i * v for i, v in enumerate(values))
    sum_xx = sum(i * i for i in range(n))
    denominator = n * sum_xx - sum_x * sum_x
    if denominator == 0:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denominator


MAX_MEANINGFUL_STD_DEV = 0.5


def calculate_trend(scores: list[float]) -> float:
    """Regression slope x2 over 0-1 scores, clamped to [-1, 1]. 0 with fewer than two."""
    if len(scores) < 2:
        return 0.0
    return clamp(linear_slope(scores) * 2, -1.0, 1.0)


def calculate_consistency(scores: list[float]) -> float:
    """1 - stdev/0.5 over 0-1 scores, floored at 0. 1 with fewer than two."""
    if len(scores) < 2:
        return 1.0
    std_dev = math.sqrt(population_variance(scores))
    return clamp(1 - std_dev / MAX_MEANINGFUL_STD_DEV, 0.0, 1.0)


# ============================================================================
# Thresholds
# ============================================================================


class MasteryType(str, Enum):
    """What a score is being judged against."""

    LESSON = "lesson"
    UNIT = "unit"
    OBJECTIVE = "objective"
    RETENTION = "retention"


MASTERY_THRESHOLDS: dict[MasteryType, float] = {
    MasteryType.LESSON: 0.8,  # lesson progression
    MasteryType.UNIT: 0.9,  # unit completion
    MasteryType.OBJECTIVE: 0.8,
    MasteryType.RETENTION: 0.75,  # retention verification
}

ENRICHMENT_THRESHOLD = 0.9
REMEDIATION_THRESHOLD = 0.6


class PerformanceLevel(str, Enum):
    """
    Performance band for a single score.

    advanced >= 95%, proficient >= 80%, approaching >= 60%, otherwise none.
    """

    NONE = "none"
    APPROACHING = "approaching"
    PROFICIENT = "proficient"
    ADVANCED = "advanced"

    @classmethod
    def from_fraction(cls, fraction: float) -> PerformanceLevel:
        if fraction >= PERFORMANCE_LEVELS[cls.ADVANCED]:
            return cls.ADVANCED
        elif fraction >= PERFORMANCE_LEVELS[cls.PROFICIENT]:
            return cls.PROFICIENT
        elif fraction >= PERFORMANCE_LEVELS[cls.APPROACHING]:
            return cls.APPROACHING
        return cls.NONE

    @property
    def color(self) -> str:
        """Rich color for CLI display."""
        return {
            PerformanceLevel.NONE: "red",
            PerformanceLevel.APPROACHING: "yellow",
            PerformanceLevel.PROFICIENT: "cyan",
            PerformanceLevel.ADVANCED: "green",
        }[self]


PERFORMANCE_LEVELS: dict[PerformanceLevel, float] = {
    PerformanceLevel.ADVANCED: 0.95,
    PerformanceLevel.PROFICIENT: 0.8,
    PerformanceLevel.APPROACHING: 0.6,
    PerformanceLevel.NONE: 0.0,
}


class PenaltyPolicy(BaseModel):
    """
    Penalty constants for hints and time overruns.

    All values are percentage points on a 0-100 score.
    """

    model_config = {"frozen": True}

    hint_penalty: float = Field(default=5.0, ge=0)
    time_penalty_rate: float = Field(default=10.0, ge=0)
    max_time_penalty: float = Field(default=20.0, ge=0)


DEFAULT_PENALTY_POLICY = PenaltyPolicy()


# ============================================================================
# Results
# ============================================================================


@dataclass
class MasteryResult:
    """Mastery decision for one score."""

    score_percentage: float
    achieved_mastery: bool
    mastery_level: PerformanceLevel
    needs_remediation: bool
    eligible_for_enrichment: bool
    recommendations: list[str] = field(default_factory=list)


@dataclass
class PerformanceMetrics:
    """Aggregate performance over a series of scores."""

    accuracy: float = 0.0
    efficiency: float = 0.0
    consistency: float = 0.0
    improvement: float = 0.0
    retention_rate: float = 0.0


@dataclass
class ProgressionCheck:
    can_progress: bool
    reason: str


@dataclass
class UnitProgressSummary:
    overall_score: float
    lessons_completed: int
    unit_mastery_achieved: bool


# ============================================================================
# Score calculation
# ============================================================================


def calculate_basic_score(correct_answers: int, total_questions: int) -> float:
    """
    Percentage of correct answers, capped at 100.

    Returns 0 for an empty question set instead of dividing by zero.
    """
    if total_questions <= 0:
        return 0.0
    return clamp(correct_answers / total_questions * 100, 0.0, 100.0)


def calculate_weighted_score(
    correct_answers: int,
    total_questions: int,
    points: float | None = None,
    question_weights: list[float] | None = None,
) -> float:
    """
    Score when questions carry different point values.

    Falls back to the basic score when weights are missing or their count
    does not match the question count.

    Args:
        correct_answers: Number of correct answers (used by the fallback)
        total_questions: Number of questions
        points: Points earned
        question_weights: Possible points per question

    Returns:
        Score 0-100
    """
    if not question_weights or len(question_weights) != total_questions:
        return calculate_basic_score(correct_answers, total_questions)

    total_possible = sum(question_weights)
    if total_possible <= 0:
        return 0.0

    return clamp((points or 0) / total_possible * 100, 0.0, 100.0)


def apply_performance_penalties(
    base_score: float,
    hints_used: int = 0,
    time_spent: float | None = None,
    time_limit: float | None = None,
    policy: PenaltyPolicy = DEFAULT_PENALTY_POLICY,
) -> float:
    """
    Deduct hint and time-overrun penalties from a score.

    Args:
        base_score: Score before penalties (0-100)
        hints_used: Hints revealed
        time_spent: Seconds spent
        time_limit: Seconds allowed
        policy: Penalty constants

    Returns:
        Adjusted score in [0, 100], rounded to 2 decimals
    """
    adjusted = clamp(base_score, 0.0, 100.0)
    adjusted = max(0.0, adjusted - max(0, hints_used) * policy.hint_penalty)

    if time_spent and time_limit and time_limit > 0 and time_spent > time_limit:
        overrun = (time_spent - time_limit) / time_limit
        time_penalty = min(policy.max_time_penalty, overrun * policy.time_penalty_rate)
        adjusted = max(0.0, adjusted - time_penalty)

    return round_half_away(clamp(adjusted, 0.0, 100.0), 2)


def calculate_mastery_status(
    score: float,
    mastery_type: MasteryType | str = MasteryType.LESSON,
) -> MasteryResult:
    """
    Classify a 0-100 score against the threshold table.

    Recommendations depend only on the remediation, mastery and enrichment
    flags, so identical scores always produce identical output.
    """
    mastery_type = MasteryType(mastery_type)
    threshold = MASTERY_THRESHOLDS[mastery_type]
    score = clamp(score, 0.0, 100.0)
    fraction = score / 100

    achieved = fraction >= threshold
    needs_remediation = fraction < REMEDIATION_THRESHOLD
    enrichment = fraction >= ENRICHMENT_THRESHOLD

    recommendations: list[str] = []
    if needs_remediation:
        recommendations = [
            "Review prerequisite concepts",
            "Complete additional practice exercises",
            "Access corrective instruction materials",
        ]
    elif not achieved:
        recommendations = [
            "Practice similar problems",
            "Review areas of difficulty",
        ]
    elif enrichment:
        recommendations = [
            "Explore enrichment activities",
            "Try advanced challenges",
            "Help other learners",
        ]

    return MasteryResult(
        score_percentage=score,
        achieved_mastery=achieved,
        mastery_level=PerformanceLevel.from_fraction(fraction),
        needs_remediation=needs_remediation,
        eligible_for_enrichment=enrichment,
        recommendations=recommendations,
    )


def calculate_performance_metrics(
    scores: list[float],
    times: list[float] | None = None,
    dates: list[datetime] | None = None,
) -> PerformanceMetrics:
    """
    Summarise a chronological series of scores.

    Args:
        scores: Scores in chronological order
        times: Seconds spent per score (same order); efficiency is score/minute
        dates: Completion timestamps; when given, scores are re-sorted by date

    Returns:
        PerformanceMetrics rounded to 2 decimals (zeros for no scores)
    """
    if not scores:
        return PerformanceMetrics()

    times = list(times or [])
    if dates and len(dates) == len(scores):
        order = sorted(range(len(scores)), key=lambda i: dates[i])
        scores = [scores[i] for i in order]
        if len(times) == len(order):
            times = [times[i] for i in order]

    accuracy = mean(scores)

    timed = [(s, t) for s, t in zip(scores, times) if t and t > 0]
    efficiency = mean([s / (t / 60) for s, t in timed]) if timed else accuracy

    std_dev = math.sqrt(population_variance(scores))
    consistency = max(0.0, 100 - (std_dev / accuracy) * 100) if accuracy > 0 else 0.0

    improvement = linear_slope(scores) * 10
    retention_rate = mean(scores[-3:]) if len(scores) > 2 else accuracy

    return PerformanceMetrics(
        accuracy=round_half_away(accuracy, 2),
        efficiency=round_half_away(efficiency, 2),
        consistency=round_half_away(consistency, 2),
        improvement=round_half_away(improvement, 2),
        retention_rate=round_half_away(retention_rate, 2),
    )


def can_progress_to_next_lesson(
    current_score: float,
    mastery_achieved: bool,
    attempts: int,
    max_attempts: int = 3,
) -> ProgressionCheck:
    """Gate lesson progression; after max attempts 60% is enough to move on."""
    if mastery_achieved:
        return ProgressionCheck(True, "Mastery threshold achieved")

    if attempts >= max_attempts:
        if current_score >= REMEDIATION_THRESHOLD * 100:
            return ProgressionCheck(True, "Minimum score reached after maximum attempts")
        return ProgressionCheck(False, "Additional remediation required")

    return ProgressionCheck(False, "Mastery threshold not yet achieved")


def calculate_unit_progress(lesson_scores: list[tuple[bool, float]]) -> UnitProgressSummary:
    """
    Quick unit summary from (mastery_achieved, score) pairs.

    Unlike the progress evaluator this only checks the unit threshold.
    """
    if not lesson_scores:
        return UnitProgressSummary(0.0, 0, False)

    overall = mean([score for _, score in lesson_scores])
    completed = sum(1 for mastered, _ in lesson_scores if mastered)
    return UnitProgressSummary(
        overall_score=round_half_away(overall, 2),
        lessons_completed=completed,
        unit_mastery_achieved=overall >= MASTERY_THRESHOLDS[MasteryType.UNIT] * 100,
    )


# ============================================================================
# Exercise-type scoring
# ============================================================================


@dataclass
class ExerciseScore:
    is_correct: bool
    points: float  # 0-1


def string_similarity(first: str, second: str) -> float:
    """Levenshtein similarity: 1 - distance / longer length."""
    longest = max(len(first), len(second))
    if longest == 0:
        return 1.0

    previous = list(range(len(second) + 1))
    for i, char_a in enumerate(first, start=1):
        current = [i]
        for j, char_b in enumerate(second, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(current[j - 1] + 1, previous[j] + 1, previous[j - 1] + cost))
        previous = current

    return (longest - previous[-1]) / longest


def _word_order_score(user_words: list[str], correct_words: list[str]) -> float:
    if not user_words or not correct_words:
        return 0.0

    used: set[int] = set()
    matches = 0
    for word in user_words:
        for index, candidate in enumerate(correct_words):
            if index not in used and word == candidate:
                used.add(index)
                matches += 1
                break

    return matches / max(len(user_words), len(correct_words))


_SENTENCE_END = re.compile(r"[.!?]")
_LEADING_CAPITAL = re.compile(r"^[A-Z]")


def _grammar_score(user_sentence: str, correct_sentence: str) -> float:
    """Average of punctuation-count match and leading-capital match (1 or 0.5 each)."""
    punctuation = (
        1.0
        if len(_SENTENCE_END.findall(user_sentence)) == len(_SENTENCE_END.findall(correct_sentence))
        else 0.5
    )
    user_capital = bool(_LEADING_CAPITAL.match(user_sentence.strip()))
    correct_capital = bool(_LEADING_CAPITAL.match(correct_sentence.strip()))
    capitalization = 1.0 if user_capital == correct_capital else 0.5
    return (punctuation + capitalization) / 2


class ExerciseScoring:
    """Scorers for each exercise type. All return ExerciseScore(is_correct, points)."""

    FUZZY_THRESHOLD = 0.8
    FUZZY_CREDIT = 0.5
    PLACEMENT_THRESHOLD = 0.8
    SENTENCE_THRESHOLD = 0.8

    @staticmethod
    def multiple_choice(user_answer: str, correct_answer: str) -> ExerciseScore:
        is_correct = user_answer.strip().lower() == correct_answer.strip().lower()
        return ExerciseScore(is_correct, 1.0 if is_correct else 0.0)

    @classmethod
    def fill_in_blank(
        cls,
        user_answer: str,
        correct_answers: list[str],
        allow_partial_credit: bool = True,
    ) -> ExerciseScore:
        """
        Exact match earns full credit; a near miss (typo) earns half credit.

        Args:
            user_answer: Learner input
            correct_answers: Accepted answers
            allow_partial_credit: Enable the Levenshtein near-miss rule
        """
        answer = user_answer.strip().lower()
        accepted = [correct.strip().lower() for correct in correct_answers]

        if answer in accepted:
            return ExerciseScore(True, 1.0)

        if not allow_partial_credit:
            return ExerciseScore(False, 0.0)

        for correct in accepted:
            if string_similarity(answer, correct) >= cls.FUZZY_THRESHOLD:
                return ExerciseScore(True, cls.FUZZY_CREDIT)

        return ExerciseScore(False, 0.0)

    @classmethod
    def drag_and_drop(cls, user_order: list[str], correct_order: list[str]) -> ExerciseScore:
        if not correct_order or len(user_order) != len(correct_order):
            return ExerciseScore(False, 0.0)

        placed = sum(1 for given, expected in zip(user_order, correct_order) if given == expected)
        points = placed / len(correct_order)
        return ExerciseScore(points >= cls.PLACEMENT_THRESHOLD, points)

    @classmethod
    def sentence_builder(cls, user_sentence: str, correct_sentences: list[str]) -> ExerciseScore:
        user_words = user_sentence.strip().lower().split()

        best = 0.0
        for correct in correct_sentences:
            correct_words = correct.strip().lower().split()
            if user_words == correct_words:
                return ExerciseScore(True, 1.0)

            blended = (
                _word_order_score(user_words, correct_words)
                + _grammar_score(user_sentence, correct)
            ) / 2
            best = max(best, blended)

        return ExerciseScore(best >= cls.SENTENCE_THRESHOLD, best)
