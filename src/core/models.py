"""
Core Domain Records.

Plain records supplied by the content, results and grading providers.
The core never queries a store; callers fetch these and pass them in.

Design:
- Enums are `str, Enum` so they serialize as their value
- Records are dataclasses; option models live next to the code that uses them
- `validate_*` helpers fail fast on structurally invalid input
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ObjectiveCategory(str, Enum):
    """Bloom-style category of a learning objective."""

    KNOWLEDGE = "knowledge"
    COMPREHENSION = "comprehension"
    APPLICATION = "application"
    ANALYSIS = "analysis"
    SYNTHESIS = "synthesis"
    EVALUATION = "evaluation"


class ProgressStatus(str, Enum):
    """Progress state of an objective, lesson or unit."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    MASTERED = "mastered"


class DifficultyLevel(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


# ============================================================================
# Content Provider records
# ============================================================================


@dataclass
class LearningObjective:
    """A single measurable learning objective."""

    id: str
    title: str = ""
    category: ObjectiveCategory = ObjectiveCategory.KNOWLEDGE
    mastery_threshold: float = 0.8  # fraction, 0.8 = 80%
    required: bool = True
    concept: str | None = None  # concept tag used by gap analysis
    prerequisite_ids: list[str] = field(default_factory=list)


@dataclass
class Lesson:
    """A lesson with its objectives and directly attached activities."""

    id: str
    title: str = ""
    order_index: int = 0
    mastery_threshold: float = 0.8
    difficulty: DifficultyLevel = DifficultyLevel.BEGINNER
    required: bool = True
    objectives: list[LearningObjective] = field(default_factory=list)
    exercise_ids: list[str] = field(default_factory=list)
    assessment_ids: list[str] = field(default_factory=list)


@dataclass
class Unit:
    """A unit of lessons."""

    id: str
    title: str = ""
    order_index: int = 0
    mastery_threshold: float = 0.9
    lessons: list[Lesson] = field(default_factory=list)
    objectives: list[LearningObjective] = field(default_factory=list)
    prerequisite_unit_ids: list[str] = field(default_factory=list)

    @property
    def all_objectives(self) -> list[LearningObjective]:
        """Unit objectives plus every lesson objective, de-duplicated by id."""
        seen: dict[str, LearningObjective] = {}
        for objective in self.objectives:
            seen.setdefault(objective.id, objective)
        for lesson in self.lessons:
            for objective in lesson.objectives:
                seen.setdefault(objective.id, objective)
        return list(seen.values())


# ============================================================================
# Results Provider records
# ============================================================================


@dataclass
class ExerciseResult:
    """Outcome of a practice exercise. Score is a percentage (0-100)."""

    exercise_id: str
    score: float
    attempts: int = 1
    time_spent_seconds: float = 0.0
    completed_at: datetime | None = None
    mastery_achieved: bool = False
    objective_id: str | None = None  # None applies to every objective
    exercise_type: str | None = None
    hints_used: int = 0
    questions: int = 0


@dataclass
class AssessmentResult:
    """Outcome of an assessment. Score is a percentage (0-100)."""

    assessment_id: str
    score: float
    attempts: int = 1
    time_spent_seconds: float = 0.0
    completed_at: datetime | None = None
    mastery_achieved: bool = False
    objective_id: str | None = None
    hints_used: int = 0
    questions: int = 0


# ============================================================================
# Grading Provider records
# ============================================================================


@dataclass
class Mistake:
    type: str
    description: str = ""
    suggestion: str = ""


@dataclass
class GradingResult:
    """Auto-grader output for one response."""

    is_correct: bool
    score: float
    mistakes: list[Mistake] = field(default_factory=list)
    exercise_id: str | None = None
    question_id: str | None = None
    graded_at: datetime | None = None


# ============================================================================
# Validation helpers
# ============================================================================


def validate_objective(objective: LearningObjective | None) -> LearningObjective:
    """
    Fail fast on a missing or id-less objective.

    Raises:
        ValueError: If the objective is None or has a blank id
    """
    if objective is None:
        raise ValueError("Learning objective is required")
    if not getattr(objective, "id", None):
        raise ValueError(f"Learning objective has no id: {objective!r}")
    return objective


def validate_lesson(lesson: Lesson | None) -> Lesson:
    if lesson is None:
        raise ValueError("Lesson is required")
    if not lesson.id:
        raise ValueError(f"Lesson has no id: {lesson!r}")
    for objective in lesson.objectives:
        validate_objective(objective)
    return lesson


def validate_unit(unit: Unit | None) -> Unit:
    if unit is None:
        raise ValueError("Unit is required")
    if not unit.id:
        raise ValueError(f"Unit has no id: {unit!r}")
    for lesson in unit.lessons:
        validate_lesson(lesson)
    return unit


def is_valid_fraction(value: float | None) -> bool:
    """True when value is a finite number inside [0, 1]."""
    if value is None:
        return False
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return not math.isnan(number) and 0.0 <= number <= 1.0
