"""
Core Module - Shared domain models and scoring.

Components:
- models: Curriculum and result records (LearningObjective, Lesson, Unit, ...)
- mastery: Pure scoring functions, thresholds and exercise scorers

All domain modules (src/study/, src/adaptive/) import from src/core/
rather than reimplementing shared concepts.
"""

from src.core.mastery import (
    DEFAULT_PENALTY_POLICY,
    MASTERY_THRESHOLDS,
    ExerciseScore,
    ExerciseScoring,
    MasteryResult,
    MasteryType,
    PenaltyPolicy,
    PerformanceLevel,
    PerformanceMetrics,
    apply_performance_penalties,
    calculate_basic_score,
    calculate_mastery_status,
    calculate_performance_metrics,
    calculate_unit_progress,
    calculate_weighted_score,
    can_progress_to_next_lesson,
)
from src.core.models import (
    AssessmentResult,
    DifficultyLevel,
    ExerciseResult,
    LearningObjective,
    Lesson,
    ObjectiveCategory,
    ProgressStatus,
    Unit,
)

__all__ = [
    # Models
    "AssessmentResult",
    "DifficultyLevel",
    "ExerciseResult",
    "LearningObjective",
    "Lesson",
    "ObjectiveCategory",
    "ProgressStatus",
    "Unit",
    # Mastery scoring
    "DEFAULT_PENALTY_POLICY",
    "MASTERY_THRESHOLDS",
    "ExerciseScore",
    "ExerciseScoring",
    "MasteryResult",
    "MasteryType",
    "PenaltyPolicy",
    "PerformanceLevel",
    "PerformanceMetrics",
    "apply_performance_penalties",
    "calculate_basic_score",
    "calculate_mastery_status",
    "calculate_performance_metrics",
    "calculate_unit_progress",
    "calculate_weighted_score",
    "can_progress_to_next_lesson",
]
