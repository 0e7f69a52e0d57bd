"""
Study Module.

Provides:
- Spaced-repetition retention scheduling (SM-2 style cards)
- Conjunctive progress evaluation over objectives, lessons and units
- Retention optimization from score history
"""

from src.study.progress_evaluator import ProgressEvaluator, check_prerequisites
from src.study.retention_engine import (
    LearningContext,
    ReviewCard,
    SchedulingOptions,
    SpacedRepetitionAlgorithm,
)
from src.study.retention_optimizer import RetentionOptimizer, create_retention_optimizer
from src.study.retention_scheduler import (
    RetentionScheduler,
    ReviewRecord,
    create_contextual_scheduler,
    create_retention_scheduler,
)

__all__ = [
    "LearningContext",
    "ProgressEvaluator",
    "RetentionOptimizer",
    "RetentionScheduler",
    "ReviewCard",
    "ReviewRecord",
    "SchedulingOptions",
    "SpacedRepetitionAlgorithm",
    "check_prerequisites",
    "create_contextual_scheduler",
    "create_retention_optimizer",
    "create_retention_scheduler",
]
