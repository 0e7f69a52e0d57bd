"""
Adaptive Learning - diagnostic gap analysis.

Components:
- LearningGapAnalyzer: Detects conceptual, procedural, prerequisite,
  application, error-pattern and metacognitive gaps and recommends
  interventions
"""
from src.adaptive.gap_analyzer import (
    GapAnalysisResult,
    GapSeverity,
    GapType,
    LearningGap,
    LearningGapAnalyzer,
    calculate_gap_priority,
    filter_gaps_by_priority,
    get_progression_blocking_gaps,
)

__all__ = [
    "GapAnalysisResult",
    "GapSeverity",
    "GapType",
    "LearningGap",
    "LearningGapAnalyzer",
    "calculate_gap_priority",
    "filter_gaps_by_priority",
    "get_progression_blocking_gaps",
]
