"""
Learning Gap Analyzer.

Diagnoses why a learner keeps failing, from progress records and grader
mistakes.

Pipeline:
1. Aggregate progress into concept, exercise-type and application-level
   performance
2. Classify grader mistakes into error patterns
3. Run the detectors (conceptual, procedural, prerequisite, application,
   pattern-based, metacognitive) and union their gaps
4. Drop weakly evidenced gaps (evidence < 0.3), once, after all detectors
5. Turn each gap into a diagnostic recommendation with interventions

Gap ids are derived from what they describe, so re-running an analysis on
the same data yields the same ids.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from loguru import logger

from src.core.mastery import calculate_consistency, calculate_trend, mean
from src.core.models import (
    AssessmentResult,
    ExerciseResult,
    GradingResult,
    Mistake,
    ObjectiveCategory,
)
from src.study.progress_evaluator import LessonProgress, ObjectiveProgress, UnitProgress
from src.study.retention_engine import utcnow


MIN_EVIDENCE_STRENGTH = 0.3
MIN_GAP_PRIORITY = 0.5
BLOCKING_IMPACT = 0.7

CONCEPTUAL_ACCURACY = 0.6
CONCEPTUAL_CONSISTENCY = 0.5
PROCEDURAL_EFFICIENCY = 0.5
PROCEDURAL_ACCURACY = 0.7
PREREQUISITE_MIN_ATTEMPTS = 3
APPLICATION_ACCURACY = 0.65
PATTERN_MIN_FREQUENCY = 3
PATTERN_MIN_CONSISTENCY = 0.6
HINTS_PER_QUESTION = 2
METACOGNITIVE_ACCURACY = 0.7

EFFICIENCY_BASELINE_SECONDS = 300
GENERAL = "general"


class GapType(str, Enum):
    CONCEPTUAL_UNDERSTANDING = "conceptual_understanding"
    PROCEDURAL_KNOWLEDGE = "procedural_knowledge"
    FACTUAL_RECALL = "factual_recall"
    APPLICATION_SKILLS = "application_skills"
    PATTERN_RECOGNITION = "pattern_recognition"
    METACOGNITIVE_AWARENESS = "metacognitive_awareness"
    PREREQUISITE_KNOWLEDGE = "prerequisite_knowledge"
    TRANSFER_SKILLS = "transfer_skills"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


class GapSeverity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MODERATE = "moderate"
    MINOR = "minor"

    @property
    def weight(self) -> float:
        return SEVERITY_WEIGHTS[self]


SEVERITY_WEIGHTS: dict[GapSeverity, float] = {
    GapSeverity.CRITICAL: 1.0,
    GapSeverity.MAJOR: 0.8,
    GapSeverity.MODERATE: 0.6,
    GapSeverity.MINOR: 0.4,
}


class ErrorPattern(str, Enum):
    CONSISTENT_MISCONCEPTION = "consistent_misconception"
    INCOMPLETE_UNDERSTANDING = "incomplete_understanding"
    PROCEDURAL_ERROR = "procedural_error"
    COMPUTATIONAL_MISTAKE = "computational_mistake"
    READING_COMPREHENSION = "reading_comprehension"
    ATTENTION_TO_DETAIL = "attention_to_detail"
    PROBLEM_INTERPRETATION = "problem_interpretation"
    STRATEGY_SELECTION = "strategy_selection"


# Checked in order; first keyword hit wins
ERROR_PATTERN_KEYWORDS: list[tuple[tuple[str, ...], ErrorPattern]] = [
    (("spelling", "grammar"), ErrorPattern.ATTENTION_TO_DETAIL),
    (("structure", "step"), ErrorPattern.PROCEDURAL_ERROR),
    (("choice",), ErrorPattern.CONSISTENT_MISCONCEPTION),
    (("reading",), ErrorPattern.READING_COMPREHENSION),
    (("interpret",), ErrorPattern.PROBLEM_INTERPRETATION),
    (("strategy",), ErrorPattern.STRATEGY_SELECTION),
    (("incomplete", "partial"), ErrorPattern.INCOMPLETE_UNDERSTANDING),
]

PATTERN_GAP_TYPES: dict[ErrorPattern, GapType] = {
    ErrorPattern.CONSISTENT_MISCONCEPTION: GapType.CONCEPTUAL_UNDERSTANDING,
    ErrorPattern.INCOMPLETE_UNDERSTANDING: GapType.CONCEPTUAL_UNDERSTANDING,
    ErrorPattern.PROCEDURAL_ERROR: GapType.PROCEDURAL_KNOWLEDGE,
    ErrorPattern.COMPUTATIONAL_MISTAKE: GapType.PROCEDURAL_KNOWLEDGE,
    ErrorPattern.READING_COMPREHENSION: GapType.FACTUAL_RECALL,
    ErrorPattern.ATTENTION_TO_DETAIL: GapType.METACOGNITIVE_AWARENESS,
    ErrorPattern.PROBLEM_INTERPRETATION: GapType.APPLICATION_SKILLS,
    ErrorPattern.STRATEGY_SELECTION: GapType.METACOGNITIVE_AWARENESS,
}

PATTERN_CAUSES: dict[ErrorPattern, list[str]] = {
    ErrorPattern.ATTENTION_TO_DETAIL: [
        "Insufficient practice with spelling rules",
        "Lack of attention to detail",
    ],
    ErrorPattern.PROCEDURAL_ERROR: [
        "Incomplete understanding of grammar rules",
        "Need more structured practice",
    ],
    ErrorPattern.CONSISTENT_MISCONCEPTION: [
        "Conceptual misconception",
        "Need to review core concepts",
    ],
}
DEFAULT_CAUSES = ["General need for review and practice"]

EXERCISE_TYPE_KEYWORDS: list[tuple[str, str]] = [
    ("multiple", "multiple_choice"),
    ("fill", "fill_in_blank"),
    ("drag", "drag_and_drop"),
    ("sentence", "sentence_builder"),
]


class Significance(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class IndicatorTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class RecommendationPriority(str, Enum):
    IMMEDIATE = "immediate"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RecommendationKind(str, Enum):
    REMEDIATION = "remediation"
    REVIEW = "review"
    PRACTICE = "practice"
    INSTRUCTION = "instruction"


class InterventionType(str, Enum):
    CONTENT_REVIEW = "content_review"
    GUIDED_PRACTICE = "guided_practice"
    PEER_COLLABORATION = "peer_collaboration"
    ADAPTIVE_EXERCISES = "adaptive_exercises"
    CONCEPTUAL_INSTRUCTION = "conceptual_instruction"


# ============================================================================
# Records
# ============================================================================


@dataclass
class ErrorInstance:
    exercise_id: str | None
    question_id: str | None
    student_response: str
    suggestion: str
    timestamp: datetime | None
    context: str  # the grader's mistake type


@dataclass
class ErrorPatternAnalysis:
    pattern: ErrorPattern
    frequency: int = 0
    consistency: float = 0.0
    examples: list[ErrorInstance] = field(default_factory=list)
    suggested_causes: list[str] = field(default_factory=list)


@dataclass
class PerformanceIndicator:
    metric: str
    value: float
    threshold: float
    significance: Significance = Significance.HIGH
    trend: IndicatorTrend = IndicatorTrend.STABLE


@dataclass
class LearningGap:
    id: str
    type: GapType
    severity: GapSeverity
    description: str
    evidence_strength: float  # 0-1
    impact_on_progression: float  # 0-1
    frequency: int
    persistence_level: float  # 0-1
    identified_at: datetime
    last_observed: datetime
    affected_concepts: list[str] = field(default_factory=list)
    affected_objectives: list[str] = field(default_factory=list)
    prerequisite_gaps: list[str] = field(default_factory=list)
    error_patterns: list[ErrorPatternAnalysis] = field(default_factory=list)
    performance_indicators: list[PerformanceIndicator] = field(default_factory=list)
    related_gaps: list[str] = field(default_factory=list)


@dataclass
class AdaptationRule:
    condition: str
    action: str
    parameters: dict[str, object] = field(default_factory=dict)


@dataclass
class Intervention:
    id: str
    type: InterventionType
    duration_minutes: int
    description: str
    adaptation_rules: list[AdaptationRule] = field(default_factory=list)


@dataclass
class DiagnosticRecommendation:
    priority: RecommendationPriority
    type: RecommendationKind
    description: str
    interventions: list[Intervention]
    estimated_effort: float  # hours
    expected_outcome: str
    targeted_gaps: list[str] = field(default_factory=list)
    prerequisite_actions: list[str] = field(default_factory=list)
    success_criteria: list[str] = field(default_factory=list)


@dataclass
class GapAnalysisResult:
    student_id: str
    analysis_date: datetime
    identified_gaps: list[LearningGap]
    critical_gaps: list[LearningGap]
    gaps_by_type: dict[GapType, list[LearningGap]]
    gaps_by_objective: dict[str, list[LearningGap]]
    overall_gap_severity: GapSeverity
    readiness_for_progression: float
    risk_factors: list[str]
    strengths: list[str]
    recommendations: list[DiagnosticRecommendation]
    prioritized_actions: list[str]
    estimated_remediation_time: float  # hours


@dataclass
class StudentProgressData:
    """Everything the analyzer looks at for one learner."""

    unit_progresses: list[UnitProgress] = field(default_factory=list)
    lesson_progresses: list[LessonProgress] = field(default_factory=list)
    objective_progresses: list[ObjectiveProgress] = field(default_factory=list)
    recent_results: list[ExerciseResult] = field(default_factory=list)
    assessment_results: list[AssessmentResult] = field(default_factory=list)
    grading_results: list[GradingResult] = field(default_factory=list)


@dataclass
class AreaPerformance:
    """Aggregated performance for a concept, exercise type or cognitive level (fractions)."""

    accuracy: float
    consistency: float
    improvement: float
    attempts: int
    efficiency: float = 0.0
    objective_ids: list[str] = field(default_factory=list)


@dataclass
class PerformanceData:
    overall: AreaPerformance | None
    concept_performance: dict[str, AreaPerformance]
    exercise_type_performance: dict[str, AreaPerformance]
    application_performance: AreaPerformance | None
    objective_progress: dict[str, ObjectiveProgress]
    hints_used: int
    total_questions: int
    last_activity: datetime | None = None


# ============================================================================
# Helpers
# ============================================================================


def determine_severity(score: float, threshold: float) -> GapSeverity:
    """Band score/threshold: < .3 critical, < .6 major, < .8 moderate, else minor."""
    ratio = score / threshold if threshold > 0 else 1.0
    if ratio < 0.3:
        return GapSeverity.CRITICAL
    elif ratio < 0.6:
        return GapSeverity.MAJOR
    elif ratio < 0.8:
        return GapSeverity.MODERATE
    return GapSeverity.MINOR


def evidence_strength(attempts: int, consistency: float) -> float:
    return (min(1.0, attempts / 5) + consistency) / 2


def persistence(attempts: int) -> float:
    return min(1.0, attempts / 10)


def classify_error_pattern(mistake: Mistake) -> ErrorPattern:
    mistake_type = (mistake.type or "").lower()
    for keywords, pattern in ERROR_PATTERN_KEYWORDS:
        if any(keyword in mistake_type for keyword in keywords):
            return pattern
    return ErrorPattern.COMPUTATIONAL_MISTAKE


def exercise_type_of(result: ExerciseResult) -> str:
    if result.exercise_type:
        return result.exercise_type
    exercise_id = result.exercise_id.lower()
    for keyword, exercise_type in EXERCISE_TYPE_KEYWORDS:
        if keyword in exercise_id:
            return exercise_type
    return GENERAL


def concept_of(progress: ObjectiveProgress) -> str:
    objective = progress.objective
    if objective is None:
        return GENERAL
    return objective.concept or objective.category.value


def _indicator_trend(improvement: float) -> IndicatorTrend:
    if improvement > 0:
        return IndicatorTrend.IMPROVING
    elif improvement < 0:
        return IndicatorTrend.DECLINING
    return IndicatorTrend.STABLE


def _slug(value: str) -> str:
    return value.strip().lower().replace(" ", "_")


# ============================================================================
# Analyzer
# ============================================================================


class LearningGapAnalyzer:
    """
    Identify learning gaps for one learner or a batch of learners.

    Usage:
        analyzer = LearningGapAnalyzer()
        result = analyzer.analyze_student_gaps("student-1", StudentProgressData(...))
        blocking = get_progression_blocking_gaps(result.identified_gaps)
    """

    def analyze_student_gaps(
        self,
        student_id: str,
        progress: StudentProgressData,
        now: datetime | None = None,
    ) -> GapAnalysisResult:
        now = now or utcnow()

        data = self.aggregate_performance_data(progress)
        patterns = self.identify_error_patterns(progress.grading_results)
        gaps = self.link_related_gaps(self.detect_learning_gaps(data, patterns, now))
        recommendations = self.generate_recommendations(gaps)

        critical = [gap for gap in gaps if gap.severity == GapSeverity.CRITICAL]
        major = [gap for gap in gaps if gap.severity == GapSeverity.MAJOR]

        if critical:
            overall = GapSeverity.CRITICAL
        elif len(major) > 2:
            overall = GapSeverity.MAJOR
        elif major:
            overall = GapSeverity.MODERATE
        else:
            overall = GapSeverity.MINOR

        logger.debug(
            f"Gap analysis for {student_id}: {len(gaps)} gaps "
            f"({len(critical)} critical, {len(major)} major)"
        )

        return GapAnalysisResult(
            student_id=student_id,
            analysis_date=now,
            identified_gaps=gaps,
            critical_gaps=critical,
            gaps_by_type=self._group_by_type(gaps),
            gaps_by_objective=self._group_by_objective(gaps),
            overall_gap_severity=overall,
            readiness_for_progression=max(0.0, 1 - (len(critical) * 0.3 + len(major) * 0.2)),
            risk_factors=self._risk_factors(gaps),
            strengths=self._strengths(data),
            recommendations=recommendations,
            prioritized_actions=[rec.description for rec in recommendations],
            estimated_remediation_time=sum(rec.estimated_effort for rec in recommendations),
        )

    def analyze_multiple_students(
        self,
        students: dict[str, StudentProgressData],
        now: datetime | None = None,
    ) -> dict[str, GapAnalysisResult]:
        """Analyze each learner independently; failures are logged and skipped."""
        results: dict[str, GapAnalysisResult] = {}
        for student_id, progress in students.items():
            try:
                results[student_id] = self.analyze_student_gaps(student_id, progress, now)
            except Exception as e:
                logger.error(f"Failed to analyze gaps for {student_id}: {e}")

        logger.info(f"Analyzed gaps for {len(results)}/{len(students)} students")
        return results

    # ========================================================================
    # Error patterns
    # ========================================================================

    def identify_error_patterns(
        self, grading_results: list[GradingResult]
    ) -> list[ErrorPatternAnalysis]:
        """Group grader mistakes by error pattern, in order of first appearance."""
        patterns: dict[ErrorPattern, ErrorPatternAnalysis] = {}

        for result in grading_results:
            for mistake in result.mistakes:
                pattern = classify_error_pattern(mistake)
                analysis = patterns.setdefault(
                    pattern,
                    ErrorPatternAnalysis(
                        pattern=pattern,
                        suggested_causes=list(PATTERN_CAUSES.get(pattern, DEFAULT_CAUSES)),
                    ),
                )
                analysis.frequency += 1
                analysis.examples.append(
                    ErrorInstance(
                        exercise_id=result.exercise_id,
                        question_id=result.question_id,
                        student_response=mistake.description,
                        suggestion=mistake.suggestion,
                        timestamp=result.graded_at,
                        context=mistake.type,
                    )
                )

        for analysis in patterns.values():
            analysis.consistency = min(1.0, analysis.frequency / 5)

        return list(patterns.values())

    # ========================================================================
    # Aggregation
    # ========================================================================

    def aggregate_performance_data(self, progress: StudentProgressData) -> PerformanceData:
        """Concept, exercise-type and application-level performance as 0-1 fractions."""
        objective_progress = self._collect_objective_progress(progress)
        results: list[ExerciseResult | AssessmentResult] = [
            *progress.recent_results,
            *progress.assessment_results,
        ]

        by_concept: dict[str, list[ObjectiveProgress]] = {}
        for op in objective_progress.values():
            by_concept.setdefault(concept_of(op), []).append(op)

        concept_performance = {
            concept: self._area_from_objectives(ops, results)
            for concept, ops in by_concept.items()
        }

        by_type: dict[str, list[ExerciseResult]] = {}
        for result in progress.recent_results:
            by_type.setdefault(exercise_type_of(result), []).append(result)

        exercise_type_performance = {}
        for exercise_type, type_results in by_type.items():
            scores = [r.score / 100 for r in type_results]
            exercise_type_performance[exercise_type] = AreaPerformance(
                accuracy=mean(scores),
                consistency=calculate_consistency(scores),
                improvement=calculate_trend(scores),
                attempts=sum(r.attempts for r in type_results),
                efficiency=mean(
                    [
                        (r.score / 100) / max(r.time_spent_seconds / EFFICIENCY_BASELINE_SECONDS, 1)
                        for r in type_results
                    ]
                ),
            )

        application = [
            op
            for op in objective_progress.values()
            if op.objective is not None and op.objective.category == ObjectiveCategory.APPLICATION
        ]

        return PerformanceData(
            overall=(
                self._area_from_objectives(list(objective_progress.values()), results)
                if objective_progress
                else None
            ),
            concept_performance=concept_performance,
            exercise_type_performance=exercise_type_performance,
            application_performance=(
                self._area_from_objectives(application, results) if application else None
            ),
            objective_progress=objective_progress,
            hints_used=sum(r.hints_used for r in results),
            total_questions=sum(max(r.questions, 1) for r in results),
            last_activity=max(
                (r.completed_at for r in results if r.completed_at is not None), default=None
            ),
        )

    # ========================================================================
    # Detection
    # ========================================================================

    def detect_learning_gaps(
        self,
        data: PerformanceData,
        patterns: list[ErrorPatternAnalysis],
        now: datetime | None = None,
    ) -> list[LearningGap]:
        """Union of every detector, then the single evidence filter."""
        now = now or utcnow()
        observed = data.last_activity or now

        detectors: list[Callable[[], list[LearningGap]]] = [
            lambda: self._detect_conceptual_gaps(data, now, observed),
            lambda: self._detect_procedural_gaps(data, now, observed),
            lambda: self._detect_prerequisite_gaps(data, now, observed),
            lambda: self._detect_application_gaps(data, now, observed),
            lambda: self._detect_pattern_gaps(patterns, now),
            lambda: self._detect_metacognitive_gaps(data, now, observed),
        ]

        gaps: list[LearningGap] = []
        for detect in detectors:
            gaps.extend(detect())

        return [gap for gap in gaps if gap.evidence_strength >= MIN_EVIDENCE_STRENGTH]

    def _detect_conceptual_gaps(
        self, data: PerformanceData, now: datetime, observed: datetime
    ) -> list[LearningGap]:
        gaps = []
        for concept, perf in data.concept_performance.items():
            if perf.accuracy >= CONCEPTUAL_ACCURACY or perf.consistency >= CONCEPTUAL_CONSISTENCY:
                continue
            gaps.append(
                LearningGap(
                    id=f"conceptual_{_slug(concept)}",
                    type=GapType.CONCEPTUAL_UNDERSTANDING,
                    severity=determine_severity(perf.accuracy, CONCEPTUAL_ACCURACY),
                    description=f"Student shows poor conceptual understanding of {concept}",
                    affected_concepts=[concept],
                    affected_objectives=list(perf.objective_ids),
                    performance_indicators=[
                        PerformanceIndicator(
                            metric="accuracy",
                            value=perf.accuracy,
                            threshold=CONCEPTUAL_ACCURACY,
                            trend=_indicator_trend(perf.improvement),
                        )
                    ],
                    evidence_strength=evidence_strength(perf.attempts, perf.consistency),
                    impact_on_progression=min(1.0, len(perf.objective_ids) / 3),
                    frequency=perf.attempts,
                    persistence_level=persistence(perf.attempts),
                    identified_at=now,
                    last_observed=observed,
                )
            )
        return gaps

    def _detect_procedural_gaps(
        self, data: PerformanceData, now: datetime, observed: datetime
    ) -> list[LearningGap]:
        gaps = []
        for exercise_type, perf in data.exercise_type_performance.items():
            if perf.efficiency >= PROCEDURAL_EFFICIENCY or perf.accuracy >= PROCEDURAL_ACCURACY:
                continue
            gaps.append(
                LearningGap(
                    id=f"procedural_{_slug(exercise_type)}",
                    type=GapType.PROCEDURAL_KNOWLEDGE,
                    severity=determine_severity(perf.efficiency, PROCEDURAL_EFFICIENCY),
                    description=f"Student struggles with procedural knowledge in {exercise_type} exercises",
                    affected_concepts=[exercise_type],
                    performance_indicators=[
                        PerformanceIndicator(
                            metric="efficiency",
                            value=perf.efficiency,
                            threshold=PROCEDURAL_EFFICIENCY,
                            trend=_indicator_trend(perf.improvement),
                        )
                    ],
                    evidence_strength=evidence_strength(perf.attempts, perf.consistency),
                    impact_on_progression=0.7,
                    frequency=perf.attempts,
                    persistence_level=persistence(perf.attempts),
                    identified_at=now,
                    last_observed=observed,
                )
            )
        return gaps

    def _detect_prerequisite_gaps(
        self, data: PerformanceData, now: datetime, observed: datetime
    ) -> list[LearningGap]:
        gaps = []
        for objective_id, progress in data.objective_progress.items():
            if progress.mastery_achieved or progress.attempts <= PREREQUISITE_MIN_ATTEMPTS:
                continue
            prerequisites = progress.objective.prerequisite_ids if progress.objective else []

            for prereq in prerequisites:
                prereq_progress = data.objective_progress.get(prereq)
                if prereq_progress is not None and prereq_progress.mastery_achieved:
                    continue
                gaps.append(
                    LearningGap(
                        id=f"prerequisite_{prereq}_{objective_id}",
                        type=GapType.PREREQUISITE_KNOWLEDGE,
                        severity=GapSeverity.MAJOR,
                        description=f"Missing prerequisite knowledge: {prereq}",
                        affected_concepts=[prereq],
                        affected_objectives=[objective_id],
                        performance_indicators=[
                            PerformanceIndicator(
                                metric="mastery",
                                value=prereq_progress.current_score / 100 if prereq_progress else 0.0,
                                threshold=0.8,
                            )
                        ],
                        evidence_strength=0.9,
                        impact_on_progression=0.95,
                        frequency=progress.attempts,
                        persistence_level=0.8,
                        identified_at=now,
                        last_observed=observed,
                    )
                )
        return gaps

    def _detect_application_gaps(
        self, data: PerformanceData, now: datetime, observed: datetime
    ) -> list[LearningGap]:
        perf = data.application_performance
        if perf is None or perf.accuracy >= APPLICATION_ACCURACY:
            return []

        return [
            LearningGap(
                id="application_skills",
                type=GapType.APPLICATION_SKILLS,
                severity=determine_severity(perf.accuracy, APPLICATION_ACCURACY),
                description="Student struggles to apply knowledge to new situations",
                affected_concepts=list(data.concept_performance),
                affected_objectives=list(perf.objective_ids),
                performance_indicators=[
                    PerformanceIndicator(
                        metric="application_accuracy",
                        value=perf.accuracy,
                        threshold=APPLICATION_ACCURACY,
                        trend=_indicator_trend(perf.improvement),
                    )
                ],
                evidence_strength=evidence_strength(perf.attempts, perf.consistency),
                impact_on_progression=0.8,
                frequency=perf.attempts,
                persistence_level=persistence(perf.attempts),
                identified_at=now,
                last_observed=observed,
            )
        ]

    def _detect_pattern_gaps(
        self, patterns: list[ErrorPatternAnalysis], now: datetime
    ) -> list[LearningGap]:
        gaps = []
        for pattern in patterns:
            if pattern.frequency < PATTERN_MIN_FREQUENCY or pattern.consistency <= PATTERN_MIN_CONSISTENCY:
                continue

            if pattern.frequency >= 5 and pattern.consistency > 0.8:
                severity = GapSeverity.CRITICAL
            else:
                severity = GapSeverity.MAJOR

            seen = [example.timestamp for example in pattern.examples if example.timestamp]
            contexts = list(dict.fromkeys(ex.context for ex in pattern.examples if ex.context))

            gaps.append(
                LearningGap(
                    id=f"pattern_{pattern.pattern.value}",
                    type=PATTERN_GAP_TYPES.get(pattern.pattern, GapType.APPLICATION_SKILLS),
                    severity=severity,
                    description=f"Consistent {pattern.pattern.value} errors detected",
                    affected_concepts=contexts,
                    error_patterns=[pattern],
                    performance_indicators=[
                        PerformanceIndicator(
                            metric="error_frequency",
                            value=pattern.frequency,
                            threshold=PATTERN_MIN_FREQUENCY,
                        )
                    ],
                    evidence_strength=pattern.consistency,
                    impact_on_progression=min(1.0, pattern.frequency * pattern.consistency / 5),
                    frequency=pattern.frequency,
                    persistence_level=pattern.consistency,
                    identified_at=now,
                    last_observed=max(seen) if seen else now,
                )
            )
        return gaps

    def _detect_metacognitive_gaps(
        self, data: PerformanceData, now: datetime, observed: datetime
    ) -> list[LearningGap]:
        if data.overall is None:
            return []

        hints_per_question = data.hints_used / max(data.total_questions, 1)
        if hints_per_question <= HINTS_PER_QUESTION or data.overall.accuracy >= METACOGNITIVE_ACCURACY:
            return []

        return [
            LearningGap(
                id="metacognitive",
                type=GapType.METACOGNITIVE_AWARENESS,
                severity=GapSeverity.MODERATE,
                description="Student shows poor self-monitoring and strategy selection",
                performance_indicators=[
                    PerformanceIndicator(
                        metric="hint_dependency",
                        value=hints_per_question,
                        threshold=HINTS_PER_QUESTION,
                        significance=Significance.MEDIUM,
                    )
                ],
                evidence_strength=0.6,
                impact_on_progression=0.5,
                frequency=data.total_questions,
                persistence_level=0.7,
                identified_at=now,
                last_observed=observed,
            )
        ]

    def link_related_gaps(self, gaps: list[LearningGap]) -> list[LearningGap]:
        """Cross-reference gaps that share an objective or a concept."""
        for gap in gaps:
            objectives = set(gap.affected_objectives)
            concepts = set(gap.affected_concepts)
            gap.related_gaps = [
                other.id
                for other in gaps
                if other is not gap
                and (objectives & set(other.affected_objectives) or concepts & set(other.affected_concepts))
            ]
            if gap.type == GapType.PREREQUISITE_KNOWLEDGE:
                gap.prerequisite_gaps = [
                    other.id
                    for other in gaps
                    if other is not gap
                    and other.type == GapType.PREREQUISITE_KNOWLEDGE
                    and set(other.affected_objectives) & set(gap.affected_concepts)
                ]
        return gaps

    # ========================================================================
    # Recommendations
    # ========================================================================

    def generate_recommendations(self, gaps: list[LearningGap]) -> list[DiagnosticRecommendation]:
        """Critical gaps first (immediate), then major (high), then the rest (medium)."""
        critical = [gap for gap in gaps if gap.severity == GapSeverity.CRITICAL]
        major = [gap for gap in gaps if gap.severity == GapSeverity.MAJOR]
        other = [gap for gap in gaps if gap.severity not in (GapSeverity.CRITICAL, GapSeverity.MAJOR)]

        return [
            *(self.create_recommendation(gap, RecommendationPriority.IMMEDIATE) for gap in critical),
            *(self.create_recommendation(gap, RecommendationPriority.HIGH) for gap in major),
            *(self.create_recommendation(gap, RecommendationPriority.MEDIUM) for gap in other),
        ]

    def create_recommendation(
        self, gap: LearningGap, priority: RecommendationPriority
    ) -> DiagnosticRecommendation:
        interventions = self.select_interventions(gap)

        if gap.severity == GapSeverity.CRITICAL:
            kind = RecommendationKind.REMEDIATION
        elif gap.type == GapType.CONCEPTUAL_UNDERSTANDING:
            kind = RecommendationKind.INSTRUCTION
        elif gap.type == GapType.PROCEDURAL_KNOWLEDGE:
            kind = RecommendationKind.PRACTICE
        else:
            kind = RecommendationKind.REVIEW

        concepts = ", ".join(gap.affected_concepts) or "the affected areas"
        return DiagnosticRecommendation(
            priority=priority,
            type=kind,
            description=f"Address {gap.type.label} gap: {gap.description}",
            interventions=interventions,
            estimated_effort=sum(i.duration_minutes for i in interventions) / 60,
            expected_outcome=f"Improve performance in {concepts} by addressing {gap.type.label}",
            targeted_gaps=[gap.id],
            prerequisite_actions=(
                ["Complete prerequisite review before attempting main content"]
                if gap.type == GapType.PREREQUISITE_KNOWLEDGE
                else []
            ),
            success_criteria=[
                "Achieve 80% accuracy on related exercises",
                "Demonstrate consistent performance over 3 attempts",
                "Show improvement in error pattern frequency",
            ],
        )

    def select_interventions(self, gap: LearningGap) -> list[Intervention]:
        concepts = ", ".join(gap.affected_concepts)

        if gap.type == GapType.CONCEPTUAL_UNDERSTANDING:
            return [
                Intervention(
                    id=f"conceptual_instruction_{gap.id}",
                    type=InterventionType.CONCEPTUAL_INSTRUCTION,
                    duration_minutes=30,
                    description=f"Targeted conceptual instruction for {concepts}",
                    adaptation_rules=[
                        AdaptationRule("accuracy < 0.7", "provide_additional_examples", {"example_count": 3})
                    ],
                )
            ]
        elif gap.type == GapType.PROCEDURAL_KNOWLEDGE:
            return [
                Intervention(
                    id=f"guided_practice_{gap.id}",
                    type=InterventionType.GUIDED_PRACTICE,
                    duration_minutes=45,
                    description="Step-by-step guided practice with immediate feedback",
                    adaptation_rules=[
                        AdaptationRule("errors > 2", "break_into_smaller_steps", {"step_size": "minimal"})
                    ],
                )
            ]
        elif gap.type == GapType.PREREQUISITE_KNOWLEDGE:
            return [
                Intervention(
                    id=f"content_review_{gap.id}",
                    type=InterventionType.CONTENT_REVIEW,
                    duration_minutes=60,
                    description=f"Review prerequisite concepts: {concepts}",
                    adaptation_rules=[AdaptationRule("mastery_achieved", "progress_to_main_topic")],
                )
            ]
        return [
            Intervention(
                id=f"adaptive_practice_{gap.id}",
                type=InterventionType.ADAPTIVE_EXERCISES,
                duration_minutes=30,
                description="Adaptive practice exercises targeting identified gaps",
                adaptation_rules=[
                    AdaptationRule("accuracy_improving", "increase_difficulty", {"increment": 0.1})
                ],
            )
        ]

    # ========================================================================
    # Internals
    # ========================================================================

    @staticmethod
    def _collect_objective_progress(progress: StudentProgressData) -> dict[str, ObjectiveProgress]:
        """Explicit objective progresses first, then those nested in lessons and units."""
        collected: dict[str, ObjectiveProgress] = {}
        nested = [
            *progress.objective_progresses,
            *(op for lp in progress.lesson_progresses for op in lp.objective_progresses),
            *(op for up in progress.unit_progresses for op in up.objective_progresses),
        ]
        for op in nested:
            collected.setdefault(op.objective_id, op)
        return collected

    @staticmethod
    def _area_from_objectives(
        objectives: list[ObjectiveProgress],
        results: list[ExerciseResult | AssessmentResult],
    ) -> AreaPerformance:
        """
        Performance over a group of objectives.

        Spread and trend come from the results tagged with those objectives;
        when none are tagged, from the objective scores themselves.
        """
        ids = [op.objective_id for op in objectives]
        id_set = set(ids)
        tagged = [r.score / 100 for r in results if r.objective_id in id_set]
        series = tagged or [op.current_score / 100 for op in objectives]

        return AreaPerformance(
            accuracy=mean([op.current_score / 100 for op in objectives]),
            consistency=calculate_consistency(series),
            improvement=calculate_trend(series),
            attempts=sum(op.attempts for op in objectives),
            objective_ids=ids,
        )

    @staticmethod
    def _group_by_type(gaps: list[LearningGap]) -> dict[GapType, list[LearningGap]]:
        grouped: dict[GapType, list[LearningGap]] = {}
        for gap in gaps:
            grouped.setdefault(gap.type, []).append(gap)
        return grouped

    @staticmethod
    def _group_by_objective(gaps: list[LearningGap]) -> dict[str, list[LearningGap]]:
        grouped: dict[str, list[LearningGap]] = {}
        for gap in gaps:
            for objective_id in gap.affected_objectives:
                grouped.setdefault(objective_id, []).append(gap)
        return grouped

    @staticmethod
    def _risk_factors(gaps: list[LearningGap]) -> list[str]:
        factors = []
        if any(gap.type == GapType.PREREQUISITE_KNOWLEDGE for gap in gaps):
            factors.append("Missing foundational knowledge")
        if sum(1 for gap in gaps if gap.severity == GapSeverity.CRITICAL) > 1:
            factors.append("Multiple critical gaps")
        return factors

    @staticmethod
    def _strengths(data: PerformanceData) -> list[str]:
        strengths = [
            f"Strong performance in {concept}"
            for concept, perf in data.concept_performance.items()
            if perf.accuracy >= 0.8
        ]
        if data.overall is not None and data.overall.attempts >= 5:
            strengths.append("Shows persistence")
        return strengths


# ============================================================================
# Utility functions
# ============================================================================


def calculate_gap_priority(gap: LearningGap) -> float:
    """0.4 severity weight + 0.3 impact + 0.2 evidence + 0.1 persistence."""
    return (
        gap.severity.weight * 0.4
        + gap.impact_on_progression * 0.3
        + gap.evidence_strength * 0.2
        + gap.persistence_level * 0.1
    )


def filter_gaps_by_priority(
    gaps: list[LearningGap], min_priority: float = MIN_GAP_PRIORITY
) -> list[LearningGap]:
    return [gap for gap in gaps if calculate_gap_priority(gap) >= min_priority]


def get_progression_blocking_gaps(gaps: list[LearningGap]) -> list[LearningGap]:
    """Gaps with high progression impact and critical or major severity."""
    return [
        gap
        for gap in gaps
        if gap.impact_on_progression > BLOCKING_IMPACT
        and gap.severity in (GapSeverity.CRITICAL, GapSeverity.MAJOR)
    ]
