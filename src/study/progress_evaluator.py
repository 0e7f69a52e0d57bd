"""
Progress Evaluator - Objective, lesson and unit progress from raw results.

Stateless: every call rebuilds progress from the result sets it is given.

Mastery is conjunctive at every level above the objective:
- Lesson mastered = lesson mean >= threshold AND every required objective mastered
- Unit mastered = unit mean >= threshold AND every required lesson mastered

A single weak objective therefore cannot hide behind a high average.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from loguru import logger

from src.core.mastery import PerformanceMetrics, clamp, mean, population_variance
from src.core.models import (
    AssessmentResult,
    DifficultyLevel,
    ExerciseResult,
    LearningObjective,
    Lesson,
    ObjectiveCategory,
    ProgressStatus,
    Unit,
    validate_lesson,
    validate_objective,
    validate_unit,
)


STRUGGLING_SCORE = 60.0
ENRICHMENT_SCORE = 90.0
EVIDENCE_FOR_FULL_CONFIDENCE = 5

DEFAULT_ENRICHMENT_CONTENT = [
    "enrichment-activities",
    "advanced-challenges",
    "cross-curricular-projects",
]


# =============================================================================
# PROGRESS RECORDS
# =============================================================================


@dataclass
class ObjectiveProgress:
    objective_id: str
    status: ProgressStatus
    current_score: float  # 0-100
    attempts: int = 0
    time_spent_seconds: float = 0.0
    mastery_achieved: bool = False
    last_activity: datetime | None = None  # None until a result exists
    completed_exercises: list[str] = field(default_factory=list)
    completed_assessments: list[str] = field(default_factory=list)
    objective: LearningObjective | None = None

    @property
    def evidence_count(self) -> int:
        return len(self.completed_exercises) + len(self.completed_assessments)


@dataclass
class LessonProgress:
    lesson_id: str
    status: ProgressStatus
    overall_score: float
    time_spent_seconds: float = 0.0
    mastery_achieved: bool = False
    completed_at: datetime | None = None
    objective_progresses: list[ObjectiveProgress] = field(default_factory=list)
    exercise_results: list[ExerciseResult] = field(default_factory=list)
    assessment_results: list[AssessmentResult] = field(default_factory=list)
    lesson: Lesson | None = None


@dataclass
class UnitProgress:
    unit_id: str
    status: ProgressStatus
    overall_score: float
    time_spent_seconds: float = 0.0
    mastery_achieved: bool = False
    completed_at: datetime | None = None
    lesson_progresses: list[LessonProgress] = field(default_factory=list)
    prerequisites_satisfied: bool = True
    unit: Unit | None = None

    @property
    def objective_progresses(self) -> list[ObjectiveProgress]:
        return [op for lp in self.lesson_progresses for op in lp.objective_progresses]


# =============================================================================
# COMPETENCY AND DECISIONS
# =============================================================================


class CompetencyBand(str, Enum):
    NOVICE = "novice"
    DEVELOPING = "developing"
    PROFICIENT = "proficient"
    ADVANCED = "advanced"
    EXPERT = "expert"

    @classmethod
    def from_score(cls, score: float) -> CompetencyBand:
        """Band for a 0-100 score."""
        if score >= 95:
            return cls.EXPERT
        elif score >= 90:
            return cls.ADVANCED
        elif score >= 80:
            return cls.PROFICIENT
        elif score >= 60:
            return cls.DEVELOPING
        return cls.NOVICE


@dataclass
class CompetencyLevel:
    level: CompetencyBand
    score: float
    confidence: float  # 0-1
    evidence_count: int
    last_assessed: datetime | None = None


CompetencyMap = dict[str, CompetencyLevel]


@dataclass
class LearningPathDecision:
    can_progress: bool
    reason: str
    confidence: float
    next_recommended_content: list[str] = field(default_factory=list)
    remediation_required: bool = False
    remediation_content: list[str] = field(default_factory=list)
    enrichment_available: bool = False
    enrichment_content: list[str] = field(default_factory=list)


@dataclass
class PrerequisiteCheck:
    satisfied: bool
    missing: list[str] = field(default_factory=list)


# =============================================================================
# VISUALIZATION
# =============================================================================


@dataclass
class UnitProgressPoint:
    unit_id: str
    title: str
    progress: float
    status: ProgressStatus


@dataclass
class ObjectiveMapPoint:
    objective_id: str
    title: str
    category: ObjectiveCategory
    mastery_level: float
    status: ProgressStatus


@dataclass
class PerformanceTrendPoint:
    date: datetime
    score: float
    time_spent_seconds: float
    difficulty: DifficultyLevel


@dataclass
class CompetencyRadarPoint:
    category: ObjectiveCategory
    level: float
    max_level: float = 100.0


@dataclass
class ProgressVisualizationData:
    overall_progress: float
    unit_progress: list[UnitProgressPoint] = field(default_factory=list)
    objective_map: list[ObjectiveMapPoint] = field(default_factory=list)
    performance_trends: list[PerformanceTrendPoint] = field(default_factory=list)
    competency_radar: list[CompetencyRadarPoint] = field(default_factory=list)


# =============================================================================
# PROGRESS EVALUATOR
# =============================================================================


def _applies_to(result: ExerciseResult | AssessmentResult, objective_id: str) -> bool:
    return result.objective_id is None or result.objective_id == objective_id


def _latest(timestamps: list[datetime | None]) -> datetime | None:
    known = [ts for ts in timestamps if ts is not None]
    return max(known) if known else None


class ProgressEvaluator:
    """
    Turns result sets into progress records and learning-path decisions.

    Usage:
        evaluator = ProgressEvaluator()
        unit_progress = evaluator.evaluate_unit_progress(unit, exercises, assessments)
        competency = evaluator.generate_competency_map(unit.all_objectives,
                                                       unit_progress.objective_progresses)
        decision = evaluator.make_learning_path_decision(unit, unit_progress, competency)
    """

    def evaluate_objective_progress(
        self,
        objective: LearningObjective,
        exercise_results: list[ExerciseResult],
        assessment_results: list[AssessmentResult],
    ) -> ObjectiveProgress:
        """
        Average every result that applies to the objective.

        Untagged results apply to every objective; tagged results only to
        their own.

        Raises:
            ValueError: If the objective is missing or has no id
        """
        objective = validate_objective(objective)

        exercises = [r for r in exercise_results if _applies_to(r, objective.id)]
        assessments = [r for r in assessment_results if _applies_to(r, objective.id)]
        results: list[ExerciseResult | AssessmentResult] = [*exercises, *assessments]

        if not results:
            return ObjectiveProgress(
                objective_id=objective.id,
                status=ProgressStatus.NOT_STARTED,
                current_score=0.0,
                objective=objective,
            )

        score = clamp(mean([r.score for r in results]), 0.0, 100.0)
        mastered = score >= objective.mastery_threshold * 100

        if mastered:
            status = ProgressStatus.MASTERED
        elif any(r.score > 0 for r in results):
            status = ProgressStatus.IN_PROGRESS
        else:
            status = ProgressStatus.NOT_STARTED

        return ObjectiveProgress(
            objective_id=objective.id,
            status=status,
            current_score=score,
            attempts=sum(r.attempts for r in results),
            time_spent_seconds=sum(r.time_spent_seconds for r in results),
            mastery_achieved=mastered,
            last_activity=_latest([r.completed_at for r in results]),
            completed_exercises=[r.exercise_id for r in exercises],
            completed_assessments=[r.assessment_id for r in assessments],
            objective=objective,
        )

    def evaluate_lesson_progress(
        self,
        lesson: Lesson,
        exercise_results: list[ExerciseResult],
        assessment_results: list[AssessmentResult],
    ) -> LessonProgress:
        """
        Mean of objective scores plus the lesson's own exercise and
        assessment scores, with a conjunctive mastery gate.

        Raises:
            ValueError: If the lesson or one of its objectives is invalid
        """
        lesson = validate_lesson(lesson)

        objective_progresses = [
            self.evaluate_objective_progress(objective, exercise_results, assessment_results)
            for objective in lesson.objectives
        ]
        exercise_ids = set(lesson.exercise_ids)
        assessment_ids = set(lesson.assessment_ids)
        own_exercises = [r for r in exercise_results if r.exercise_id in exercise_ids]
        own_assessments = [r for r in assessment_results if r.assessment_id in assessment_ids]

        scores = [
            *(op.current_score for op in objective_progresses),
            *(r.score for r in own_exercises),
            *(r.score for r in own_assessments),
        ]
        overall = clamp(mean(scores), 0.0, 100.0)
        time_spent = (
            sum(op.time_spent_seconds for op in objective_progresses)
            + sum(r.time_spent_seconds for r in own_exercises)
            + sum(r.time_spent_seconds for r in own_assessments)
        )

        required_mastered = all(
            op.mastery_achieved
            for op in objective_progresses
            if op.objective is None or op.objective.required
        )
        # Empty lessons carry no evidence and are never mastered
        if scores and overall >= lesson.mastery_threshold * 100 and required_mastered:
            status = ProgressStatus.MASTERED
        elif any(score > 0 for score in scores):
            status = ProgressStatus.IN_PROGRESS
        else:
            status = ProgressStatus.NOT_STARTED

        completed_at = None
        if status == ProgressStatus.MASTERED:
            completed_at = _latest(
                [op.last_activity for op in objective_progresses]
                + [r.completed_at for r in own_exercises]
                + [r.completed_at for r in own_assessments]
            )

        return LessonProgress(
            lesson_id=lesson.id,
            status=status,
            overall_score=overall,
            time_spent_seconds=time_spent,
            mastery_achieved=status == ProgressStatus.MASTERED,
            completed_at=completed_at,
            objective_progresses=objective_progresses,
            exercise_results=own_exercises,
            assessment_results=own_assessments,
            lesson=lesson,
        )

    def evaluate_unit_progress(
        self,
        unit: Unit,
        exercise_results: list[ExerciseResult],
        assessment_results: list[AssessmentResult],
        completed_units: list[str] | None = None,
    ) -> UnitProgress:
        """
        Mean of lesson scores with the same conjunctive gate over required lessons.

        Args:
            unit: Unit to evaluate
            exercise_results: All exercise results for the learner
            assessment_results: All assessment results for the learner
            completed_units: Unit ids already completed, for the prerequisite check

        Raises:
            ValueError: If the unit or any lesson in it is invalid
        """
        unit = validate_unit(unit)

        lesson_progresses = [
            self.evaluate_lesson_progress(lesson, exercise_results, assessment_results)
            for lesson in unit.lessons
        ]
        overall = clamp(mean([lp.overall_score for lp in lesson_progresses]), 0.0, 100.0)

        required_mastered = all(
            lp.mastery_achieved
            for lp in lesson_progresses
            if lp.lesson is None or lp.lesson.required
        )
        if lesson_progresses and overall >= unit.mastery_threshold * 100 and required_mastered:
            status = ProgressStatus.MASTERED
        elif any(lp.status != ProgressStatus.NOT_STARTED for lp in lesson_progresses):
            status = ProgressStatus.IN_PROGRESS
        else:
            status = ProgressStatus.NOT_STARTED

        completed_at = None
        if status == ProgressStatus.MASTERED:
            completed_at = _latest([lp.completed_at for lp in lesson_progresses])

        prerequisites = check_prerequisites(unit, completed_units or [])
        if not prerequisites.satisfied:
            logger.debug(f"Unit {unit.id} missing prerequisites: {prerequisites.missing}")

        return UnitProgress(
            unit_id=unit.id,
            status=status,
            overall_score=overall,
            time_spent_seconds=sum(lp.time_spent_seconds for lp in lesson_progresses),
            mastery_achieved=status == ProgressStatus.MASTERED,
            completed_at=completed_at,
            lesson_progresses=lesson_progresses,
            prerequisites_satisfied=prerequisites.satisfied,
            unit=unit,
        )

    # =========================================================================
    # COMPETENCY MAP
    # =========================================================================

    def generate_competency_map(
        self,
        objectives: list[LearningObjective],
        objective_progresses: list[ObjectiveProgress],
    ) -> CompetencyMap:
        """Per-objective band and confidence. Objectives without progress are novice."""
        by_id = {op.objective_id: op for op in objective_progresses}

        competency: CompetencyMap = {}
        for objective in objectives:
            progress = by_id.get(objective.id)
            if progress is None:
                competency[objective.id] = CompetencyLevel(
                    level=CompetencyBand.NOVICE, score=0.0, confidence=0.0, evidence_count=0
                )
                continue

            evidence = progress.evidence_count
            confidence = min(1.0, evidence / EVIDENCE_FOR_FULL_CONFIDENCE) * (
                progress.current_score / 100
            )
            competency[objective.id] = CompetencyLevel(
                level=CompetencyBand.from_score(progress.current_score),
                score=progress.current_score,
                confidence=clamp(confidence, 0.0, 1.0),
                evidence_count=evidence,
                last_assessed=progress.last_activity,
            )

        return competency

    # =========================================================================
    # LEARNING PATH
    # =========================================================================

    def make_learning_path_decision(
        self,
        unit: Unit,
        unit_progress: UnitProgress,
        competency_map: CompetencyMap,
    ) -> LearningPathDecision:
        """
        Decide between progressing, remediating and enriching.

        Checked in order:
        1. Unit mastered: progress, enrichment unlocked (confidence 0.95)
        2. Any started lesson under 60%: remediation (0.8)
        3. First unmastered lesson by order: continue there (0.85)
        4. Otherwise: more practice (0.7)
        """
        lessons = unit_progress.lesson_progresses

        if unit_progress.mastery_achieved:
            return LearningPathDecision(
                can_progress=True,
                reason="Unit mastery achieved - ready for next unit",
                confidence=0.95,
                enrichment_available=True,
                enrichment_content=self._enrichment_content(unit, competency_map),
            )

        struggling = [
            lp
            for lp in lessons
            if lp.overall_score < STRUGGLING_SCORE and lp.status != ProgressStatus.NOT_STARTED
        ]
        if struggling:
            return LearningPathDecision(
                can_progress=False,
                reason=f"Remediation needed for {len(struggling)} lesson(s)",
                confidence=0.8,
                remediation_required=True,
                remediation_content=self._remediation_content(struggling),
            )

        incomplete = [lp for lp in lessons if not lp.mastery_achieved]
        if incomplete:
            next_lesson = min(incomplete, key=lambda lp: lp.lesson.order_index if lp.lesson else 0)
            title = next_lesson.lesson.title if next_lesson.lesson else next_lesson.lesson_id
            enrich = unit_progress.overall_score >= ENRICHMENT_SCORE
            return LearningPathDecision(
                can_progress=True,
                reason=f"Continue with next lesson: {title}",
                confidence=0.85,
                next_recommended_content=[next_lesson.lesson_id],
                enrichment_available=enrich,
                enrichment_content=self._enrichment_content(unit, competency_map) if enrich else [],
            )

        return LearningPathDecision(
            can_progress=False,
            reason="Additional practice needed to achieve mastery",
            confidence=0.7,
            remediation_required=True,
            remediation_content=self._remediation_content(lessons),
        )

    # =========================================================================
    # VISUALIZATION
    # =========================================================================

    def generate_progress_visualization_data(
        self,
        units: list[Unit],
        unit_progresses: list[UnitProgress],
    ) -> ProgressVisualizationData:
        """Chart-ready summary across units."""
        by_unit = {up.unit_id: up for up in unit_progresses}
        overall = mean([up.overall_score for up in unit_progresses])

        unit_points = []
        for unit in units:
            progress = by_unit.get(unit.id)
            unit_points.append(
                UnitProgressPoint(
                    unit_id=unit.id,
                    title=unit.title,
                    progress=progress.overall_score if progress else 0.0,
                    status=progress.status if progress else ProgressStatus.NOT_STARTED,
                )
            )

        objective_progress = {
            op.objective_id: op for up in unit_progresses for op in up.objective_progresses
        }
        objective_points = []
        for unit in units:
            for objective in unit.all_objectives:
                progress = objective_progress.get(objective.id)
                objective_points.append(
                    ObjectiveMapPoint(
                        objective_id=objective.id,
                        title=objective.title,
                        category=objective.category,
                        mastery_level=progress.current_score if progress else 0.0,
                        status=progress.status if progress else ProgressStatus.NOT_STARTED,
                    )
                )

        trends = []
        for up in unit_progresses:
            for lp in up.lesson_progresses:
                when = lp.completed_at or _latest(
                    [op.last_activity for op in lp.objective_progresses]
                )
                if when is None:
                    continue
                trends.append(
                    PerformanceTrendPoint(
                        date=when,
                        score=lp.overall_score,
                        time_spent_seconds=lp.time_spent_seconds,
                        difficulty=lp.lesson.difficulty if lp.lesson else DifficultyLevel.BEGINNER,
                    )
                )
        trends.sort(key=lambda point: point.date)

        radar = [
            CompetencyRadarPoint(
                category=category,
                level=mean([p.mastery_level for p in objective_points if p.category == category]),
            )
            for category in ObjectiveCategory
        ]

        return ProgressVisualizationData(
            overall_progress=overall,
            unit_progress=unit_points,
            objective_map=objective_points,
            performance_trends=trends,
            competency_radar=radar,
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _enrichment_content(unit: Unit, competency_map: CompetencyMap) -> list[str]:
        strong = {CompetencyBand.EXPERT, CompetencyBand.ADVANCED}
        content = [
            f"enrichment-{objective.id}"
            for objective in unit.all_objectives
            if objective.id in competency_map and competency_map[objective.id].level in strong
        ]
        return content or list(DEFAULT_ENRICHMENT_CONTENT)

    @staticmethod
    def _remediation_content(lesson_progresses: list[LessonProgress]) -> list[str]:
        keys: list[str] = []
        for lp in lesson_progresses:
            for op in lp.objective_progresses:
                key = f"remediation-{op.objective_id}"
                if op.current_score < STRUGGLING_SCORE and key not in keys:
                    keys.append(key)
        return keys


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def calculate_result_metrics(
    exercise_results: list[ExerciseResult],
    assessment_results: list[AssessmentResult],
) -> PerformanceMetrics:
    """
    Performance summary across raw results.

    - accuracy: mean score
    - efficiency: accuracy per minute of total time
    - consistency: 100 - standard deviation
    - improvement: mean of the latest 30% minus mean of the earliest 30%
    - retention_rate: consistency + 30% of accuracy, capped at 100
    """
    results: list[ExerciseResult | AssessmentResult] = [*exercise_results, *assessment_results]
    if not results:
        return PerformanceMetrics()

    scores = [r.score for r in results]
    accuracy = mean(scores)

    minutes = sum(r.time_spent_seconds for r in results) / 60
    efficiency = accuracy / minutes if minutes > 0 else 0.0

    consistency = max(0.0, 100 - math.sqrt(population_variance(scores)))

    # Undated results sort first, in input order
    dated = sorted(
        results,
        key=lambda r: (r.completed_at is not None, r.completed_at.timestamp() if r.completed_at else 0.0),
    )
    window = math.ceil(len(dated) * 0.3)
    early = mean([r.score for r in dated[:window]])
    recent = mean([r.score for r in dated[-window:]])

    return PerformanceMetrics(
        accuracy=accuracy,
        efficiency=efficiency,
        consistency=consistency,
        improvement=recent - early,
        retention_rate=min(100.0, consistency + accuracy * 0.3),
    )


def check_prerequisites(unit: Unit, completed_units: list[str]) -> PrerequisiteCheck:
    """Which prerequisite units are not yet completed."""
    completed = set(completed_units)
    missing = [unit_id for unit_id in unit.prerequisite_unit_ids if unit_id not in completed]
    return PrerequisiteCheck(satisfied=not missing, missing=missing)
