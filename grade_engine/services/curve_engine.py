"""
Curve Engine

Descriptive statistics over a cohort's period scores and curve transforms,
split into a pure preview pass and an explicit, ordered apply pass.

Previews always start from each entry's pre-curve percentage, so repeated
previews with different parameters never drift and re-curving never
compounds on an already-curved value.
"""

import logging
import math
import statistics
import uuid
from typing import Callable, List, Optional, Sequence, TYPE_CHECKING

from grade_engine.core.config import settings
from grade_engine.core.errors import DegenerateCurveError, EmptyCohortError, InvalidCohortError
from grade_engine.core.grading import grade_distribution, letter_grade_for
from grade_engine.schemas.curves import (
    CurveApplication, CurveCommit, CurvePreview, CurveStatistics, CurveType, GradeCurve
)
from grade_engine.schemas.grades import GradeEntry, WriteResultResponse, utc_now
from grade_engine.services.validation import ScoreValidator

if TYPE_CHECKING:
    from grade_engine.services.curve_repository import CurveRepository
    from grade_engine.services.sync.reconciled_store import ReconciledGradeStore

logger = logging.getLogger(__name__)

Transform = Callable[[float], float]


class CurveEngine:
    """
    Statistics, preview and apply for grade curves.

    Preview state is caller-local: the engine keeps no state between calls.
    """

    def __init__(
        self,
        passing_threshold: Optional[float] = None,
        validator: Optional[ScoreValidator] = None
    ):
        self.passing_threshold = (
            settings.PASSING_THRESHOLD if passing_threshold is None else passing_threshold
        )
        self.validator = validator or ScoreValidator()

    # === statistics ===

    def statistics(self, scores: Sequence[float]) -> CurveStatistics:
        """
        Describe a cohort of scores.

        Standard deviation uses the population formula (divide by N): the
        cohort is the whole class, not a sample.

        Raises:
            EmptyCohortError: When no scores are supplied
        """
        values = [float(score) for score in scores]
        if not values:
            raise EmptyCohortError()

        passing = sum(1 for value in values if value >= self.passing_threshold)
        return CurveStatistics(
            average=statistics.fmean(values),
            standard_deviation=statistics.pstdev(values),
            median=statistics.median(values),
            highest=max(values),
            lowest=min(values),
            passing_rate=passing / len(values) * 100,
            total_students=len(values),
            grade_distribution=grade_distribution(values)
        )

    # === preview ===

    def curve_scores(self, scores: Sequence[float], curve: GradeCurve) -> List[float]:
        """Curve raw scores and clamp them to the curve's bounds."""
        values = [float(score) for score in scores]
        if not values:
            raise EmptyCohortError()

        self._check_bounds(curve)
        transform = self._build_transform(values, curve)
        raw = [transform(value) for value in values]
        curved = [self._clamp(value, curve) for value in raw]
        self._check_degenerate(raw, curved, curve)
        return curved

    def preview_curve(self, grades: Sequence[GradeEntry], curve: GradeCurve) -> CurvePreview:
        """
        Compute the effect of a curve without persisting anything.

        Args:
            grades: The cohort's entries for one subject and period
            curve: Curve configuration to try

        Returns:
            CurvePreview with per-student applications and before/after statistics

        Raises:
            EmptyCohortError: No grades supplied
            InvalidCohortError: Entries span subjects or periods, lack a period, or repeat a student
            DegenerateCurveError: Bounds inverted or every score clamped to one bound
        """
        self._check_cohort(grades, curve)
        originals = [grade.baseline_percentage for grade in grades]
        curved = self.curve_scores(originals, curve)

        applications = [
            CurveApplication(
                student_id=grade.student_id,
                student_name=grade.student_name,
                original_score=original,
                curved_score=curved_score,
                adjustment=curved_score - original
            )
            for grade, original, curved_score in zip(grades, originals, curved)
        ]

        return CurvePreview(
            curve=curve,
            applications=applications,
            statistics_before=self.statistics(originals),
            statistics_after=self.statistics(curved)
        )

    # === apply ===

    async def apply_curve(
        self,
        grades: Sequence[GradeEntry],
        curve: GradeCurve,
        curve_repository: "CurveRepository",
        grade_store: "ReconciledGradeStore"
    ) -> CurveCommit:
        """
        Commit a curve.

        Order: curve configuration, then curved grade entries, then the
        application history. The stored configuration is enough to regenerate
        the history if a crash interrupts the last step.
        """
        # Configuration errors abort before anything is written
        preview = self.preview_curve(grades, curve)

        committed = curve.model_copy(update={
            'id': curve.id or str(uuid.uuid4()),
            'applied_date': curve.applied_date or utc_now(),
            'is_active': True,
        })
        curved_entries = [
            self.curved_entry(grade, application, committed)
            for grade, application in zip(grades, preview.applications)
        ]
        self._check_curved_entries(curved_entries)

        committed = await curve_repository.create_curve(committed)
        logger.info(
            f"Applying {committed.curve_type.value} curve {committed.id} to "
            f"{len(grades)} grades in subject {committed.subject_id}"
        )

        write_results: List[WriteResultResponse] = []
        for curved_entry in curved_entries:
            result = await grade_store.write(curved_entry)
            write_results.append(result.to_response())

        await curve_repository.save_applications(committed.id, preview.applications)

        return CurveCommit(
            curve=committed,
            applications=preview.applications,
            write_results=write_results
        )

    def curved_entry(self, grade: GradeEntry, application: CurveApplication, curve: GradeCurve) -> GradeEntry:
        curved_percentage = application.curved_score
        max_score = grade.max_score if grade.max_score > 0 else 100.0
        return grade.model_copy(update={
            'percentage': curved_percentage,
            'score': curved_percentage * max_score / 100,
            'letter_grade': letter_grade_for(curved_percentage),
            'original_percentage': application.original_score,
            'curve_id': curve.id,
            'date_recorded': utc_now(),
        })

    # === transforms ===

    def _build_transform(self, values: List[float], curve: GradeCurve) -> Transform:
        factor = curve.adjustment_factor

        if curve.curve_type == CurveType.LINEAR:
            return lambda x: x + factor

        if curve.curve_type == CurveType.PERCENTAGE:
            return lambda x: x * (1 + factor / 100)

        if curve.curve_type == CurveType.TARGET_AVERAGE:
            shift = curve.target_average - statistics.fmean(values)
            return lambda x: x + shift

        if curve.curve_type == CurveType.SQUARE_ROOT:
            return lambda x: 10 * math.sqrt(max(x, 0.0))

        if curve.curve_type == CurveType.BELL_CURVE:
            if factor <= 0:
                raise DegenerateCurveError(
                    "Bell curve requires a positive target standard deviation",
                    details={'adjustment_factor': factor}
                )
            mean = statistics.fmean(values)
            deviation = statistics.pstdev(values)
            target = curve.target_average
            if deviation == 0:
                return lambda x: target + (x - mean)
            return lambda x: target + (x - mean) * (factor / deviation)

        raise DegenerateCurveError(f"Unsupported curve type: {curve.curve_type}")

    def _check_bounds(self, curve: GradeCurve) -> None:
        if curve.max_grade < curve.min_grade:
            raise DegenerateCurveError(
                f"Maximum grade {curve.max_grade:g} is below minimum grade {curve.min_grade:g}",
                details={'max_grade': curve.max_grade, 'min_grade': curve.min_grade}
            )

    def _check_cohort(self, grades: Sequence[GradeEntry], curve: GradeCurve) -> None:
        errors = []
        if any(grade.grade_period is None for grade in grades):
            errors.append("Every grade needs a grade period")

        subjects = {grade.subject_id for grade in grades}
        periods = {grade.grade_period for grade in grades if grade.grade_period is not None}
        if len(subjects) > 1:
            errors.append(f"Grades span several subjects: {', '.join(sorted(subjects))}")
        if len(periods) > 1:
            errors.append(f"Grades span several periods: {', '.join(sorted(p.value for p in periods))}")
        if curve.subject_id and subjects - {curve.subject_id}:
            errors.append(f"Grades do not belong to subject {curve.subject_id}")
        if curve.grade_period is not None and periods - {curve.grade_period}:
            errors.append(f"Grades do not belong to period {curve.grade_period.value}")

        seen = set()
        duplicates = set()
        for grade in grades:
            if grade.student_id in seen:
                duplicates.add(grade.student_id)
            seen.add(grade.student_id)
        if duplicates:
            errors.append(f"Duplicate grades for students: {', '.join(sorted(duplicates))}")

        if errors:
            raise InvalidCohortError("Grades cannot be curved together", details={'errors': errors})

    def _check_curved_entries(self, entries: Sequence[GradeEntry]) -> None:
        errors = []
        for entry in entries:
            result = self.validator.validate_grade_input(entry.score, entry.max_score, entry.grade_period)
            errors.extend(f"{entry.student_id}: {error}" for error in result.errors)
        if errors:
            raise InvalidCohortError("Curved grades fail score validation", details={'errors': errors})

    def _check_degenerate(self, raw: List[float], curved: List[float], curve: GradeCurve) -> None:
        # Flat results are only an error when the clamp produced them
        if all(value == curved_value for value, curved_value in zip(raw, curved)):
            return
        if all(value == curve.max_grade for value in curved):
            bound = 'max_grade'
        elif all(value == curve.min_grade for value in curved):
            bound = 'min_grade'
        else:
            return
        raise DegenerateCurveError(
            f"Curve pushes every score to {bound} ({getattr(curve, bound):g})",
            details={'curve_type': curve.curve_type.value, 'bound': bound}
        )

    @staticmethod
    def _clamp(value: float, curve: GradeCurve) -> float:
        return min(max(value, curve.min_grade), curve.max_grade)

