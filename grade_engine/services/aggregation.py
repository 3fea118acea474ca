"""
Grade aggregation: weighted final averages, letter grades and status.

A missing period is never read as a score of zero. The final average is
normalized by the weights of the periods actually present, and is undefined
when nothing (or not enough) has been recorded.
"""

import logging
import statistics
from collections import Counter
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from grade_engine.core.config import settings
from grade_engine.core.grading import letter_grade_for
from grade_engine.schemas.grades import GradeEntry, GradeIdentity, GradePeriod, GradeStatus

logger = logging.getLogger(__name__)


@dataclass
class AggregateResult:
    final_average: Optional[float]
    status: GradeStatus
    letter_grade: str


@dataclass
class StudentGradeAggregate:
    """Derived per (student, subject) view; a cache, never a ledger."""
    student_id: str
    subject_id: str
    period_percentages: Dict[GradePeriod, float] = field(default_factory=dict)
    final_average: Optional[float] = None
    status: GradeStatus = GradeStatus.INCOMPLETE
    letter_grade: str = "INC"

    @property
    def completion_percentage(self) -> float:
        return len(self.period_percentages) / len(GradePeriod) * 100

    @property
    def prelim_grade(self) -> Optional[float]:
        return self.period_percentages.get(GradePeriod.PRELIM)

    @property
    def midterm_grade(self) -> Optional[float]:
        return self.period_percentages.get(GradePeriod.MIDTERM)

    @property
    def final_grade(self) -> Optional[float]:
        return self.period_percentages.get(GradePeriod.FINAL)


def _normalize_weights(weights: Optional[Mapping]) -> Dict[GradePeriod, float]:
    source = weights if weights is not None else settings.PERIOD_WEIGHTS
    return {GradePeriod(period): float(weight) for period, weight in source.items()}


class GradeAggregator:
    """Combines per-period percentages into a final grade."""

    def __init__(
        self,
        weights: Optional[Mapping] = None,
        passing_threshold: Optional[float] = None,
        minimum_periods: Optional[int] = None
    ):
        self.weights = _normalize_weights(weights)
        self.passing_threshold = (
            settings.PASSING_THRESHOLD if passing_threshold is None else passing_threshold
        )
        self.minimum_periods = (
            settings.MINIMUM_PERIODS_FOR_AVERAGE if minimum_periods is None else minimum_periods
        )

    def final_average(
        self,
        period_percentages: Mapping,
        weights: Optional[Mapping] = None,
        minimum_periods: Optional[int] = None
    ) -> Optional[float]:
        """
        Weighted average over the periods present.

        Args:
            period_percentages: Period -> percentage; None or missing means not recorded
            weights: Per-call weight override (e.g. a subject's configuration)
            minimum_periods: Per-call override of how many periods must be present

        Returns:
            The normalized weighted average, or None when undefined
        """
        active_weights = _normalize_weights(weights) if weights is not None else self.weights
        required = self.minimum_periods if minimum_periods is None else minimum_periods

        present = {
            GradePeriod(period): float(value)
            for period, value in period_percentages.items()
            if value is not None
        }
        if len(present) < required:
            return None

        weighted_sum = 0.0
        weight_total = 0.0
        for period, value in present.items():
            weight = active_weights.get(period, 0.0)
            weighted_sum += weight * value
            weight_total += weight

        if weight_total <= 0:
            return None
        return weighted_sum / weight_total

    def determine_status(self, final_average: Optional[float]) -> GradeStatus:
        if final_average is None:
            return GradeStatus.INCOMPLETE
        if final_average >= self.passing_threshold:
            return GradeStatus.PASSING
        return GradeStatus.AT_RISK

    def aggregate(
        self,
        period_percentages: Mapping,
        weights: Optional[Mapping] = None,
        minimum_periods: Optional[int] = None
    ) -> AggregateResult:
        average = self.final_average(period_percentages, weights, minimum_periods)
        return AggregateResult(
            final_average=average,
            status=self.determine_status(average),
            letter_grade=letter_grade_for(average)
        )

    def build_aggregate(
        self,
        student_id: str,
        subject_id: str,
        grades: Iterable[GradeEntry],
        weights: Optional[Mapping] = None
    ) -> StudentGradeAggregate:
        """Rebuild the aggregate view from one student's entries in one subject."""
        latest: Dict[GradePeriod, GradeEntry] = {}
        for grade in grades:
            if grade.student_id != student_id or grade.subject_id != subject_id:
                continue
            if grade.grade_period is None:
                continue
            current = latest.get(grade.grade_period)
            if current is None or grade.date_recorded >= current.date_recorded:
                latest[grade.grade_period] = grade

        period_percentages = {
            period: latest[period].percentage for period in GradePeriod if period in latest
        }
        result = self.aggregate(period_percentages, weights)
        return StudentGradeAggregate(
            student_id=student_id,
            subject_id=subject_id,
            period_percentages=period_percentages,
            final_average=result.final_average,
            status=result.status,
            letter_grade=result.letter_grade
        )

    def class_average(self, grades: Iterable[GradeEntry]) -> Optional[float]:
        percentages = [grade.percentage for grade in grades]
        if not percentages:
            return None
        return statistics.fmean(percentages)

    def class_final_average(self, aggregates: Iterable[StudentGradeAggregate]) -> Optional[float]:
        averages = [a.final_average for a in aggregates if a.final_average is not None]
        if not averages:
            return None
        return statistics.fmean(averages)

    def status_distribution(self, aggregates: Iterable[StudentGradeAggregate]) -> Dict[GradeStatus, int]:
        counts = Counter(a.status for a in aggregates)
        return {status: counts.get(status, 0) for status in GradeStatus}


GradesLoader = Callable[[str, str], Awaitable[Tuple[List[GradeEntry], bool]]]


class GradeAggregateCache:
    """
    On-demand projection of StudentGradeAggregate, keyed by (student, subject).

    Invalidated by identity tuple whenever a contributing entry changes. The
    loader returns the entries plus whether they form a complete view; a
    partial view (remote unreachable) is served but never cached, and neither
    is a view that was invalidated while it was loading.
    """

    def __init__(self, aggregator: Optional[GradeAggregator] = None):
        self.aggregator = aggregator or GradeAggregator()
        self._cache: Dict[Tuple[str, str], StudentGradeAggregate] = {}
        self._generations: Dict[Tuple[str, str], int] = {}
        self._epoch = 0

    def _generation(self, key: Tuple[str, str]) -> Tuple[int, int]:
        return self._epoch, self._generations.get(key, 0)

    async def get(self, student_id: str, subject_id: str, loader: GradesLoader) -> StudentGradeAggregate:
        key = (student_id, subject_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        generation = self._generation(key)
        grades, complete = await loader(student_id, subject_id)
        aggregate = self.aggregator.build_aggregate(student_id, subject_id, grades)

        if not complete:
            logger.debug(f"Aggregate for {student_id}/{subject_id} built from a partial view, not cached")
        elif self._generation(key) != generation:
            logger.debug(f"Aggregate for {student_id}/{subject_id} changed while loading, not cached")
        else:
            self._cache[key] = aggregate
        return aggregate

    def invalidate(self, identity: GradeIdentity) -> None:
        key = (identity.student_id, identity.subject_id)
        self._generations[key] = self._generations.get(key, 0) + 1
        if self._cache.pop(key, None) is not None:
            logger.debug(f"Invalidated aggregate for {identity.student_id}/{identity.subject_id}")

    def clear(self) -> None:
        self._epoch += 1
        self._generations.clear()
        self._cache.clear()

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._cache
