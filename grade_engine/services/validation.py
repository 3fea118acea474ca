"""
Grade Validation Service

Checks single grade entries, batches, updates and period submissions against
structural and business rules. Errors block a submission, warnings are only
informational. Every rule is evaluated so callers see all violations at once.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from grade_engine.core.config import settings
from grade_engine.schemas.grades import (
    GradeEntry, GradeIdentity, GradePeriod, ValidationResultResponse, calculate_percentage
)

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of grade validation."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_lists(cls, errors: List[str], warnings: List[str]) -> "ValidationResult":
        return cls(is_valid=len(errors) == 0, errors=errors, warnings=warnings)

    def to_response(self) -> ValidationResultResponse:
        return ValidationResultResponse(
            is_valid=self.is_valid,
            errors=list(self.errors),
            warnings=list(self.warnings)
        )


REQUIRED_PERIODS = [GradePeriod.PRELIM, GradePeriod.MIDTERM, GradePeriod.FINAL]

# (attribute, error message) for fields that must not be blank
REQUIRED_FIELDS = [
    ('student_id', "Student ID is required"),
    ('subject_id', "Subject ID is required"),
    ('teacher_id', "Teacher ID is required"),
    ('student_name', "Student name is required"),
    ('subject_name', "Subject name is required"),
]


class ScoreValidator:
    """
    Pure predicate engine for grade entries.

    Holds only policy constants, so one instance can be shared freely.
    """

    def __init__(
        self,
        percentage_tolerance: Optional[float] = None,
        significant_change: Optional[float] = None
    ):
        self.percentage_tolerance = (
            settings.PERCENTAGE_TOLERANCE if percentage_tolerance is None else percentage_tolerance
        )
        self.significant_change = (
            settings.SIGNIFICANT_SCORE_CHANGE if significant_change is None else significant_change
        )

    def validate_grade(self, grade: GradeEntry) -> ValidationResult:
        """
        Validate one grade entry.

        Args:
            grade: The entry to check

        Returns:
            ValidationResult with every error and warning that applies
        """
        errors = self._score_errors(grade.score, grade.max_score)
        warnings: List[str] = []

        # Stated percentage must agree with score/max_score
        if grade.max_score > 0:
            calculated = calculate_percentage(grade.score, grade.max_score)
            if abs(calculated - grade.percentage) > self.percentage_tolerance:
                errors.append("Percentage calculation mismatch")

        if grade.grade_period is None:
            errors.append("Grade period is required")

        for attribute, message in REQUIRED_FIELDS:
            value = getattr(grade, attribute)
            if value is None or not str(value).strip():
                errors.append(message)

        if grade.score < 50 and grade.percentage < 50:
            warnings.append("Grade is below passing threshold")
        if grade.percentage >= 90:
            warnings.append("Excellent performance!")

        return ValidationResult.from_lists(errors, warnings)

    validate = validate_grade

    def validate_grade_input(
        self,
        score: float,
        max_score: float,
        grade_period: Optional[GradePeriod]
    ) -> ValidationResult:
        """Validate raw form input before an entry is built."""
        errors = self._score_errors(score, max_score)
        warnings: List[str] = []

        if grade_period is None:
            errors.append("Grade period is required")

        if max_score > 0:
            percentage = calculate_percentage(score, max_score)
            if percentage < 50:
                warnings.append("Grade is below passing threshold")
            if percentage >= 90:
                warnings.append("Excellent performance!")

        return ValidationResult.from_lists(errors, warnings)

    def validate_batch_grades(self, grades: List[GradeEntry]) -> ValidationResult:
        """
        Validate a batch of entries.

        Row errors and warnings are prefixed with the 1-based row number.
        Duplicate identity tuples within the batch are reported once per tuple.
        """
        if not grades:
            return ValidationResult.from_lists(["No grades provided for validation"], [])

        errors: List[str] = []
        warnings: List[str] = []

        for index, grade in enumerate(grades, start=1):
            result = self.validate_grade(grade)
            errors.extend(f"Grade {index}: {error}" for error in result.errors)
            warnings.extend(f"Grade {index}: {warning}" for warning in result.warnings)

        errors.extend(self._duplicate_errors(grades))

        if errors:
            logger.debug(f"Batch of {len(grades)} grades failed validation with {len(errors)} errors")

        return ValidationResult.from_lists(errors, warnings)

    def validate_grade_update(self, old_grade: GradeEntry, new_grade: GradeEntry) -> ValidationResult:
        """Validate a correction to an existing entry; identity fields are frozen."""
        result = self.validate_grade(new_grade)
        errors = list(result.errors)
        warnings = list(result.warnings)

        score_difference = abs(new_grade.score - old_grade.score)
        if score_difference > self.significant_change:
            warnings.append(f"Significant score change detected ({score_difference:g} points)")

        if old_grade.grade_period != new_grade.grade_period:
            errors.append("Grade period cannot be changed")
        if old_grade.student_id != new_grade.student_id:
            errors.append("Student cannot be changed")
        if old_grade.subject_id != new_grade.subject_id:
            errors.append("Subject cannot be changed")

        return ValidationResult.from_lists(errors, warnings)

    def validate_grade_submission(self, grades: List[GradeEntry]) -> ValidationResult:
        """Validate a submission; missing periods only warn so partial submissions pass."""
        if not grades:
            return ValidationResult.from_lists(["No grades to submit"], [])

        warnings: List[str] = []
        present = {grade.grade_period for grade in grades}
        missing = [period for period in REQUIRED_PERIODS if period not in present]
        if missing:
            warnings.append(
                f"Missing grade periods: {', '.join(period.value for period in missing)}"
            )

        batch = self.validate_batch_grades(grades)
        return ValidationResult.from_lists(list(batch.errors), warnings + batch.warnings)

    def _score_errors(self, score: float, max_score: float) -> List[str]:
        errors = []
        if score < 0:
            errors.append("Score cannot be negative")
        if score > max_score:
            errors.append("Score cannot exceed maximum score")
        if score > 100:
            errors.append("Score cannot exceed 100")
        if max_score <= 0:
            errors.append("Maximum score must be greater than 0")
        if max_score > 100:
            errors.append("Maximum score cannot exceed 100")
        return errors

    def _duplicate_errors(self, grades: List[GradeEntry]) -> List[str]:
        rows: Dict[GradeIdentity, List[int]] = defaultdict(list)
        for index, grade in enumerate(grades, start=1):
            if grade.grade_period is None:
                continue
            rows[grade.identity].append(index)

        errors = []
        for identity, indexes in rows.items():
            if len(indexes) > 1:
                row_list = ", ".join(str(i) for i in indexes)
                errors.append(
                    "Duplicate grades found for the same student, subject, and period "
                    f"({identity.student_id}, {identity.subject_id}, {identity.grade_period.value}) "
                    f"in rows {row_list}"
                )
        return errors
