"""
Pydantic schemas for grade records and the grade API.
"""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, NamedTuple
from enum import Enum

from grade_engine.core.grading import letter_grade_for


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class GradePeriod(str, Enum):
    """Grading periods, in assessment order."""
    PRELIM = "PRELIM"
    MIDTERM = "MIDTERM"
    FINAL = "FINAL"

    @property
    def display_name(self) -> str:
        return {
            GradePeriod.PRELIM: "Preliminary",
            GradePeriod.MIDTERM: "Midterm",
            GradePeriod.FINAL: "Final",
        }[self]


class GradeStatus(str, Enum):
    PASSING = "PASSING"
    AT_RISK = "AT_RISK"
    INCOMPLETE = "INCOMPLETE"


class GradeIdentity(NamedTuple):
    """Unique key of one authoritative grade record."""
    student_id: str
    subject_id: str
    grade_period: GradePeriod

    @property
    def key(self) -> str:
        return f"{self.student_id}_{self.subject_id}_{GradePeriod(self.grade_period).value}"


class GradeEntry(BaseModel):
    """
    One scored assessment for one student, one subject, one grading period.

    Values are not constrained here: an invalid entry must still be
    representable so the validator can report every violation at once.
    """
    id: Optional[str] = None
    student_id: str = ""
    student_name: str = ""
    subject_id: str = ""
    subject_name: str = ""
    teacher_id: str = ""
    grade_period: Optional[GradePeriod] = None
    score: float = 0.0
    max_score: float = 100.0
    percentage: float = 0.0
    letter_grade: str = ""
    description: str = ""
    date_recorded: datetime = Field(default_factory=utc_now)
    semester: str = ""
    academic_year: str = ""
    academic_period_id: str = ""

    # Curve provenance
    original_percentage: Optional[float] = None
    curve_id: Optional[str] = None

    @field_validator("date_recorded")
    @classmethod
    def normalize_date_recorded(cls, v):
        # Naive timestamps are read as UTC so every entry compares on one clock
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @classmethod
    def create(cls, score: float, max_score: float = 100.0, **kwargs) -> "GradeEntry":
        """Build an entry with percentage and letter grade derived from the score."""
        percentage = calculate_percentage(score, max_score)
        return cls(
            score=score,
            max_score=max_score,
            percentage=percentage,
            letter_grade=letter_grade_for(percentage),
            **kwargs
        )

    @property
    def identity(self) -> GradeIdentity:
        if self.grade_period is None:
            raise ValueError("Grade entry has no grade period")
        return GradeIdentity(self.student_id, self.subject_id, self.grade_period)

    @property
    def baseline_percentage(self) -> float:
        """Pre-curve percentage; curves never layer on already-curved values."""
        if self.original_percentage is not None:
            return self.original_percentage
        return self.percentage

    @property
    def is_curved(self) -> bool:
        return self.curve_id is not None

    def calculated_percentage(self) -> float:
        return calculate_percentage(self.score, self.max_score)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "GradeEntry":
        return cls.model_validate(record)


def calculate_percentage(score: float, max_score: float) -> float:
    return (score / max_score) * 100 if max_score > 0 else 0.0


# Validation API
class ValidationResultResponse(BaseModel):
    is_valid: bool
    errors: List[str] = []
    warnings: List[str] = []


class GradeInputRequest(BaseModel):
    score: float
    max_score: float = 100.0
    grade_period: Optional[GradePeriod] = None


class GradeBatchRequest(BaseModel):
    grades: List[GradeEntry]


class GradeUpdateRequest(BaseModel):
    old_grade: GradeEntry
    new_grade: GradeEntry


# Aggregation API
class AggregateRequest(BaseModel):
    period_percentages: Dict[GradePeriod, Optional[float]] = Field(default_factory=dict)
    weights: Optional[Dict[GradePeriod, float]] = None
    minimum_periods: Optional[int] = Field(default=None, ge=1, le=3)


class AggregateResponse(BaseModel):
    final_average: Optional[float] = None
    status: GradeStatus
    letter_grade: str


class StudentAggregateResponse(AggregateResponse):
    student_id: str
    subject_id: str
    period_percentages: Dict[GradePeriod, float] = {}
    completion_percentage: float = 0.0


# Write API
class WriteResultResponse(BaseModel):
    success: bool
    state: str
    identity: Optional[str] = None
    sequence: Optional[int] = None
    message: Optional[str] = None


class GradeWriteRejected(BaseModel):
    detail: str
    validation: ValidationResultResponse


class SubjectSummaryResponse(BaseModel):
    subject_id: str
    total_students: int
    class_average: Optional[float] = None
    class_final_average: Optional[float] = None
    status_distribution: Dict[GradeStatus, int] = {}


# CSV import API
class CsvImportRequest(BaseModel):
    content: str


class ImportedGradeRow(BaseModel):
    student_name: str
    prelim: Optional[float] = None
    midterm: Optional[float] = None
    final: Optional[float] = None
    final_average: Optional[float] = None
    status: GradeStatus
    letter_grade: str


class CsvImportResponse(BaseModel):
    rows: List[ImportedGradeRow] = []
    errors: List[str] = []
