"""
Pydantic schemas for grade curves.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict
from enum import Enum

from grade_engine.core.config import settings
from grade_engine.schemas.grades import GradeEntry, GradePeriod, WriteResultResponse


class CurveType(str, Enum):
    LINEAR = "LINEAR"                  # adds a fixed amount
    PERCENTAGE = "PERCENTAGE"          # scales by a percentage
    TARGET_AVERAGE = "TARGET_AVERAGE"  # uniform shift onto a target average
    SQUARE_ROOT = "SQUARE_ROOT"        # 10 * sqrt(grade)
    BELL_CURVE = "BELL_CURVE"          # rescale to a target mean and deviation


class GradeCurve(BaseModel):
    """Subject-scoped curve configuration; immutable once applied."""
    id: Optional[str] = None
    subject_id: str = ""
    subject_name: str = ""
    teacher_id: str = ""
    grade_period: Optional[GradePeriod] = None
    curve_type: CurveType = CurveType.LINEAR
    adjustment_factor: float = 0.0
    target_average: float = 0.0
    max_grade: float = Field(default_factory=lambda: settings.CURVE_DEFAULT_MAX_GRADE, ge=0, le=100)
    min_grade: float = Field(default_factory=lambda: settings.CURVE_DEFAULT_MIN_GRADE, ge=0, le=100)
    is_active: bool = True
    applied_date: Optional[datetime] = None

    class Config:
        from_attributes = True


class CurveApplication(BaseModel):
    student_id: str
    student_name: str = ""
    original_score: float
    curved_score: float
    adjustment: float

    class Config:
        from_attributes = True


class CurveStatistics(BaseModel):
    average: float
    standard_deviation: float
    median: float
    highest: float
    lowest: float
    passing_rate: float
    total_students: int
    grade_distribution: Dict[str, int] = {}


class CurvePreview(BaseModel):
    curve: GradeCurve
    applications: List[CurveApplication]
    statistics_before: CurveStatistics
    statistics_after: CurveStatistics


class CurveCommit(BaseModel):
    curve: GradeCurve
    applications: List[CurveApplication]
    write_results: List[WriteResultResponse] = []


# API requests
class StatisticsRequest(BaseModel):
    scores: List[float] = Field(..., min_length=1)


class CurveRequest(BaseModel):
    grades: List[GradeEntry] = Field(..., min_length=1)
    curve: GradeCurve
