"""
SQLAlchemy models for applied curves and their per-student history.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, ForeignKey, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from grade_engine.core.database import Base
from grade_engine.schemas.curves import CurveType


class GradeCurveRecord(Base):
    __tablename__ = "grade_curves"

    id = Column(String(64), primary_key=True)

    # Scope
    subject_id = Column(String(100), nullable=False, index=True)
    subject_name = Column(String(255), nullable=True)
    teacher_id = Column(String(100), nullable=True)
    grade_period = Column(String(20), nullable=True)

    # Transform configuration
    curve_type = Column(SQLEnum(CurveType), nullable=False)
    adjustment_factor = Column(Float, default=0.0)
    target_average = Column(Float, default=0.0)
    max_grade = Column(Float, default=100.0)
    min_grade = Column(Float, default=0.0)

    # Only this flag changes after a curve is applied
    is_active = Column(Boolean, default=True)
    applied_date = Column(DateTime(timezone=True), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    applications = relationship(
        "CurveApplicationRecord",
        back_populates="curve",
        cascade="all, delete-orphan",
        order_by="CurveApplicationRecord.id"
    )


class CurveApplicationRecord(Base):
    __tablename__ = "curve_applications"

    id = Column(Integer, primary_key=True, index=True)
    curve_id = Column(String(64), ForeignKey("grade_curves.id"), nullable=False, index=True)

    student_id = Column(String(100), nullable=False)
    student_name = Column(String(255), nullable=True)
    original_score = Column(Float, nullable=False)
    curved_score = Column(Float, nullable=False)
    adjustment = Column(Float, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    curve = relationship("GradeCurveRecord", back_populates="applications")
