"""
Curve history persistence.

Applied curves are immutable history: rows are only ever inserted, apart from
the is_active flag that is cleared when a newer curve supersedes one for the
same subject and period.
"""

import logging
from typing import List, Optional

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from grade_engine.models.grade_curve import GradeCurveRecord, CurveApplicationRecord
from grade_engine.schemas.curves import CurveApplication, GradeCurve

logger = logging.getLogger(__name__)


class CurveRepository:
    """SQLAlchemy-backed store for GradeCurve configurations and applications."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create_curve(self, curve: GradeCurve) -> GradeCurve:
        """Persist an applied curve and deactivate older curves in the same scope."""
        if not curve.id or curve.applied_date is None:
            raise ValueError("Curve must have an id and applied_date before it is stored")

        async with self.session_factory() as session:
            async with session.begin():
                period = curve.grade_period.value if curve.grade_period else None
                await session.execute(
                    update(GradeCurveRecord)
                    .where(and_(
                        GradeCurveRecord.subject_id == curve.subject_id,
                        GradeCurveRecord.grade_period == period,
                        GradeCurveRecord.is_active.is_(True)
                    ))
                    .values(is_active=False)
                )
                session.add(GradeCurveRecord(
                    id=curve.id,
                    subject_id=curve.subject_id,
                    subject_name=curve.subject_name,
                    teacher_id=curve.teacher_id,
                    grade_period=period,
                    curve_type=curve.curve_type,
                    adjustment_factor=curve.adjustment_factor,
                    target_average=curve.target_average,
                    max_grade=curve.max_grade,
                    min_grade=curve.min_grade,
                    is_active=True,
                    applied_date=curve.applied_date
                ))

        logger.info(f"Stored curve {curve.id} for subject {curve.subject_id}")
        return curve

    async def save_applications(self, curve_id: str, applications: List[CurveApplication]) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                session.add_all([
                    CurveApplicationRecord(
                        curve_id=curve_id,
                        student_id=application.student_id,
                        student_name=application.student_name,
                        original_score=application.original_score,
                        curved_score=application.curved_score,
                        adjustment=application.adjustment
                    )
                    for application in applications
                ])
        return len(applications)

    async def list_curves(self, subject_id: str) -> List[GradeCurve]:
        """Curves for a subject, newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(GradeCurveRecord)
                .where(GradeCurveRecord.subject_id == subject_id)
                .order_by(GradeCurveRecord.applied_date.desc())
            )
            return [self._to_schema(record) for record in result.scalars().all()]

    async def get_curve(self, curve_id: str) -> Optional[GradeCurve]:
        async with self.session_factory() as session:
            record = await session.get(GradeCurveRecord, curve_id)
            return self._to_schema(record) if record else None

    async def get_applications(self, curve_id: str) -> List[CurveApplication]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(GradeCurveRecord)
                .options(selectinload(GradeCurveRecord.applications))
                .where(GradeCurveRecord.id == curve_id)
            )
            record = result.scalar_one_or_none()
            if record is None:
                return []
            return [CurveApplication.model_validate(a) for a in record.applications]

    def _to_schema(self, record: GradeCurveRecord) -> GradeCurve:
        return GradeCurve(
            id=record.id,
            subject_id=record.subject_id,
            subject_name=record.subject_name or "",
            teacher_id=record.teacher_id or "",
            grade_period=record.grade_period,
            curve_type=record.curve_type,
            adjustment_factor=record.adjustment_factor,
            target_average=record.target_average,
            max_grade=record.max_grade,
            min_grade=record.min_grade,
            is_active=record.is_active,
            applied_date=record.applied_date
        )
