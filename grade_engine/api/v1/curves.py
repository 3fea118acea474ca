"""
API endpoints for grade curves.
"""

from fastapi import APIRouter, HTTPException, Depends, status
from typing import List
import logging

from grade_engine.api.deps import get_curve_engine, get_curve_repository, get_grade_store
from grade_engine.core.errors import CurveError
from grade_engine.schemas.curves import (
    CurveCommit,
    CurvePreview,
    CurveRequest,
    CurveStatistics,
    GradeCurve,
    StatisticsRequest,
)
from grade_engine.services.curve_engine import CurveEngine
from grade_engine.services.curve_repository import CurveRepository
from grade_engine.services.sync.reconciled_store import ReconciledGradeStore

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/statistics", response_model=CurveStatistics)
async def cohort_statistics(
    request: StatisticsRequest,
    engine: CurveEngine = Depends(get_curve_engine)
):
    return engine.statistics(request.scores)


def _error_detail(error: CurveError) -> str:
    errors = error.details.get('errors')
    return f"{error.message}: {'; '.join(errors)}" if errors else error.message


@router.post("/preview", response_model=CurvePreview)
async def preview_curve(
    request: CurveRequest,
    engine: CurveEngine = Depends(get_curve_engine)
):
    """Effect of a curve on a cohort; nothing is persisted."""
    try:
        return engine.preview_curve(request.grades, request.curve)
    except CurveError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=_error_detail(e))


@router.post("/apply", response_model=CurveCommit)
async def apply_curve(
    request: CurveRequest,
    engine: CurveEngine = Depends(get_curve_engine),
    repository: CurveRepository = Depends(get_curve_repository),
    store: ReconciledGradeStore = Depends(get_grade_store)
):
    """Store the curve, write the curved grades and record per-student history."""
    try:
        commit = await engine.apply_curve(request.grades, request.curve, repository, store)
    except CurveError as e:
        logger.warning(f"Curve rejected for subject {request.curve.subject_id}: {e.message}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=_error_detail(e))

    logger.info(f"Applied curve {commit.curve.id} to {len(commit.applications)} grades")
    return commit


@router.get("/subjects/{subject_id}", response_model=List[GradeCurve])
async def list_subject_curves(
    subject_id: str,
    repository: CurveRepository = Depends(get_curve_repository)
):
    return await repository.list_curves(subject_id)
