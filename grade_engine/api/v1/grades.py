"""
API endpoints for grade validation, aggregation and recording.
"""

from fastapi import APIRouter, HTTPException, Depends, status
from typing import List
import logging

from grade_engine.api.deps import get_aggregator, get_grade_store, get_validator
from grade_engine.core.errors import CsvImportError
from grade_engine.schemas.grades import (
    AggregateRequest,
    AggregateResponse,
    CsvImportRequest,
    CsvImportResponse,
    GradeBatchRequest,
    GradeEntry,
    GradeInputRequest,
    GradeUpdateRequest,
    GradeWriteRejected,
    ImportedGradeRow,
    StudentAggregateResponse,
    SubjectSummaryResponse,
    ValidationResultResponse,
    WriteResultResponse,
)
from grade_engine.services.aggregation import GradeAggregator
from grade_engine.services.sync.reconciled_store import ReconciledGradeStore
from grade_engine.services.validation import ScoreValidator
from grade_engine.utils.csv_import import parse_grade_csv

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/validate", response_model=ValidationResultResponse)
async def validate_grade(
    grade: GradeEntry,
    validator: ScoreValidator = Depends(get_validator)
):
    return validator.validate_grade(grade).to_response()


@router.post("/validate/input", response_model=ValidationResultResponse)
async def validate_grade_input(
    grade_input: GradeInputRequest,
    validator: ScoreValidator = Depends(get_validator)
):
    return validator.validate_grade_input(
        grade_input.score, grade_input.max_score, grade_input.grade_period
    ).to_response()


@router.post("/validate/batch", response_model=ValidationResultResponse)
async def validate_batch(
    batch: GradeBatchRequest,
    validator: ScoreValidator = Depends(get_validator)
):
    return validator.validate_batch_grades(batch.grades).to_response()


@router.post("/validate/update", response_model=ValidationResultResponse)
async def validate_update(
    update: GradeUpdateRequest,
    validator: ScoreValidator = Depends(get_validator)
):
    return validator.validate_grade_update(update.old_grade, update.new_grade).to_response()


@router.post("/validate/submission", response_model=ValidationResultResponse)
async def validate_submission(
    batch: GradeBatchRequest,
    validator: ScoreValidator = Depends(get_validator)
):
    return validator.validate_grade_submission(batch.grades).to_response()


@router.post("/aggregate", response_model=AggregateResponse)
async def aggregate(
    request: AggregateRequest,
    aggregator: GradeAggregator = Depends(get_aggregator)
):
    """Final average, status and letter grade from per-period percentages."""
    result = aggregator.aggregate(
        request.period_percentages,
        weights=request.weights,
        minimum_periods=request.minimum_periods
    )
    return AggregateResponse(
        final_average=result.final_average,
        status=result.status,
        letter_grade=result.letter_grade
    )


@router.post("/import", response_model=CsvImportResponse)
async def import_grade_sheet(
    request: CsvImportRequest,
    aggregator: GradeAggregator = Depends(get_aggregator)
):
    """Parse a grade sheet and compute each student's final grade."""
    try:
        parsed = parse_grade_csv(request.content)
    except CsvImportError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    rows = []
    for row in parsed.rows:
        result = aggregator.aggregate(row.to_period_map())
        rows.append(ImportedGradeRow(
            student_name=row.student_name,
            prelim=row.prelim,
            midterm=row.midterm,
            final=row.final,
            final_average=result.final_average,
            status=result.status,
            letter_grade=result.letter_grade
        ))
    return CsvImportResponse(rows=rows, errors=parsed.errors)


@router.post(
    "/",
    response_model=WriteResultResponse,
    responses={422: {"model": GradeWriteRejected}}
)
async def record_grade(
    grade: GradeEntry,
    validator: ScoreValidator = Depends(get_validator),
    store: ReconciledGradeStore = Depends(get_grade_store)
):
    """Validate and record a grade; queued when the remote store is unreachable."""
    validation = validator.validate_grade(grade)
    if not validation.is_valid:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=GradeWriteRejected(
                detail="Grade failed validation",
                validation=validation.to_response()
            ).model_dump()
        )

    result = await store.write(grade)
    logger.info(f"Recorded grade {result.identity.key}: {result.state}")
    return result.to_response()


@router.get("/subjects/{subject_id}", response_model=List[GradeEntry])
async def list_subject_grades(
    subject_id: str,
    store: ReconciledGradeStore = Depends(get_grade_store)
):
    return await store.list_by_subject(subject_id)


@router.get("/subjects/{subject_id}/summary", response_model=SubjectSummaryResponse)
async def subject_summary(
    subject_id: str,
    store: ReconciledGradeStore = Depends(get_grade_store),
    aggregator: GradeAggregator = Depends(get_aggregator)
):
    """Class averages and status distribution for a subject."""
    grades = await store.list_by_subject(subject_id)
    student_ids = sorted({grade.student_id for grade in grades})
    aggregates = [
        aggregator.build_aggregate(student_id, subject_id, grades)
        for student_id in student_ids
    ]
    return SubjectSummaryResponse(
        subject_id=subject_id,
        total_students=len(student_ids),
        class_average=aggregator.class_average(grades),
        class_final_average=aggregator.class_final_average(aggregates),
        status_distribution=aggregator.status_distribution(aggregates)
    )


@router.get(
    "/subjects/{subject_id}/students/{student_id}/aggregate",
    response_model=StudentAggregateResponse
)
async def student_aggregate(
    subject_id: str,
    student_id: str,
    store: ReconciledGradeStore = Depends(get_grade_store)
):
    aggregate = await store.aggregate(student_id, subject_id)
    return StudentAggregateResponse(
        student_id=aggregate.student_id,
        subject_id=aggregate.subject_id,
        period_percentages=aggregate.period_percentages,
        completion_percentage=aggregate.completion_percentage,
        final_average=aggregate.final_average,
        status=aggregate.status,
        letter_grade=aggregate.letter_grade
    )
