"""
API endpoints for grade reconciliation
"""

from fastapi import APIRouter, HTTPException, Depends, status
from typing import List
import logging

from grade_engine.api.deps import get_connectivity_monitor, get_grade_store
from grade_engine.core.connectivity import ConnectivityMonitor
from grade_engine.schemas.sync import (
    ConnectivityRequest,
    QueuedWriteResponse,
    ReconciliationReportResponse,
    RequeueResponse,
    SyncStatusResponse,
)
from grade_engine.services.sync.reconciled_store import ReconciledGradeStore

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(store: ReconciledGradeStore = Depends(get_grade_store)):
    info = await store.sync_status()
    return SyncStatusResponse(**info.to_dict())


@router.post("/reconcile", response_model=ReconciliationReportResponse)
async def reconcile(store: ReconciledGradeStore = Depends(get_grade_store)):
    """Drain the pending queue now"""
    report = await store.reconcile()
    logger.info(f"Manual reconciliation: {report.processed} processed, {report.skipped} skipped")
    return ReconciliationReportResponse(**report.to_dict())


@router.post("/connectivity", response_model=SyncStatusResponse)
async def report_connectivity(
    request: ConnectivityRequest,
    monitor: ConnectivityMonitor = Depends(get_connectivity_monitor),
    store: ReconciledGradeStore = Depends(get_grade_store)
):
    """Report network state; a restore triggers reconciliation."""
    monitor.set_connected(request.connected)
    info = await store.sync_status()
    return SyncStatusResponse(**info.to_dict())


@router.get("/exhausted", response_model=List[QueuedWriteResponse])
async def list_exhausted(store: ReconciledGradeStore = Depends(get_grade_store)):
    """Writes that ran out of retries and need manual reconciliation"""
    return [
        QueuedWriteResponse(
            sequence=row.sequence,
            identity=row.identity.key,
            state=row.state,
            attempts=row.attempts,
            last_error=row.last_error,
            entry=row.entry
        )
        for row in await store.list_exhausted()
    ]


@router.post("/requeue/{sequence}", response_model=RequeueResponse)
async def requeue(sequence: int, store: ReconciledGradeStore = Depends(get_grade_store)):
    if not await store.requeue(sequence):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No exhausted write with sequence {sequence}"
        )
    return RequeueResponse(sequence=sequence, requeued=True)
