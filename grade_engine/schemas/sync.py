"""
Pydantic schemas for grade reconciliation endpoints.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Optional

from grade_engine.models.pending_write import WriteState
from grade_engine.schemas.grades import GradeEntry


class SyncStatusResponse(BaseModel):
    is_online: bool
    pending_count: int
    failed_count: int
    exhausted_count: int
    in_flight_count: int = 0
    total_pending: int


class ReconciliationReportResponse(BaseModel):
    processed: int
    committed: int
    superseded: int
    failed: int
    exhausted: int
    skipped: int
    started_at: datetime
    finished_at: Optional[datetime] = None


class QueuedWriteResponse(BaseModel):
    sequence: int
    identity: str
    state: WriteState
    attempts: int
    last_error: Optional[str] = None
    entry: GradeEntry


class ConnectivityRequest(BaseModel):
    connected: bool


class RequeueResponse(BaseModel):
    sequence: int
    requeued: bool
