"""
Grade reconciliation engine.

Keeps grade writes durable while the remote store is unreachable and replays
them in order once connectivity returns.

Components:
- Remote grade store clients (in-memory and HTTP)
- Durable pending write queue
- Reconciled store with last-writer-wins conflict handling
"""

from .remote_store import RemoteGradeStore, InMemoryRemoteGradeStore, HttpRemoteGradeStore
from .pending_queue import PendingWriteQueue, QueuedWrite
from .reconciled_store import (
    ReconciledGradeStore,
    ReconciliationReport,
    SyncStatusInfo,
    WriteResult
)

__all__ = [
    "RemoteGradeStore",
    "InMemoryRemoteGradeStore",
    "HttpRemoteGradeStore",
    "PendingWriteQueue",
    "QueuedWrite",
    "ReconciledGradeStore",
    "ReconciliationReport",
    "SyncStatusInfo",
    "WriteResult",
]
