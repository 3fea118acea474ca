"""
Reconciled grade store.

Accepts grade writes whether or not the remote store is reachable. Writes
that cannot be delivered immediately are kept in the durable pending queue
and replayed when connectivity returns:

* writes for one (student, subject, period) tuple reach the remote store in
  the order they were issued, and a direct write never overtakes a queued one
* last-writer-wins by ``date_recorded``; a remote copy newer than a queued
  write supersedes it
* a write is never silently dropped: after ``max_retries`` failed attempts it
  is marked EXHAUSTED and kept for manual reconciliation
"""

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from grade_engine.core.config import settings
from grade_engine.core.connectivity import ConnectivityMonitor
from grade_engine.core.errors import RemoteStoreError, WriteFailure
from grade_engine.models.pending_write import WriteState
from grade_engine.schemas.grades import (
    GradeEntry, GradeIdentity, GradePeriod, WriteResultResponse, utc_now
)
from grade_engine.services.aggregation import GradeAggregateCache, StudentGradeAggregate
from grade_engine.services.sync.pending_queue import PendingWriteQueue, QueuedWrite
from grade_engine.services.sync.remote_store import RemoteGradeStore
from grade_engine.utils.conflict_resolution import merge_grade_views, resolve_grade_conflict

logger = logging.getLogger(__name__)

QUEUED = "queued"
SUPERSEDED = "superseded"

PERIOD_ORDER = {period: index for index, period in enumerate(GradePeriod)}


@dataclass
class WriteResult:
    """Outcome of a grade write as seen by the caller."""
    success: bool
    state: str
    identity: GradeIdentity
    sequence: Optional[int] = None
    message: Optional[str] = None

    @property
    def is_queued(self) -> bool:
        return self.state == QUEUED

    def to_response(self) -> WriteResultResponse:
        return WriteResultResponse(
            success=self.success,
            state=self.state,
            identity=self.identity.key,
            sequence=self.sequence,
            message=self.message
        )


@dataclass
class ReconciliationReport:
    """Counters for one drain of the pending queue."""
    processed: int = 0
    committed: int = 0
    superseded: int = 0
    failed: int = 0
    exhausted: int = 0
    skipped: int = 0
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class SyncStatusInfo:
    is_online: bool
    pending_count: int
    failed_count: int
    exhausted_count: int
    in_flight_count: int = 0

    @property
    def total_pending(self) -> int:
        return self.pending_count + self.failed_count + self.in_flight_count

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['total_pending'] = self.total_pending
        return data


@dataclass
class _TupleLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ReconciledGradeStore:
    """Offline-tolerant facade over the remote grade store."""

    def __init__(
        self,
        remote: RemoteGradeStore,
        queue: PendingWriteQueue,
        monitor: ConnectivityMonitor,
        max_retries: Optional[int] = None,
        cache: Optional[GradeAggregateCache] = None
    ):
        self.remote = remote
        self.queue = queue
        self.monitor = monitor
        self.max_retries = max_retries if max_retries is not None else settings.SYNC_MAX_RETRIES
        self.cache = cache or GradeAggregateCache()

        self._drain_lock = asyncio.Lock()
        self._tuple_locks: Dict[GradeIdentity, _TupleLock] = {}
        self._watchers: Dict[int, asyncio.Future] = {}
        self._drain_task: Optional[asyncio.Task] = None
        self._rerun_requested = False
        self._unsubscribers: List[Callable[[], None]] = []

    # Lifecycle

    async def start(self) -> None:
        """Recover interrupted writes and subscribe to connectivity changes."""
        await self.queue.reset_in_flight()
        self._unsubscribers = [
            self.monitor.on_restored(self._on_connectivity_restored),
            self.monitor.on_lost(self._on_connectivity_lost),
        ]
        if self.monitor.is_connected() and await self.queue.pending():
            self.schedule_reconcile()
        logger.info("Reconciled grade store started")

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        await self._cancel_drain()

        for future in self._watchers.values():
            if not future.done():
                future.cancel()
        self._watchers.clear()
        logger.info("Reconciled grade store stopped")

    # Writes

    async def write(self, entry: GradeEntry) -> WriteResult:
        """
        Record a grade. Never fails because the remote store is unreachable.

        Raises:
            ValueError: if the entry has no grade period
        """
        identity = entry.identity

        if not self.monitor.is_connected():
            return await self._enqueue(entry, "Offline, write queued")

        async with self._tuple_lock(identity):
            if await self.queue.has_pending(identity):
                result = await self._enqueue(entry, "Earlier writes for this grade are still queued")
                self.schedule_reconcile()
                return result

            try:
                state = await self._deliver(entry)
            except RemoteStoreError as e:
                logger.warning(f"Direct write for {identity.key} failed, queueing: {e}")
                return await self._enqueue(entry, f"Remote store unavailable, write queued: {e}")

        self.cache.invalidate(identity)
        message = "Remote copy is newer" if state == SUPERSEDED else None
        return WriteResult(success=True, state=state, identity=identity, message=message)

    async def write_and_watch(self, entry: GradeEntry) -> Tuple[WriteResult, asyncio.Future]:
        """
        Write a grade and return a future for its final outcome.

        The future resolves with a committed or superseded WriteResult, or
        fails with WriteFailure once the retry budget is exhausted.
        """
        result = await self.write(entry)
        future = asyncio.get_running_loop().create_future()
        if result.is_queued:
            self._watchers[result.sequence] = future
        else:
            future.set_result(result)
        return result, future

    async def _enqueue(self, entry: GradeEntry, message: str) -> WriteResult:
        sequence = await self.queue.enqueue(entry)
        self.cache.invalidate(entry.identity)
        return WriteResult(
            success=True,
            state=QUEUED,
            identity=entry.identity,
            sequence=sequence,
            message=message
        )

    async def _deliver(self, entry: GradeEntry) -> str:
        """Upsert unless the remote copy is newer; returns the resulting state."""
        remote_copy = await self.remote.get(entry.identity)
        resolution = resolve_grade_conflict(entry, remote_copy)
        if not resolution.local_wins:
            logger.info(f"Write for {entry.identity.key} superseded: {resolution.explanation}")
            return SUPERSEDED

        await self.remote.upsert(entry)
        return WriteState.COMMITTED.value

    # Reconciliation

    def schedule_reconcile(self) -> asyncio.Task:
        """Start a background drain, or ask the running one to go again."""
        if self._drain_task is not None and not self._drain_task.done():
            self._rerun_requested = True
            return self._drain_task

        self._drain_task = asyncio.create_task(self._drain_loop())
        return self._drain_task

    async def _drain_loop(self) -> Optional[ReconciliationReport]:
        report = None
        try:
            while True:
                self._rerun_requested = False
                report = await self.reconcile()
                if not self._rerun_requested or not self.monitor.is_connected():
                    return report
        except Exception as e:
            logger.error(f"Grade reconciliation failed: {e}")
            return report

    async def reconcile(self) -> ReconciliationReport:
        """Drain the pending queue once; tuples are drained concurrently."""
        async with self._drain_lock:
            report = ReconciliationReport()
            rows = await self.queue.pending()

            if not self.monitor.is_connected():
                report.skipped = len(rows)
                report.finished_at = utc_now()
                return report

            groups: "OrderedDict[GradeIdentity, List[QueuedWrite]]" = OrderedDict()
            for row in rows:
                groups.setdefault(row.identity, []).append(row)

            if groups:
                logger.info(f"Reconciling {len(rows)} queued grade writes across {len(groups)} grades")

            try:
                await asyncio.gather(*(
                    self._drain_tuple(identity, tuple_rows, report)
                    for identity, tuple_rows in groups.items()
                ))
            except BaseException:
                # Rows of an interrupted drain go back to PENDING and are retried whole
                await asyncio.shield(self.queue.reset_in_flight())
                raise

            report.finished_at = utc_now()
            if groups:
                logger.info(
                    f"Reconciliation finished: {report.committed} committed, "
                    f"{report.superseded} superseded, {report.failed} failed, "
                    f"{report.exhausted} exhausted"
                )
            return report

    async def _drain_tuple(
        self,
        identity: GradeIdentity,
        rows: List[QueuedWrite],
        report: ReconciliationReport
    ) -> None:
        async with self._tuple_lock(identity):
            for index, row in enumerate(rows):
                if not self.monitor.is_connected():
                    report.skipped += len(rows) - index
                    return

                await self.queue.mark_in_flight(row.sequence)
                try:
                    state = await self._deliver(row.entry)
                except RemoteStoreError as e:
                    await self._record_failure(row, e, report)
                    # Later rows for this grade must not overtake the failed one
                    report.skipped += len(rows) - index - 1
                    return

                await self.queue.acknowledge(row.sequence)
                self.cache.invalidate(identity)
                report.processed += 1
                if state == SUPERSEDED:
                    report.superseded += 1
                else:
                    report.committed += 1
                self._resolve_watcher(row.sequence, WriteResult(
                    success=True,
                    state=state,
                    identity=identity,
                    sequence=row.sequence
                ))

    async def _record_failure(
        self,
        row: QueuedWrite,
        error: RemoteStoreError,
        report: ReconciliationReport
    ) -> None:
        attempts = await self.queue.mark_failed(row.sequence, str(error))
        report.processed += 1
        report.failed += 1

        if attempts < self.max_retries:
            logger.warning(
                f"Queued write #{row.sequence} for {row.identity.key} failed "
                f"(attempt {attempts}/{self.max_retries}): {error}"
            )
            return

        await self.queue.mark_exhausted(row.sequence, str(error))
        report.exhausted += 1
        failure = WriteFailure(
            f"Grade write for {row.identity.key} failed after {attempts} attempts",
            identity=row.identity,
            attempts=attempts,
            original_exception=error
        )

        future = self._watchers.pop(row.sequence, None)
        if future is not None and not future.done():
            future.set_exception(failure)
        else:
            logger.error(f"{failure.message}; kept as #{row.sequence} for manual reconciliation")

    def _resolve_watcher(self, sequence: int, result: WriteResult) -> None:
        future = self._watchers.pop(sequence, None)
        if future is not None and not future.done():
            future.set_result(result)

    @asynccontextmanager
    async def _tuple_lock(self, identity: GradeIdentity):
        """Serialize work on one grade; the lock is dropped once nobody holds or awaits it."""
        identity = GradeIdentity(*identity)
        entry = self._tuple_locks.get(identity)
        if entry is None:
            entry = self._tuple_locks[identity] = _TupleLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._tuple_locks[identity]

    def _on_connectivity_restored(self) -> None:
        # Aggregates read before the outage may predate remote changes
        self.cache.clear()
        self.schedule_reconcile()

    def _on_connectivity_lost(self) -> None:
        if self._drain_task is not None and not self._drain_task.done():
            logger.info("Connectivity lost, cancelling grade reconciliation")
            self._drain_task.cancel()

    async def _cancel_drain(self) -> None:
        task = self._drain_task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # Manual reconciliation

    async def list_exhausted(self) -> List[QueuedWrite]:
        return await self.queue.list_exhausted()

    async def requeue(self, sequence: int) -> bool:
        requeued = await self.queue.requeue(sequence)
        if requeued:
            logger.info(f"Requeued exhausted grade write #{sequence}")
            if self.monitor.is_connected():
                self.schedule_reconcile()
        return requeued

    # Reads

    async def get(self, identity: GradeIdentity) -> Optional[GradeEntry]:
        """Remote copy merged with still-queued local writes for one grade."""
        entry, _ = await self._read(GradeIdentity(*identity))
        return entry

    async def _read(self, identity: GradeIdentity) -> Tuple[Optional[GradeEntry], bool]:
        """Merged view of one grade, and whether the remote copy was consulted."""
        local = [row.entry for row in await self.queue.pending_for(identity)]
        remote: List[GradeEntry] = []
        consulted = False
        if self.monitor.is_connected():
            try:
                remote_copy = await self.remote.get(identity)
                consulted = True
                if remote_copy is not None:
                    remote.append(remote_copy)
            except RemoteStoreError as e:
                logger.warning(f"Remote read for {identity.key} failed, serving local view: {e}")

        merged = merge_grade_views(remote, local)
        return (merged[0] if merged else None), consulted

    async def list_by_subject(self, subject_id: str) -> List[GradeEntry]:
        local = [row.entry for row in await self.queue.pending_for_subject(subject_id)]
        remote: List[GradeEntry] = []
        if self.monitor.is_connected():
            try:
                remote = await self.remote.list_by_subject(subject_id)
            except RemoteStoreError as e:
                logger.warning(f"Remote listing for subject {subject_id} failed, serving local view: {e}")

        merged = merge_grade_views(remote, local)
        return sorted(merged, key=lambda e: (e.student_id, PERIOD_ORDER[e.grade_period]))

    async def aggregate(self, student_id: str, subject_id: str) -> StudentGradeAggregate:
        return await self.cache.get(student_id, subject_id, self._load_student_grades)

    async def _load_student_grades(self, student_id: str, subject_id: str) -> Tuple[List[GradeEntry], bool]:
        grades = []
        complete = True
        for period in GradePeriod:
            entry, consulted = await self._read(GradeIdentity(student_id, subject_id, period))
            complete = complete and consulted
            if entry is not None:
                grades.append(entry)
        return grades, complete

    async def sync_status(self) -> SyncStatusInfo:
        counts = await self.queue.counts()
        return SyncStatusInfo(
            is_online=self.monitor.is_connected(),
            pending_count=counts[WriteState.PENDING],
            failed_count=counts[WriteState.FAILED],
            exhausted_count=counts[WriteState.EXHAUSTED],
            in_flight_count=counts[WriteState.IN_FLIGHT]
        )
