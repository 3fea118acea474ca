"""Tests for the reconciled grade store."""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone

from grade_engine.core.connectivity import ConnectivityMonitor
from grade_engine.core.database import build_engine, build_session_factory, init_db
from grade_engine.core.errors import WriteFailure
from grade_engine.models.pending_write import WriteState
from grade_engine.schemas.grades import GradeEntry, GradeIdentity, GradePeriod, GradeStatus
from grade_engine.services.sync.pending_queue import PendingWriteQueue
from grade_engine.services.sync.reconciled_store import (
    ReconciledGradeStore,
    ReconciliationReport,
    WriteResult,
)
from grade_engine.services.sync.remote_store import InMemoryRemoteGradeStore

BASE_TIME = datetime(2024, 9, 2, 8, 0, tzinfo=timezone.utc)
IDENTITY = GradeIdentity("S1", "SUB1", GradePeriod.PRELIM)


class RecordingRemoteStore(InMemoryRemoteGradeStore):
    """In-memory store that remembers the order of accepted upserts."""

    def __init__(self):
        super().__init__()
        self.upserts = []

    async def upsert(self, entry):
        await super().upsert(entry)
        self.upserts.append(entry)


def grade(percentage=80.0, student_id="S1", period=GradePeriod.PRELIM, offset=0) -> GradeEntry:
    return GradeEntry.create(
        score=percentage,
        student_id=student_id,
        student_name=f"Student {student_id}",
        subject_id="SUB1",
        subject_name="Algebra",
        teacher_id="T1",
        grade_period=period,
        date_recorded=BASE_TIME + timedelta(minutes=offset)
    )


@pytest.fixture
async def queue(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}", echo=False)
    await init_db(engine)
    yield PendingWriteQueue(build_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def remote():
    return RecordingRemoteStore()


@pytest.fixture
def monitor():
    return ConnectivityMonitor(connected=True)


@pytest.fixture
async def store(remote, queue, monitor):
    store = ReconciledGradeStore(remote, queue, monitor, max_retries=3)
    yield store
    await store.stop()


class TestWrite:

    @pytest.mark.asyncio
    async def test_online_write_commits_directly(self, store, remote, queue):
        result = await store.write(grade(85))

        assert isinstance(result, WriteResult)
        assert result.success
        assert result.state == WriteState.COMMITTED.value
        assert result.sequence is None
        assert remote.records[IDENTITY].percentage == 85
        assert await queue.pending() == []

    @pytest.mark.asyncio
    async def test_offline_write_is_queued(self, store, remote, monitor):
        monitor.set_connected(False)

        result = await store.write(grade(85))

        assert result.success
        assert result.is_queued
        assert result.sequence is not None
        assert remote.upsert_count == 0

        status = await store.sync_status()
        assert not status.is_online
        assert status.pending_count == 1
        assert status.total_pending == 1

    @pytest.mark.asyncio
    async def test_transport_failure_queues_write(self, store, remote):
        remote.available = False

        result = await store.write(grade(85))

        assert result.success
        assert result.is_queued
        assert "Remote store unavailable" in result.message

    @pytest.mark.asyncio
    async def test_direct_write_superseded_by_newer_remote_copy(self, store, remote):
        remote.records[IDENTITY] = grade(95, offset=10)

        result = await store.write(grade(60, offset=0))

        assert result.success
        assert result.state == "superseded"
        assert remote.records[IDENTITY].percentage == 95
        assert remote.upsert_count == 0

    @pytest.mark.asyncio
    async def test_write_without_period_is_rejected(self, store):
        with pytest.raises(ValueError):
            await store.write(GradeEntry(student_id="S1", subject_id="SUB1"))

    @pytest.mark.asyncio
    async def test_direct_write_does_not_overtake_queued_write(self, store, remote, monitor):
        monitor.set_connected(False)
        await store.write(grade(70, offset=0))
        monitor.set_connected(True)

        result = await store.write(grade(90, offset=1))
        assert result.is_queued

        await store.reconcile()

        assert [e.percentage for e in remote.upserts] == [70, 90]
        assert remote.records[IDENTITY].percentage == 90

    @pytest.mark.asyncio
    async def test_naive_timestamp_write_meets_aware_remote_copy(self, store, remote):
        naive = GradeEntry.model_validate({**grade(60).model_dump(), 'date_recorded': datetime(2024, 9, 2, 8, 0)})
        await store.write(naive)

        result = await store.write(grade(80, offset=5))

        assert result.state == WriteState.COMMITTED.value
        assert remote.records[IDENTITY].percentage == 80

    @pytest.mark.asyncio
    async def test_naive_and_aware_queued_writes_drain(self, store, remote, monitor, queue):
        monitor.set_connected(False)
        naive = GradeEntry.model_validate({**grade(60).model_dump(), 'date_recorded': datetime(2024, 9, 2, 8, 0)})
        await store.write(naive)
        await store.write(grade(80, offset=5))

        monitor.set_connected(True)
        report = await store.reconcile()

        assert report.committed == 2
        assert remote.records[IDENTITY].percentage == 80
        assert await queue.pending() == []

    @pytest.mark.asyncio
    async def test_concurrent_writes_release_tuple_locks(self, store, remote, monitor):
        remote.delay = 0.05

        await asyncio.gather(store.write(grade(70, offset=0)), store.write(grade(80, offset=1)))

        assert remote.records[IDENTITY].percentage == 80
        assert store._tuple_locks == {}

        monitor.set_connected(False)
        await store.write(grade(90, student_id="S2"))
        monitor.set_connected(True)
        await store.reconcile()

        assert store._tuple_locks == {}


class TestReconcile:

    @pytest.mark.asyncio
    async def test_offline_writes_collapse_to_newest(self, store, remote, monitor, queue):
        monitor.set_connected(False)
        for index, percentage in enumerate([60, 70, 80, 90]):
            await store.write(grade(percentage, offset=index))

        monitor.set_connected(True)
        report = await store.reconcile()

        assert isinstance(report, ReconciliationReport)
        assert report.committed == 4
        assert report.finished_at is not None
        assert len(remote.records) == 1
        assert remote.records[IDENTITY].percentage == 90
        assert await queue.pending() == []

    @pytest.mark.asyncio
    async def test_per_tuple_order_is_preserved(self, store, remote, monitor):
        monitor.set_connected(False)
        await store.write(grade(60, student_id="S1", offset=0))
        await store.write(grade(61, student_id="S2", offset=1))
        await store.write(grade(62, student_id="S1", offset=2))
        await store.write(grade(63, student_id="S2", offset=3))

        monitor.set_connected(True)
        await store.reconcile()

        s1 = [e.percentage for e in remote.upserts if e.student_id == "S1"]
        s2 = [e.percentage for e in remote.upserts if e.student_id == "S2"]
        assert s1 == [60, 62]
        assert s2 == [61, 63]

    @pytest.mark.asyncio
    async def test_newer_remote_copy_supersedes_queued_write(self, store, remote, monitor, queue):
        monitor.set_connected(False)
        await store.write(grade(60, offset=0))
        remote.records[IDENTITY] = grade(99, offset=30)

        monitor.set_connected(True)
        report = await store.reconcile()

        assert report.superseded == 1
        assert report.committed == 0
        assert remote.records[IDENTITY].percentage == 99
        assert await queue.pending() == []

    @pytest.mark.asyncio
    async def test_reconcile_while_offline_skips(self, store, monitor):
        monitor.set_connected(False)
        await store.write(grade())

        report = await store.reconcile()

        assert report.skipped == 1
        assert report.processed == 0

    @pytest.mark.asyncio
    async def test_failure_stops_tuple_drain(self, store, remote, monitor, queue):
        monitor.set_connected(False)
        await store.write(grade(70, offset=0))
        await store.write(grade(80, offset=1))
        monitor.set_connected(True)
        remote.fail_next = 1

        report = await store.reconcile()

        assert report.failed == 1
        assert report.skipped == 1
        assert remote.upserts == []
        rows = await queue.pending()
        assert [row.state for row in rows] == [WriteState.FAILED, WriteState.PENDING]
        assert rows[0].attempts == 1

        report = await store.reconcile()

        assert report.committed == 2
        assert [e.percentage for e in remote.upserts] == [70, 80]

    @pytest.mark.asyncio
    async def test_retries_exhausted_fails_watcher(self, remote, queue, monitor):
        store = ReconciledGradeStore(remote, queue, monitor, max_retries=2)
        monitor.set_connected(False)
        result, outcome = await store.write_and_watch(grade(70))
        assert result.is_queued
        assert not outcome.done()

        monitor.set_connected(True)
        remote.available = False
        first = await store.reconcile()
        second = await store.reconcile()

        assert first.exhausted == 0
        assert second.exhausted == 1
        with pytest.raises(WriteFailure) as exc_info:
            await outcome
        assert exc_info.value.attempts == 2
        assert exc_info.value.identity == IDENTITY

        status = await store.sync_status()
        assert status.exhausted_count == 1
        assert status.total_pending == 0

        exhausted = await store.list_exhausted()
        assert exhausted[0].entry.percentage == 70
        await store.stop()

    @pytest.mark.asyncio
    async def test_requeue_exhausted_write(self, remote, queue, monitor):
        store = ReconciledGradeStore(remote, queue, monitor, max_retries=1)
        monitor.set_connected(False)
        result = await store.write(grade(70))
        monitor.set_connected(True)
        remote.available = False
        await store.reconcile()

        remote.available = True
        assert await store.requeue(result.sequence)
        assert not await store.requeue(result.sequence + 100)

        await store.reconcile()

        assert remote.records[IDENTITY].percentage == 70
        await store.stop()

    @pytest.mark.asyncio
    async def test_watcher_resolves_on_commit(self, store, monitor):
        monitor.set_connected(False)
        _, outcome = await store.write_and_watch(grade(70))

        monitor.set_connected(True)
        await store.reconcile()

        result = await outcome
        assert result.state == WriteState.COMMITTED.value
        assert result.identity == IDENTITY

    @pytest.mark.asyncio
    async def test_direct_watch_resolves_immediately(self, store):
        result, outcome = await store.write_and_watch(grade(70))

        assert outcome.done()
        assert outcome.result() is result


class TestConnectivity:

    @pytest.mark.asyncio
    async def test_restored_connectivity_triggers_drain(self, store, remote, monitor):
        await store.start()
        monitor.set_connected(False)
        await store.write(grade(88))

        monitor.set_connected(True)
        await store._drain_task

        assert remote.records[IDENTITY].percentage == 88

    @pytest.mark.asyncio
    async def test_lost_connectivity_cancels_drain(self, store, remote, monitor, queue):
        await store.start()
        monitor.set_connected(False)
        await store.write(grade(88))
        remote.delay = 0.5

        monitor.set_connected(True)
        task = store._drain_task
        await asyncio.sleep(0.2)
        monitor.set_connected(False)

        with pytest.raises(asyncio.CancelledError):
            await task

        rows = await queue.pending()
        assert len(rows) == 1
        assert rows[0].state == WriteState.PENDING
        assert rows[0].attempts == 0
        assert remote.upsert_count == 0

    @pytest.mark.asyncio
    async def test_start_recovers_in_flight_rows(self, store, queue, monitor):
        monitor.set_connected(False)
        result = await store.write(grade(70))
        await queue.mark_in_flight(result.sequence)

        await store.start()

        rows = await queue.pending()
        assert rows[0].state == WriteState.PENDING


class TestReads:

    @pytest.mark.asyncio
    async def test_get_prefers_newer_local_write(self, store, remote, monitor):
        remote.records[IDENTITY] = grade(60, offset=0)
        monitor.set_connected(False)
        await store.write(grade(75, offset=5))
        monitor.set_connected(True)

        entry = await store.get(IDENTITY)

        assert entry.percentage == 75

    @pytest.mark.asyncio
    async def test_get_prefers_newer_remote_copy(self, store, remote, monitor):
        monitor.set_connected(False)
        await store.write(grade(75, offset=0))
        remote.records[IDENTITY] = grade(95, offset=5)
        monitor.set_connected(True)

        entry = await store.get(IDENTITY)

        assert entry.percentage == 95

    @pytest.mark.asyncio
    async def test_offline_read_serves_local_queue(self, store, monitor):
        monitor.set_connected(False)
        await store.write(grade(75))

        assert (await store.get(IDENTITY)).percentage == 75
        assert await store.get(GradeIdentity("S9", "SUB1", GradePeriod.FINAL)) is None

    @pytest.mark.asyncio
    async def test_remote_failure_falls_back_to_local(self, store, remote, monitor):
        monitor.set_connected(False)
        await store.write(grade(75))
        monitor.set_connected(True)
        remote.available = False

        entries = await store.list_by_subject("SUB1")

        assert [e.percentage for e in entries] == [75]

    @pytest.mark.asyncio
    async def test_list_by_subject_merges_and_sorts(self, store, remote, monitor):
        await store.write(grade(80, student_id="S2"))
        monitor.set_connected(False)
        await store.write(grade(70, student_id="S1", period=GradePeriod.FINAL, offset=1))
        await store.write(grade(65, student_id="S1", period=GradePeriod.PRELIM, offset=2))
        monitor.set_connected(True)

        entries = await store.list_by_subject("SUB1")

        assert [(e.student_id, e.grade_period) for e in entries] == [
            ("S1", GradePeriod.PRELIM),
            ("S1", GradePeriod.FINAL),
            ("S2", GradePeriod.PRELIM),
        ]

    @pytest.mark.asyncio
    async def test_aggregate_is_invalidated_by_writes(self, store):
        await store.write(grade(90, period=GradePeriod.PRELIM))

        first = await store.aggregate("S1", "SUB1")
        assert first.final_average == pytest.approx(90)

        await store.write(grade(50, period=GradePeriod.FINAL))
        second = await store.aggregate("S1", "SUB1")

        assert second.final_average == pytest.approx((0.3 * 90 + 0.4 * 50) / 0.7)
        assert second.status == GradeStatus.AT_RISK

    @pytest.mark.asyncio
    async def test_offline_aggregate_is_recomputed_after_reconnect(self, store, monitor):
        await store.write(grade(90))
        store.cache.clear()

        monitor.set_connected(False)
        offline = await store.aggregate("S1", "SUB1")
        assert offline.status == GradeStatus.INCOMPLETE

        monitor.set_connected(True)
        online = await store.aggregate("S1", "SUB1")

        assert online.final_average == pytest.approx(90)

    @pytest.mark.asyncio
    async def test_aggregate_after_remote_failure_is_not_cached(self, store, remote):
        await store.write(grade(90))
        store.cache.clear()

        remote.available = False
        degraded = await store.aggregate("S1", "SUB1")
        assert degraded.final_average is None

        remote.available = True
        assert (await store.aggregate("S1", "SUB1")).final_average == pytest.approx(90)

    @pytest.mark.asyncio
    async def test_reconnect_clears_cached_aggregates(self, store, remote, monitor):
        await store.start()
        await store.write(grade(60))
        assert (await store.aggregate("S1", "SUB1")).final_average == pytest.approx(60)

        monitor.set_connected(False)
        remote.records[IDENTITY] = grade(85, offset=30)
        monitor.set_connected(True)

        assert (await store.aggregate("S1", "SUB1")).final_average == pytest.approx(85)

    @pytest.mark.asyncio
    async def test_write_during_aggregate_load_is_not_masked(self, store, remote):
        await store.write(grade(60, offset=0))
        remote.delay = 0.05

        reading = asyncio.create_task(store.aggregate("S1", "SUB1"))
        await asyncio.sleep(0)
        await store.write(grade(95, offset=10))
        await reading
        remote.delay = 0.0

        latest = await store.aggregate("S1", "SUB1")

        assert latest.final_average == pytest.approx(95)
