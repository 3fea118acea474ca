"""Tests for the remote grade store clients."""

import pytest
from aiohttp import web
from aiohttp import test_utils

from grade_engine.core.errors import RemoteStoreError
from grade_engine.schemas.grades import GradeEntry, GradeIdentity, GradePeriod
from grade_engine.services.sync.remote_store import HttpRemoteGradeStore, InMemoryRemoteGradeStore

IDENTITY = GradeIdentity("S1", "SUB1", GradePeriod.MIDTERM)


def grade(percentage=80.0, student_id="S1") -> GradeEntry:
    return GradeEntry.create(
        score=percentage,
        student_id=student_id,
        subject_id="SUB1",
        grade_period=GradePeriod.MIDTERM
    )


def document_store_app() -> web.Application:
    records = {}

    async def put_grade(request):
        key = (request.match_info['student'], request.match_info['subject'], request.match_info['period'])
        records[key] = await request.json()
        return web.json_response(records[key])

    async def get_grade(request):
        key = (request.match_info['student'], request.match_info['subject'], request.match_info['period'])
        if key not in records:
            raise web.HTTPNotFound()
        return web.json_response(records[key])

    async def list_grades(request):
        subject = request.match_info['subject']
        return web.json_response({'grades': [r for k, r in records.items() if k[1] == subject]})

    async def broken(request):
        return web.json_response({'error': 'boom'}, status=500)

    app = web.Application()
    app.router.add_put('/grades/{student}/{subject}/{period}', put_grade)
    app.router.add_get('/grades/{student}/{subject}/{period}', get_grade)
    app.router.add_get('/subjects/{subject}/grades', list_grades)
    app.router.add_get('/broken/subjects/{subject}/grades', broken)
    return app


@pytest.fixture
async def server():
    server = test_utils.TestServer(document_store_app())
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
async def http_store(server):
    store = HttpRemoteGradeStore(str(server.make_url("/")), timeout=5)
    yield store
    await store.close()


class TestHttpRemoteGradeStore:

    @pytest.mark.asyncio
    async def test_upsert_and_get(self, http_store):
        await http_store.upsert(grade(82))

        fetched = await http_store.get(IDENTITY)

        assert fetched.percentage == 82
        assert fetched.identity == IDENTITY

    @pytest.mark.asyncio
    async def test_upsert_replaces_record(self, http_store):
        await http_store.upsert(grade(60))
        await http_store.upsert(grade(90))

        assert (await http_store.get(IDENTITY)).percentage == 90

    @pytest.mark.asyncio
    async def test_missing_record(self, http_store):
        assert await http_store.get(IDENTITY) is None

    @pytest.mark.asyncio
    async def test_list_by_subject(self, http_store):
        await http_store.upsert(grade(60, student_id="S1"))
        await http_store.upsert(grade(70, student_id="S2"))

        records = await http_store.list_by_subject("SUB1")

        assert sorted(r.student_id for r in records) == ["S1", "S2"]
        assert await http_store.list_by_subject("OTHER") == []

    @pytest.mark.asyncio
    async def test_server_error_raises(self, server):
        async with HttpRemoteGradeStore(str(server.make_url("/broken")), timeout=5) as store:
            with pytest.raises(RemoteStoreError) as exc_info:
                await store.list_by_subject("SUB1")

        assert exc_info.value.status == 500
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_unreachable_store_raises(self, server):
        url = str(server.make_url("/"))
        await server.close()

        store = HttpRemoteGradeStore(url, timeout=2)
        try:
            with pytest.raises(RemoteStoreError):
                await store.get(IDENTITY)
        finally:
            await store.close()


class TestInMemoryRemoteGradeStore:

    @pytest.mark.asyncio
    async def test_round_trip_returns_copies(self):
        store = InMemoryRemoteGradeStore()
        entry = grade(75)

        await store.upsert(entry)
        fetched = await store.get(IDENTITY)
        fetched.percentage = 10

        assert (await store.get(IDENTITY)).percentage == 75
        assert store.upsert_count == 1

    @pytest.mark.asyncio
    async def test_failure_injection(self):
        store = InMemoryRemoteGradeStore()
        store.fail_next = 1

        with pytest.raises(RemoteStoreError):
            await store.upsert(grade())
        await store.upsert(grade())

        store.available = False
        with pytest.raises(RemoteStoreError):
            await store.list_by_subject("SUB1")
