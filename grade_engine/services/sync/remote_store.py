"""
Remote grade store clients.

The remote store is the authoritative copy of every grade. It is addressed by
the (student, subject, period) identity tuple and replaces the whole record on
upsert. Every call may fail with RemoteStoreError.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import aiohttp

from grade_engine.core.errors import RemoteStoreError
from grade_engine.schemas.grades import GradeEntry, GradeIdentity, GradePeriod

logger = logging.getLogger(__name__)


class RemoteGradeStore(ABC):
    """Interface of the authoritative grade store."""

    @abstractmethod
    async def upsert(self, entry: GradeEntry) -> None:
        """Create or replace the record for the entry's identity tuple."""

    @abstractmethod
    async def get(self, identity: GradeIdentity) -> Optional[GradeEntry]:
        """Fetch the record for an identity tuple, or None if absent."""

    @abstractmethod
    async def list_by_subject(self, subject_id: str) -> List[GradeEntry]:
        """All records for a subject."""

    async def close(self) -> None:
        pass


class InMemoryRemoteGradeStore(RemoteGradeStore):
    """
    Dict-backed store used for local runs and tests.

    Set ``available`` to False to make every call fail, or ``fail_next`` to a
    count of upcoming upserts that should fail.
    """

    def __init__(self):
        self.records: Dict[GradeIdentity, GradeEntry] = {}
        self.available = True
        self.fail_next = 0
        self.upsert_count = 0
        self.delay = 0.0

    async def upsert(self, entry: GradeEntry) -> None:
        await self._simulate_call()
        if self.fail_next > 0:
            self.fail_next -= 1
            raise RemoteStoreError("Injected upsert failure")
        self.upsert_count += 1
        self.records[entry.identity] = entry.model_copy()

    async def get(self, identity: GradeIdentity) -> Optional[GradeEntry]:
        await self._simulate_call()
        record = self.records.get(GradeIdentity(*identity))
        return record.model_copy() if record else None

    async def list_by_subject(self, subject_id: str) -> List[GradeEntry]:
        await self._simulate_call()
        return [
            record.model_copy()
            for identity, record in self.records.items()
            if identity.subject_id == subject_id
        ]

    async def _simulate_call(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.available:
            raise RemoteStoreError("Remote grade store unavailable")


class HttpRemoteGradeStore(RemoteGradeStore):
    """aiohttp client for a REST document store holding grade records."""

    def __init__(self, base_url: str, timeout: float = 15.0):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._http_session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self._http_session:
            await self._http_session.close()
            self._http_session = None

    async def upsert(self, entry: GradeEntry) -> None:
        await self._request('PUT', self._grade_path(entry.identity), json=entry.to_record())

    async def get(self, identity: GradeIdentity) -> Optional[GradeEntry]:
        data = await self._request('GET', self._grade_path(identity), allow_missing=True)
        return GradeEntry.from_record(data) if data else None

    async def list_by_subject(self, subject_id: str) -> List[GradeEntry]:
        data = await self._request('GET', f"/subjects/{subject_id}/grades")
        records = data.get('grades', []) if isinstance(data, dict) else (data or [])
        return [GradeEntry.from_record(record) for record in records]

    def _grade_path(self, identity: GradeIdentity) -> str:
        student_id, subject_id, period = identity
        return f"/grades/{student_id}/{subject_id}/{GradePeriod(period).value}"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={
                    'User-Agent': 'Grade-Engine/1.0',
                    'Accept': 'application/json'
                }
            )
        return self._http_session

    async def _request(self, method: str, path: str, json=None, allow_missing: bool = False):
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(method, url, json=json) as response:
                if response.status == 404 and allow_missing:
                    return None
                if response.status >= 400:
                    body = await response.text()
                    raise RemoteStoreError(
                        f"{method} {path} failed with HTTP {response.status}: {body[:200]}",
                        status=response.status
                    )
                if response.status == 204 or response.content_length == 0:
                    return None
                return await response.json()

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Remote grade store request {method} {path} failed: {e}")
            raise RemoteStoreError(f"{method} {path} failed: {e}", original_exception=e)
