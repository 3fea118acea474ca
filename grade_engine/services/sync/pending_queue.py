"""
Durable FIFO of grade writes that have not reached the remote store yet.

Rows are appended with a monotonic sequence number and are only removed once
the remote store acknowledged them. Writes whose retry budget ran out stay in
the table in the EXHAUSTED state until someone requeues them.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import async_sessionmaker

from grade_engine.models.pending_write import PendingWrite, WriteState
from grade_engine.schemas.grades import GradeEntry, GradeIdentity

logger = logging.getLogger(__name__)

ACTIVE_STATES = (WriteState.PENDING, WriteState.IN_FLIGHT, WriteState.FAILED)


@dataclass
class QueuedWrite:
    """Detached view of one queued write."""
    sequence: int
    identity: GradeIdentity
    entry: GradeEntry
    state: WriteState
    attempts: int
    last_error: Optional[str]
    created_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: PendingWrite) -> "QueuedWrite":
        entry = GradeEntry.from_record(row.payload)
        return cls(
            sequence=row.sequence,
            identity=entry.identity,
            entry=entry,
            state=row.state,
            attempts=row.attempts,
            last_error=row.last_error,
            created_at=row.created_at
        )


class PendingWriteQueue:
    """SQLAlchemy-backed pending write queue."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def enqueue(self, entry: GradeEntry) -> int:
        """Append a write; returns its sequence number."""
        identity = entry.identity
        row = PendingWrite(
            student_id=identity.student_id,
            subject_id=identity.subject_id,
            grade_period=identity.grade_period.value,
            identity_key=identity.key,
            payload=entry.to_record(),
            date_recorded=entry.date_recorded,
            state=WriteState.PENDING,
            attempts=0,
            synced=False
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(row)
                await session.flush()
                sequence = row.sequence

        logger.debug(f"Queued grade write #{sequence} for {identity.key}")
        return sequence

    async def pending(self) -> List[QueuedWrite]:
        """Undelivered writes in sequence order, excluding exhausted ones."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(PendingWrite)
                .where(PendingWrite.state.in_(ACTIVE_STATES))
                .order_by(PendingWrite.sequence)
            )
            return [QueuedWrite.from_row(row) for row in result.scalars().all()]

    async def pending_for(self, identity: GradeIdentity) -> List[QueuedWrite]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PendingWrite)
                .where(
                    PendingWrite.identity_key == GradeIdentity(*identity).key,
                    PendingWrite.state.in_(ACTIVE_STATES)
                )
                .order_by(PendingWrite.sequence)
            )
            return [QueuedWrite.from_row(row) for row in result.scalars().all()]

    async def pending_for_subject(self, subject_id: str) -> List[QueuedWrite]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PendingWrite)
                .where(
                    PendingWrite.subject_id == subject_id,
                    PendingWrite.state.in_(ACTIVE_STATES)
                )
                .order_by(PendingWrite.sequence)
            )
            return [QueuedWrite.from_row(row) for row in result.scalars().all()]

    async def has_pending(self, identity: GradeIdentity) -> bool:
        async with self.session_factory() as session:
            count = await session.scalar(
                select(func.count(PendingWrite.sequence))
                .where(
                    PendingWrite.identity_key == GradeIdentity(*identity).key,
                    PendingWrite.state.in_(ACTIVE_STATES)
                )
            )
            return bool(count)

    async def mark_in_flight(self, sequence: int) -> None:
        await self._set_state(sequence, state=WriteState.IN_FLIGHT)

    async def acknowledge(self, sequence: int) -> None:
        """Remove a write the remote store accepted or superseded."""
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(PendingWrite).where(PendingWrite.sequence == sequence)
                )

    async def mark_failed(self, sequence: int, error: str) -> int:
        """Record a failed attempt; returns the attempt count."""
        async with self.session_factory() as session:
            async with session.begin():
                row = await session.get(PendingWrite, sequence)
                if row is None:
                    return 0
                row.attempts = (row.attempts or 0) + 1
                row.state = WriteState.FAILED
                row.last_error = error
                return row.attempts

    async def mark_exhausted(self, sequence: int, error: Optional[str] = None) -> None:
        values = {'state': WriteState.EXHAUSTED}
        if error is not None:
            values['last_error'] = error
        await self._set_state(sequence, **values)

    async def reset_in_flight(self) -> int:
        """Return writes left IN_FLIGHT by an interrupted drain to PENDING."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(PendingWrite)
                    .where(PendingWrite.state == WriteState.IN_FLIGHT)
                    .values(state=WriteState.PENDING)
                )
                reset = result.rowcount or 0

        if reset:
            logger.info(f"Reset {reset} in-flight grade writes to pending")
        return reset

    async def list_exhausted(self) -> List[QueuedWrite]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PendingWrite)
                .where(PendingWrite.state == WriteState.EXHAUSTED)
                .order_by(PendingWrite.sequence)
            )
            return [QueuedWrite.from_row(row) for row in result.scalars().all()]

    async def requeue(self, sequence: int) -> bool:
        """Give an exhausted write a fresh retry budget."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(PendingWrite)
                    .where(
                        PendingWrite.sequence == sequence,
                        PendingWrite.state == WriteState.EXHAUSTED
                    )
                    .values(state=WriteState.PENDING, attempts=0)
                )
                return bool(result.rowcount)

    async def counts(self) -> Dict[WriteState, int]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PendingWrite.state, func.count(PendingWrite.sequence))
                .group_by(PendingWrite.state)
            )
            counts = {state: 0 for state in WriteState}
            for state, count in result.all():
                counts[WriteState(state)] = count
            return counts

    async def _set_state(self, sequence: int, **values) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(PendingWrite)
                    .where(PendingWrite.sequence == sequence)
                    .values(**values)
                )
