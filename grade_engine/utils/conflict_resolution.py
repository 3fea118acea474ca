"""
Conflict resolution utilities for grade reconciliation.

Decides which copy of a grade record wins when a locally queued write meets a
remote copy of the same identity tuple.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional

from grade_engine.schemas.grades import GradeEntry, GradeIdentity

logger = logging.getLogger(__name__)


class ConflictResolutionStrategy(str, Enum):
    """Available conflict resolution strategies."""
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    NEWEST_WINS = "newest_wins"


@dataclass
class ConflictResolution:
    """Result of a conflict resolution."""
    strategy: ConflictResolutionStrategy
    resolved: GradeEntry
    local_wins: bool
    explanation: str
    metadata: Dict[str, str] = field(default_factory=dict)


def resolve_grade_conflict(
    local: GradeEntry,
    remote: Optional[GradeEntry],
    strategy: ConflictResolutionStrategy = ConflictResolutionStrategy.NEWEST_WINS
) -> ConflictResolution:
    """
    Resolve a local write against the remote copy of the same record.

    Args:
        local: The locally queued entry
        remote: The remote copy, or None when the record does not exist remotely
        strategy: Resolution strategy; last-writer-wins by date_recorded by default

    Returns:
        ConflictResolution naming the winning entry
    """
    if remote is None:
        return ConflictResolution(
            strategy=strategy,
            resolved=local,
            local_wins=True,
            explanation="No remote copy exists"
        )

    if strategy == ConflictResolutionStrategy.LOCAL_WINS:
        return ConflictResolution(strategy, local, True, "Local data takes precedence")

    if strategy == ConflictResolutionStrategy.REMOTE_WINS:
        return ConflictResolution(strategy, remote, False, "Remote data takes precedence")

    # Ties go to the local write: it was issued by this caller and is replayed as an upsert
    if remote.date_recorded > local.date_recorded:
        return ConflictResolution(
            strategy=strategy,
            resolved=remote,
            local_wins=False,
            explanation=f"Remote data is newer ({remote.date_recorded} > {local.date_recorded})",
            metadata={'superseded_by': remote.date_recorded.isoformat()}
        )
    return ConflictResolution(
        strategy=strategy,
        resolved=local,
        local_wins=True,
        explanation=f"Local data is newer or equal ({local.date_recorded} >= {remote.date_recorded})"
    )


def merge_grade_views(
    remote_entries: Iterable[GradeEntry],
    local_entries: Iterable[GradeEntry]
) -> List[GradeEntry]:
    """
    Merge remote records with still-queued local writes, one entry per identity.

    Local entries are applied in queue order, so the newest local write for a
    tuple is the one compared against the remote copy.
    """
    merged: Dict[GradeIdentity, GradeEntry] = {}
    for entry in remote_entries:
        if entry.grade_period is None:
            continue
        merged[entry.identity] = entry

    for entry in local_entries:
        if entry.grade_period is None:
            continue
        existing = merged.get(entry.identity)
        merged[entry.identity] = resolve_grade_conflict(entry, existing).resolved

    return list(merged.values())
