"""
Utility modules for the grade engine.
"""

from .conflict_resolution import (
    ConflictResolution,
    ConflictResolutionStrategy,
    resolve_grade_conflict,
    merge_grade_views
)

__all__ = [
    "ConflictResolution",
    "ConflictResolutionStrategy",
    "resolve_grade_conflict",
    "merge_grade_views"
]
