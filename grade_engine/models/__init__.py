from .pending_write import PendingWrite, WriteState
from .grade_curve import GradeCurveRecord, CurveApplicationRecord

__all__ = [
    "PendingWrite",
    "WriteState",
    "GradeCurveRecord",
    "CurveApplicationRecord",
]
