"""
Exception taxonomy for the grade engine.

Validation problems are never raised: validators always return them as lists.
Transport failures against the remote store are absorbed by the reconciled
store and only surface as WriteFailure once retries are exhausted. Curve
configuration errors abort an apply before anything is persisted.
"""

import traceback
from datetime import datetime, timezone
from typing import Dict, Any, Optional


class ErrorCategory:
    """Error categories for classification and logging."""
    NETWORK = "network"
    SYNC = "sync"
    CONFIGURATION = "configuration"
    DATA_VALIDATION = "data_validation"
    IMPORT = "import"
    UNKNOWN = "unknown"


class GradeEngineError(Exception):
    """Base exception for grade engine errors with metadata."""

    def __init__(
        self,
        message: str,
        category: str = ErrorCategory.UNKNOWN,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.retryable = retryable
        self.details = details or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/API responses."""
        return {
            'message': self.message,
            'category': self.category,
            'retryable': self.retryable,
            'details': self.details,
            'timestamp': self.timestamp.isoformat(),
            'traceback': (
                ''.join(traceback.format_exception(self.original_exception))
                if self.original_exception else None
            )
        }


class RemoteStoreError(GradeEngineError):
    """Transport or remote-side failure talking to the grade store."""

    def __init__(self, message: str, status: Optional[int] = None, **kwargs):
        details = kwargs.pop('details', {})
        if status is not None:
            details['status'] = status
        super().__init__(
            message,
            category=ErrorCategory.NETWORK,
            retryable=True,
            details=details,
            **kwargs
        )
        self.status = status


class WriteFailure(GradeEngineError):
    """A queued grade write that could not be delivered within the retry budget."""

    def __init__(self, message: str, identity=None, attempts: int = 0, **kwargs):
        details = kwargs.pop('details', {})
        details.update({
            'identity': identity.key if identity is not None else None,
            'attempts': attempts
        })
        super().__init__(
            message,
            category=ErrorCategory.SYNC,
            retryable=False,
            details=details,
            **kwargs
        )
        self.identity = identity
        self.attempts = attempts


class CurveError(GradeEngineError):
    """Base class for curve computation errors."""


class DegenerateCurveError(CurveError):
    """Curve configuration that cannot produce a meaningful distribution."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.CONFIGURATION, **kwargs)


class InvalidCohortError(CurveError):
    """Cohort entries that cannot be curved together, or curved entries that break score rules."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.DATA_VALIDATION, **kwargs)


class EmptyCohortError(CurveError):
    """No scores were supplied to analyze or curve."""

    def __init__(self, message: str = "No scores to analyze", **kwargs):
        super().__init__(message, category=ErrorCategory.DATA_VALIDATION, **kwargs)


class CsvImportError(GradeEngineError):
    """Grade CSV could not be parsed at all."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.IMPORT, **kwargs)
