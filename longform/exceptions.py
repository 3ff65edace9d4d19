"""Custom exception hierarchy for longform."""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # Job errors
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    JOB_ALREADY_RUNNING = "JOB_ALREADY_RUNNING"

    # Pipeline errors
    PLANNING_FAILED = "PLANNING_FAILED"
    GENERATION_FAILED = "GENERATION_FAILED"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"

    # Validation errors
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Storage errors
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"

    # Generic errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class LongformError(Exception):
    """
    Base exception for all longform errors.

    Provides structured error responses with:
    - Human-readable message
    - Machine-readable error code
    - HTTP status code
    - Optional additional details
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details
        }


class JobNotFoundError(LongformError):
    """No job record exists for the document."""

    def __init__(self, document_id: str):
        super().__init__(
            f"Job not found: {document_id}",
            ErrorCode.JOB_NOT_FOUND,
            status_code=404,
            details={"document_id": document_id}
        )


class JobAlreadyRunningError(LongformError):
    """A run is already active for this document."""

    def __init__(self, document_id: str):
        super().__init__(
            f"A run is already in progress for {document_id}",
            ErrorCode.JOB_ALREADY_RUNNING,
            status_code=409,
            details={"document_id": document_id}
        )


class ValidationError(LongformError):
    """Validation failed for caller input."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(
            message,
            ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )


class PlanningError(LongformError):
    """Planning cannot proceed and no fallback plan is possible."""

    def __init__(self, message: str):
        super().__init__(
            message,
            ErrorCode.PLANNING_FAILED,
            status_code=422,
        )


class GenerationError(LongformError):
    """The external generation call itself failed (network/provider fault)."""

    def __init__(self, provider_id: str, message: str):
        super().__init__(
            message,
            ErrorCode.GENERATION_FAILED,
            status_code=502,
            details={"provider": provider_id}
        )
        self.provider_id = provider_id


class CircuitOpenError(GenerationError):
    """Provider is short-circuited after repeated failures."""

    def __init__(self, provider_id: str, retry_after: float):
        super().__init__(
            provider_id,
            f"Circuit breaker OPEN for '{provider_id}'. Retry after {retry_after:.0f}s.",
        )
        self.error_code = ErrorCode.CIRCUIT_OPEN
        self.status_code = 503
        self.retry_after = retry_after
        self.details["retry_after"] = retry_after


class JobCancelledError(LongformError):
    """Raised by cancellation-aware generation functions to abandon a unit."""

    def __init__(self, document_id: str = ""):
        super().__init__(
            f"Job cancelled: {document_id}" if document_id else "Job cancelled",
            ErrorCode.INTERNAL_ERROR,
            status_code=409,
            details={"document_id": document_id} if document_id else {}
        )


class PersistenceError(LongformError):
    """Job state could not be saved or loaded."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        details = {}
        if original_error:
            details["original_error"] = str(original_error)

        super().__init__(
            message,
            ErrorCode.PERSISTENCE_FAILED,
            status_code=500,
            details=details
        )
