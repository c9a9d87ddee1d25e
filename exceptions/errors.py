"""
Custom exception classes for the application.

Every error carries a stable code, an HTTP status and a details dict.
Details must never contain access credentials.
"""

from typing import Optional, Any
from datetime import datetime


class AppError(Exception):
    """
    Base exception for all application errors.

    All custom exceptions inherit from this.

    Attributes:
        code: Error code (e.g., "PAIRING_JOB_NOT_FOUND")
        message: Human-readable message
        status_code: HTTP status code
        details: Additional context
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.utcnow().isoformat()
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to API response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp
            }
        }


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(
        self,
        resource: str,
        identifier: str,
        code: Optional[str] = None
    ):
        super().__init__(
            code=code or f"{resource.upper()}_NOT_FOUND",
            message=f"{resource} not found",
            status_code=404,
            details={"id": identifier}
        )


class ValidationError(AppError):
    """Validation failed (422)."""

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=422,
            details=details
        )


class ExternalServiceError(AppError):
    """External service failure (503)."""

    def __init__(
        self,
        service: str,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code=f"{service.upper()}_ERROR",
            message=message,
            status_code=503,
            details={"service": service, **(details or {})}
        )


class DatabaseError(AppError):
    """Database operation failed (500)."""

    def __init__(
        self,
        operation: str,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code="DATABASE_ERROR",
            message=f"Database {operation} failed: {message}",
            status_code=500,
            details={"operation": operation, **(details or {})}
        )


# ===================
# PAIRING JOB ERRORS
# ===================

class PairingJobNotFoundError(NotFoundError):
    """Pairing job not found (or expired)."""

    def __init__(self, job_id: str):
        super().__init__(
            resource="Pairing job",
            identifier=job_id,
            code="PAIRING_JOB_NOT_FOUND"
        )


class InvalidJobTransitionError(ValidationError):
    """Pairing job state can only move forward."""

    def __init__(self, current_status: str, new_status: str):
        super().__init__(
            code="INVALID_JOB_TRANSITION",
            message=f"Cannot transition pairing job from {current_status} to {new_status}",
            details={
                "current_status": current_status,
                "new_status": new_status,
                "reason": "completed and failed are terminal"
            }
        )


class JobStoreError(DatabaseError):
    """Job record or chunk lock read/write failed."""

    def __init__(self, operation: str, message: str, key: Optional[str] = None):
        super().__init__(
            operation=operation,
            message=message,
            details={"key": key} if key else None
        )


# ===================
# COLLABORATOR ERRORS
# ===================

class ImageFetchError(ExternalServiceError):
    """Source image could not be downloaded."""

    def __init__(self, image_key: str, message: str):
        super().__init__(
            service="image_source",
            message=f"Failed to fetch {image_key}: {message}",
            details={"image_key": image_key}
        )


class ClassificationError(ExternalServiceError):
    """Vision classifier call failed."""

    def __init__(self, message: str, image_keys: Optional[list[str]] = None):
        super().__init__(
            service="classifier",
            message=message,
            details={"image_keys": image_keys or []}
        )


class TieBreakError(ExternalServiceError):
    """Tie-break judge call failed after retries."""

    def __init__(self, front_key: str, message: str, attempts: int = 1):
        super().__init__(
            service="tiebreak",
            message=message,
            details={"front_key": front_key, "attempts": attempts}
        )


class ChunkProcessingError(AppError):
    """One or more chunks failed during an orchestrator invocation (retryable)."""

    def __init__(self, job_id: str, failed_chunks: list[int], message: str):
        super().__init__(
            code="CHUNK_PROCESSING_FAILED",
            message=message,
            status_code=503,
            details={"job_id": job_id, "failed_chunks": failed_chunks, "retryable": True}
        )
