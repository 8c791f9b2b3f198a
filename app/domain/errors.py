"""
Error types for the frame customization service.

Every failure carries a user-facing message, optional details for logs,
and the HTTP status the delivery layer should answer with.
"""

from typing import Any, Dict, Optional


class FrameCustomizationError(Exception):
    """Base exception for all customization errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(FrameCustomizationError):
    """Raised for input that is rejected before any processing. Never retried."""

    status_code = 400


class PayloadTooLargeError(ValidationError):
    """Raised when a payload exceeds a hard size ceiling."""

    status_code = 413

    def __init__(self, size: int, limit: int, label: str = "File"):
        super().__init__(
            f"{label} too large. Maximum size is {limit // (1024 * 1024)}MB.",
            details={"size": size, "limit": limit},
        )


class TransientIOError(FrameCustomizationError):
    """Network or timeout failure that may succeed on retry."""

    status_code = 503


class NonRetryableUploadError(FrameCustomizationError):
    """Remote store rejected the request outright (bad request, payload too large)."""

    def __init__(self, message: str, status_code: int = 400, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.status_code = status_code


class UploadFailedError(FrameCustomizationError):
    """Terminal upload failure after all attempts were used."""

    status_code = 502

    def __init__(self, filename: str, attempts: int, cause: Exception):
        super().__init__(
            f"Failed to upload {filename} after {attempts} attempts: {cause}",
            details={"filename": filename, "attempts": attempts},
        )
        self.attempts = attempts
        self.cause = cause


class EncodingFailure(FrameCustomizationError):
    """The encoder produced no output."""

    status_code = 422


class LoadFailure(FrameCustomizationError):
    """A frame template could not be loaded. Recovered with a placeholder."""


class SessionNotFoundError(FrameCustomizationError):
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__(f"Customization session '{session_id}' not found.")


class SaveInProgressError(FrameCustomizationError):
    status_code = 409

    def __init__(self, session_id: str):
        super().__init__("A save is already in progress for this customization.", details={"session_id": session_id})
