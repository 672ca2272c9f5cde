"""
Error taxonomy for ingestion requests.

Every error carries a stable code that API responses expose to clients.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Stable codes carried by error responses."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    ALREADY_PROCESSING = "ALREADY_PROCESSING"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    TIMEOUT = "TIMEOUT"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    UNKNOWN = "UNKNOWN"


class IngestError(Exception):
    """Base exception for all ingestion errors."""
    code = ErrorCode.UNKNOWN
    # Whether the same request may succeed if sent again later
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self) -> Dict[str, Any]:
        """Render the error as an API response body."""
        body = {
            "success": False,
            "error": self.code.value,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(IngestError):
    """Malformed or unsupported input. Raised before any side effect."""
    code = ErrorCode.VALIDATION_ERROR


class AlreadyProcessingError(IngestError):
    """Another request is already processing the same source."""
    code = ErrorCode.ALREADY_PROCESSING
    retryable = True

    def __init__(self, source_key: str):
        super().__init__(
            "This content is already being processed. Please wait for the current processing to complete.",
            details={"source_key": source_key},
        )
        self.source_key = source_key


class QuotaExceededError(IngestError):
    """Daily allowance for a feature is used up."""
    code = ErrorCode.QUOTA_EXCEEDED

    def __init__(
        self,
        feature: str,
        current: int,
        limit: int,
        upgrade_message: Optional[str] = None,
    ):
        super().__init__(
            f"Daily limit exceeded for {feature} ({current}/{limit})",
            details={"feature": feature, "current": current, "limit": limit},
        )
        self.feature = feature
        self.current = current
        self.limit = limit
        self.upgrade_message = upgrade_message

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        if self.upgrade_message:
            body["upgrade_message"] = self.upgrade_message
        return body


class ExtractionError(IngestError):
    """Upstream extraction failed. Safe to retry."""
    code = ErrorCode.EXTRACTION_FAILED
    retryable = True


class AnalysisError(ExtractionError):
    """Upstream analysis (summarization) failed. Safe to retry."""


class ProcessingTimeoutError(IngestError):
    """The extraction/analysis chain ran past its time budget."""
    code = ErrorCode.TIMEOUT
    retryable = True

    def __init__(self, source_key: str, timeout_seconds: float):
        super().__init__(
            f"Processing timed out after {timeout_seconds:g}s",
            details={"source_key": source_key, "timeout_seconds": timeout_seconds},
        )
        self.source_key = source_key
        self.timeout_seconds = timeout_seconds


class PersistenceError(IngestError):
    """Work completed but the result could not be saved."""
    code = ErrorCode.PERSISTENCE_ERROR
    retryable = True


class UnknownIngestError(IngestError):
    code = ErrorCode.UNKNOWN
