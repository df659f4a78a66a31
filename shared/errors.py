"""
Shared error handling for the DataLoader layer.

Every failure a caller can observe is normalized into one of these types.
Cache transport errors never appear here: the key-value store absorbs them
and degrades to cache misses.
"""

from typing import Dict, Any, List, Optional
from pydantic import BaseModel

from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    retryable: bool = False
    details: Dict[str, Any] = {}


class DataAccessError(Exception):
    """Base exception for the DataLoader layer."""

    status_code = 400
    retryable = False

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            retryable=self.retryable,
            details=self.details
        )


class ValidationError(DataAccessError):
    """Invalid configuration or request input."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ExternalServiceError(DataAccessError):
    """A backing dependency (database, upstream API) failed."""

    status_code = 502
    retryable = True

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)
        self.service = service


class BatchResolutionError(DataAccessError):
    """
    A batch could not be resolved.

    Raised to every caller waiting on the failed batch. The records may well
    exist; only this read attempt failed, so callers should retry.
    """

    status_code = 503
    retryable = True

    def __init__(
        self,
        loader: str,
        keys: List[str],
        cause: Optional[BaseException] = None,
    ):
        reason = f"{type(cause).__name__}: {cause}" if cause is not None else "unknown"
        super().__init__(
            "BATCH_RESOLUTION_FAILED",
            f"Failed to resolve batch for loader '{loader}'",
            {"loader": loader, "batch_size": len(keys), "reason": reason},
        )
        self.loader = loader
        self.keys = list(keys)
        self.__cause__ = cause


class LoadTimeoutError(DataAccessError):
    """A caller's deadline elapsed before its batch resolved."""

    status_code = 503
    retryable = True

    def __init__(self, loader: str, key: str, timeout: float):
        super().__init__(
            "LOAD_TIMEOUT",
            f"Timed out after {timeout}s waiting for '{loader}' key {key!r}",
            {"loader": loader, "key": key, "timeout_seconds": timeout},
        )
        self.loader = loader
        self.key = key
