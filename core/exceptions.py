"""
Custom exceptions for the ingestion service with structured error context.

Every exception carries context information for debugging and for the
recovery decisions made by the ingestion loop.

Exception Hierarchy:
    IngestionException (base)
    ├── ConfigurationError
    ├── ExtractionError
    │   ├── TransportError
    │   ├── UpstreamHttpError
    │   │   └── CursorExpiredError
    │   └── BadJsonError
    ├── LoadError
    │   └── TransactionError
    └── CheckpointError

Recovery policy (see ingestion.runner):
    CursorExpiredError          -> cursor reset, loop continues
    BadJsonError                -> short delay, same cursor
    UpstreamHttpError 502/3/4   -> short delay, same cursor
    everything else             -> fatal, checkpoint is the resume point
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


CURSOR_EXPIRED_MARKERS = ("cursor_expired", "cursor expired", "expired_cursor_test")


class IngestionException(Exception):
    """
    Base exception for all ingestion errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (url, cursor, timestamp, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


class ConfigurationError(IngestionException):
    """Raised when required settings are missing or invalid."""
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(IngestionException):
    """Base exception for failures while fetching a page from the upstream API."""
    pass


class TransportError(ExtractionError):
    """
    Network-level failure (connect, read, timeout) that persisted after
    the transport's own retry budget was spent.

    Context should include:
        - api_url: The endpoint that failed
        - retry_count: Number of attempts made
    """
    pass


class UpstreamHttpError(ExtractionError):
    """
    Non-2xx response from the upstream API after transport retries.

    Attributes:
        status_code: Final HTTP status code
        body_prefix: First 300 characters of the response body
    """

    BODY_PREFIX_LENGTH = 300

    def __init__(
        self,
        status_code: int,
        body_prefix: str = "",
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.status_code = status_code
        self.body_prefix = body_prefix[:self.BODY_PREFIX_LENGTH]
        context = context or {}
        context["status_code"] = status_code
        super().__init__(
            f"API {status_code}: {self.body_prefix}",
            context,
            original_exception
        )


class CursorExpiredError(UpstreamHttpError):
    """The upstream rejected the pagination cursor because it expired."""
    pass


class BadJsonError(ExtractionError):
    """
    Response body could not be parsed as JSON (bare NaN tokens are read
    as null and do not count as malformed).

    Context should include:
        - api_url: The endpoint that returned the body
        - response_body: Body prefix
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(f"BAD_JSON: {message}", context, original_exception)


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(IngestionException):
    """Base exception for data loading failures."""
    pass


class TransactionError(LoadError):
    """
    The atomic insert + checkpoint block failed and was rolled back.

    Context should include:
        - cursor: Cursor the batch was fetched with
        - next_cursor: Cursor that would have been checkpointed
        - batch_size: Number of mapped events in the batch
    """
    pass


# ============================================================================
# Checkpoint Errors
# ============================================================================

class CheckpointError(IngestionException):
    """
    Raised when the checkpoint row cannot be read or written.

    Context should include:
        - operation: Operation that failed (read, write)
        - fields: Fields involved in the write (if applicable)
    """
    pass


def is_cursor_expired(exc: BaseException) -> bool:
    """Return True when ``exc`` signals an expired pagination cursor."""
    if isinstance(exc, CursorExpiredError):
        return True
    text = str(exc).lower()
    return any(marker in text for marker in CURSOR_EXPIRED_MARKERS)
