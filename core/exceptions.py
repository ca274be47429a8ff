"""
Custom exceptions for the job pipeline with structured error context.

Every exception carries a machine-readable ``code`` (persisted on failed
jobs and returned by the API) and a ``retriable`` flag that decides whether
the queue may redeliver the job.

Exception Hierarchy:
    BridgeException (base)
    ├── ValidationError
    ├── NotFoundError
    ├── AuthenticationError
    ├── RateLimitedError
    │   └── CircuitBreakerOpenError
    ├── ExtractionError
    │   └── ConnectorRequestError
    │       └── NetworkError
    ├── LoadError
    ├── JobCancelledError
    ├── InvalidTransitionError
    ├── JobStalledError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class BridgeException(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (job, connector, entity, etc.)
        original_exception: The original exception that was caught (if any)
        code: Machine-readable error code
        retriable: Whether a queue redelivery may succeed
    """

    code = "INTERNAL_ERROR"
    retriable = True

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

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
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "retriable": self.retriable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(BridgeException):
    """
    Mixin for errors that a later delivery attempt may get past.

    Use this for transient errors like:
    - Network timeouts
    - Upstream server errors (HTTP 5xx)
    - Temporary database or Redis connection issues
    """

    retriable = True


class NonRetryableError(BridgeException):
    """
    Mixin for errors that no redelivery will fix.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Invalid job requests
    - Cancellation by the user
    """

    retriable = False


# ============================================================================
# Request / Lookup Errors
# ============================================================================

class ValidationError(NonRetryableError):
    """Invalid job request, connector configuration or record."""

    code = "VALIDATION_ERROR"


class NotFoundError(NonRetryableError):
    """A job or connector does not exist for the tenant."""

    code = "NOT_FOUND"


class AuthenticationError(NonRetryableError):
    """Credentials were rejected by the external platform."""

    code = "AUTHENTICATION_ERROR"


# ============================================================================
# Rate Limiting
# ============================================================================

class RateLimitedError(RetryableError):
    """The external platform (or our own limiter) refused the request for now."""

    code = "RATE_LIMITED"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class CircuitBreakerOpenError(NonRetryableError, RateLimitedError):
    """Consecutive HTTP 429 responses exhausted the pause-and-retry budget."""

    code = "CIRCUIT_BREAKER_OPEN"


# ============================================================================
# Extraction / Load Errors
# ============================================================================

class ExtractionError(RetryableError):
    """Extraction of an entity type failed."""

    code = "EXTRACTION_ERROR"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        # A wrapped permanent failure stays permanent
        if isinstance(original_exception, BridgeException) and not original_exception.retriable:
            self.retriable = False


class ConnectorRequestError(ExtractionError):
    """
    An outbound HTTP request returned an error status.

    Context should include:
        - url: The endpoint that failed
        - status_code: HTTP status code
        - response_body: Response body (truncated)
    """

    code = "HTTP_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.status_code = status_code
        self.details = details
        if status_code is not None:
            self.context["status_code"] = status_code
            # Client errors will not change on redelivery
            if status_code < 500:
                self.retriable = False


class NetworkError(ConnectorRequestError):
    """Timeouts, transport failures and 5xx responses after local retries."""

    code = "NETWORK_ERROR"
    retriable = True


class TransformationError(NonRetryableError):
    """Records could not be mapped to the internal or destination format."""

    code = "TRANSFORMATION_ERROR"


class LoadError(RetryableError):
    """Loading into the destination failed as a whole."""

    code = "LOAD_ERROR"


# ============================================================================
# Job Lifecycle Errors
# ============================================================================

class JobCancelledError(NonRetryableError):
    """The job was cancelled by the user while it was running."""

    code = "JOB_CANCELLED"


class InvalidTransitionError(NonRetryableError):
    """A status change not permitted by the job state machine."""

    code = "INVALID_TRANSITION"


class JobStalledError(NonRetryableError):
    """The job's queue message was redelivered past its attempt budget."""

    code = "JOB_STALLED"
