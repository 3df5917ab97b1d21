"""Import error taxonomy and per-unit error classification.

Unit-level failures are sorted into three classes:

- TRANSIENT: worth retrying (network hiccups, 429/5xx, dropped DB connections)
- PERMANENT: retrying cannot help (404, validation/parse failures)
- FATAL: anything unrecognised; propagates out of the phase and fails the run
"""

from enum import Enum
from typing import Any, Optional

import httpx
from pydantic import ValidationError
from sqlalchemy.exc import DBAPIError


class ErrorCode(str, Enum):
    """Error codes stored on skipped entities and run records."""

    SITE_UNAVAILABLE = "EC-001"
    NOT_FOUND = "EC-002"
    PARSE_FAILURE = "EC-004"
    NETWORK_INTERMITTENT = "EC-006"
    VALIDATION_FAILURE = "EC-007"
    TIMEOUT = "EC-008"


class ErrorClass(str, Enum):
    """How a unit-level failure is handled."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    FATAL = "fatal"


class CancelReason(str, Enum):
    """Why a cancellation token was raised."""

    USER = "USER"
    TIMEOUT = "TIMEOUT"


CANCELLED_BY_USER_MESSAGE = "Import cancelled by user"


def timeout_message(max_duration_hours: float) -> str:
    """User-facing reason for a run stopped by the wall-clock limit."""
    return f"{ErrorCode.TIMEOUT.value}: Import timeout exceeded ({max_duration_hours:g} hours)"


# ============================================================================
# EXCEPTIONS
# ============================================================================


class MafiaImportError(Exception):
    """Base class for import pipeline errors."""


class ImportConflictError(MafiaImportError):
    """The import lock is held by another run."""

    def __init__(self, message: str = "Import already running", progress: Optional[dict] = None):
        super().__init__(message)
        self.progress = progress or {}


class ImportCancelledError(MafiaImportError):
    """The run was cancelled by a user or by the timeout."""

    def __init__(self, reason: CancelReason = CancelReason.USER, message: Optional[str] = None):
        super().__init__(message or CANCELLED_BY_USER_MESSAGE)
        self.reason = reason


class ResumeInconsistencyError(MafiaImportError):
    """The stored checkpoint does not match the current unit list."""


class ListingUnavailableError(MafiaImportError):
    """The first page of a listing failed, so its pages cannot be enumerated."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.SITE_UNAVAILABLE):
        super().__init__(f"{code.value}: {message}")
        self.code = code


class NoImportRunningError(MafiaImportError):
    """A running import was expected but none is running."""


class InvalidPhaseError(MafiaImportError, ValueError):
    """An unknown phase name was requested."""


class UnitError(MafiaImportError):
    """A failure scoped to a single unit of work."""

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.code = code


class TransientUnitError(UnitError):
    """Explicitly retryable unit failure."""


class PermanentUnitError(UnitError):
    """Explicitly non-retryable unit failure."""


class ParseError(PermanentUnitError):
    """A fetched page could not be turned into rows."""

    def __init__(self, message: str):
        super().__init__(message, code=ErrorCode.PARSE_FAILURE)


# ============================================================================
# CLASSIFICATION
# ============================================================================

# SQLSTATE codes for deadlock / serialization failures
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def classify_error(exc: BaseException) -> ErrorClass:
    """Classify a unit-level exception.

    Args:
        exc: Exception raised while processing one unit

    Returns:
        ErrorClass deciding whether to retry, skip or fail the run
    """
    if isinstance(exc, ImportCancelledError):
        return ErrorClass.FATAL

    if isinstance(exc, TransientUnitError):
        return ErrorClass.TRANSIENT
    if isinstance(exc, PermanentUnitError):
        return ErrorClass.PERMANENT

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429 or status >= 500:
            return ErrorClass.TRANSIENT
        if 400 <= status < 500:
            return ErrorClass.PERMANENT
        return ErrorClass.FATAL

    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorClass.TRANSIENT
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorClass.TRANSIENT

    if isinstance(exc, ValidationError):
        return ErrorClass.PERMANENT

    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated or _sqlstate(exc) in _RETRYABLE_SQLSTATES:
            return ErrorClass.TRANSIENT
        return ErrorClass.FATAL

    return ErrorClass.FATAL


def error_code_for(exc: BaseException, error_class: ErrorClass) -> ErrorCode:
    """Pick the ledger error code for a failure that is being skipped."""
    if error_class == ErrorClass.TRANSIENT:
        return ErrorCode.NETWORK_INTERMITTENT

    if isinstance(exc, UnitError) and exc.code is not None:
        return exc.code
    if isinstance(exc, ValidationError):
        return ErrorCode.VALIDATION_FAILURE
    return ErrorCode.NOT_FOUND


def describe_error(exc: BaseException, attempts: int, error_class: ErrorClass) -> dict[str, Any]:
    """Structured error_details payload for the ledger."""
    details: dict[str, Any] = {
        "type": type(exc).__name__,
        "classification": error_class.value,
        "attempts": attempts,
    }
    if isinstance(exc, httpx.HTTPStatusError):
        details["status_code"] = exc.response.status_code
        details["url"] = str(exc.request.url)
    if isinstance(exc, ValidationError):
        details["validation_errors"] = exc.errors(
            include_url=False, include_context=False, include_input=False
        )
    return details


class UnitFailure(MafiaImportError):
    """A unit that failed for good after classification and any retries.

    Carries what the ledger needs: the original exception, how many
    attempts were made and the classification that stopped them.
    """

    def __init__(self, error: BaseException, attempts: int, error_class: ErrorClass):
        super().__init__(str(error) or type(error).__name__)
        self.error = error
        self.attempts = attempts
        self.error_class = error_class

    @property
    def code(self) -> ErrorCode:
        return error_code_for(self.error, self.error_class)

    @property
    def details(self) -> dict[str, Any]:
        return describe_error(self.error, self.attempts, self.error_class)
