"""Error hierarchy for the generation engine.

This module defines the exception hierarchy for engine-level errors:
- EngineError: Base for all engine errors, tagged with an ErrorKind
- ValidationError: Bad batch parameters
- NotFoundError: Referenced batch, job or reference image is absent
- InvalidStateError: Operation attempted in the wrong lifecycle state
- ExternalServiceError: Prediction or blob upload call failed
  (TransientExternalError is retryable, PermanentExternalError is not)
- JobTimeoutError: Job exceeded its poll budget
- StorageError: Post-processing ingestion failed
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Kind of failure, carried by every EngineError and every error result."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    EXTERNAL_SERVICE = "external_service"
    TIMEOUT = "timeout"
    STORAGE = "storage"
    INTERNAL = "internal"


class EngineError(Exception):
    """Base exception for all engine errors."""

    kind: ErrorKind

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(EngineError):
    """Bad batch parameters (e.g. output count out of the allowed range)."""

    kind = ErrorKind.VALIDATION


class NotFoundError(EngineError):
    """Referenced batch, job or reference image does not exist."""

    kind = ErrorKind.NOT_FOUND


class InvalidStateError(EngineError):
    """Operation attempted on a batch or job in the wrong lifecycle state."""

    kind = ErrorKind.INVALID_STATE


class ExternalServiceError(EngineError):
    """Base exception for prediction and blob upload failures."""

    kind = ErrorKind.EXTERNAL_SERVICE
    retryable: bool = False


class TransientExternalError(ExternalServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (500, 502, 503, 504)
    """

    retryable = True


class PermanentExternalError(ExternalServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400, 422)
    - Unexpected response shapes
    """

    retryable = False


class JobTimeoutError(EngineError):
    """Job did not reach a terminal status within its wait budget."""

    kind = ErrorKind.TIMEOUT


class StorageError(EngineError):
    """Generated image could not be downloaded or persisted."""

    kind = ErrorKind.STORAGE
