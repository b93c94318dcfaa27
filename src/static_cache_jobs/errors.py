"""Error taxonomy for artifact generation and queue processing."""

from typing import ClassVar


class StaticCacheError(Exception):
    """Base class for all errors raised by this package."""

    kind: ClassVar[str] = "error"


class LockUnavailable(StaticCacheError):
    """Another operation already holds the lock for the resource."""

    kind: ClassVar[str] = "locked"

    def __init__(self, resource_id: str):
        self.resource_id: str = resource_id
        super().__init__(f"Resource {resource_id} is already being processed")


class ProducerFailure(StaticCacheError):
    """Capturing or transforming the resource failed."""

    kind: ClassVar[str] = "producer_failure"


class WriteFailure(StaticCacheError):
    """Writing, backing up or moving the artifact file failed."""

    kind: ClassVar[str] = "write_failure"


class ValidationFailure(WriteFailure):
    """The produced artifact is empty or malformed."""

    kind: ClassVar[str] = "validation_failure"


class NotFound(StaticCacheError):
    """The target resource (or its artifact) does not exist."""

    kind: ClassVar[str] = "not_found"


class RetryExhausted(StaticCacheError):
    """All retry attempts failed; wraps the last underlying error."""

    kind: ClassVar[str] = "retry_exhausted"

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts: int = attempts
        self.last_error: BaseException = last_error
        super().__init__(f"Operation failed after {attempts} attempts. Last error: {last_error}")


class ConditionNotMet(StaticCacheError):
    """A result-based retry never produced an acceptable result."""

    kind: ClassVar[str] = "condition_not_met"

    def __init__(self, attempts: int, last_result: object = None):
        self.attempts: int = attempts
        self.last_result: object = last_result
        super().__init__(f"Operation did not meet success condition after {attempts} attempts")


def error_kind(exc: BaseException) -> str:
    """Return the machine-readable kind for an exception.

    A ``RetryExhausted`` reports the kind of the error it wraps so that callers
    see the concrete failure rather than the retry wrapper.
    """
    if isinstance(exc, RetryExhausted):
        return error_kind(exc.last_error)
    if isinstance(exc, StaticCacheError):
        return exc.kind
    return "error"


def error_message(exc: BaseException) -> str:
    """Return the most concrete message available for an exception."""
    if isinstance(exc, RetryExhausted):
        return str(exc)
    return str(exc) or exc.__class__.__name__
