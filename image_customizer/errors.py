from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TRANSIENT_RESOURCE_BUSY = "transient_resource_busy"
    TIMEOUT = "timeout"
    VALIDATION_FAILURE = "validation_failure"
    INTEGRITY_MISMATCH = "integrity_mismatch"
    PERMISSION_DENIED = "permission_denied"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    MISSING_PREREQUISITE = "missing_prerequisite"
    FATAL = "fatal"


class ImageBuildError(RuntimeError):
    """Base class for every failure raised by the customizer core."""

    kind: ErrorKind = ErrorKind.FATAL


class TransientResourceBusy(ImageBuildError):
    """Mount/unload contention. The only kind that is retried internally."""

    kind = ErrorKind.TRANSIENT_RESOURCE_BUSY


class OperationTimeout(ImageBuildError):
    kind = ErrorKind.TIMEOUT


class ValidationFailure(ImageBuildError):
    kind = ErrorKind.VALIDATION_FAILURE


class IntegrityMismatch(ImageBuildError):
    kind = ErrorKind.INTEGRITY_MISMATCH


class PermissionDenied(ImageBuildError):
    kind = ErrorKind.PERMISSION_DENIED


class ResourceExhaustion(ImageBuildError):
    kind = ErrorKind.RESOURCE_EXHAUSTION


class MissingPrerequisite(ImageBuildError):
    kind = ErrorKind.MISSING_PREREQUISITE


class RetryExhausted(ImageBuildError):
    def __init__(self, message: str, *, attempts: int, last_error: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class MountError(ImageBuildError):
    pass


class SessionBusy(ImageBuildError):
    """Another session already owns the artifact."""


class SessionStateError(ImageBuildError):
    pass


class ConfigStoreError(ImageBuildError):
    pass


class AlreadyLoaded(ConfigStoreError):
    pass


class NotLoaded(ConfigStoreError):
    pass


class ConfigStoreFatal(ConfigStoreError):
    """Unload could not complete; the hive stays attached and blocks commit."""

    def __init__(self, message: str, *, alias: str, attempts: int) -> None:
        super().__init__(message)
        self.alias = alias
        self.attempts = attempts
        self.diagnostics = None


class StepFailed(ImageBuildError):
    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"Mutation step {step} failed: {cause}")
        self.step = step
        self.cause = cause
        self.diagnostics = getattr(cause, "diagnostics", None)

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return error_kind(self.cause)


def error_kind(err: BaseException) -> ErrorKind:
    if isinstance(err, ImageBuildError):
        return err.kind
    if isinstance(err, PermissionError):
        return ErrorKind.PERMISSION_DENIED
    if isinstance(err, FileNotFoundError):
        return ErrorKind.VALIDATION_FAILURE
    return ErrorKind.FATAL
