"""Error taxonomy for ffu_builder.

Every error carries a stable ``code`` for programmatic handling:

- BuildValidationError: bad or missing configuration, raised before side effects
- CollaboratorError: an external tool or service failed
- CacheError: a cache manifest is unreadable (handled inside the cache)
- TaskItemError: one work item failed (aggregated by the task engine)
- BuildCancelledError: user-initiated abort
- BuildError: the single terminal error of a pipeline run
"""

from __future__ import annotations

VALIDATION_ERROR = "validation"
COLLABORATOR_ERROR = "collaborator_failed"
CACHE_ERROR = "cache_corrupt"
TASK_ERROR = "task_failed"
CANCELLED = "cancelled"
INTERNAL_ERROR = "internal_error"


class FFUBuilderError(Exception):
    """Base exception for ffu_builder errors."""

    def __init__(self, message: str, code: str = INTERNAL_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class BuildValidationError(FFUBuilderError):
    """Configuration or environment is invalid."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message, code=VALIDATION_ERROR)
        self.field = field


class CollaboratorError(FFUBuilderError):
    """An external tool or service failed."""

    def __init__(
        self,
        message: str,
        stage: str | None = None,
        cause: BaseException | None = None,
        exit_code: int | None = None,
        log_path: str | None = None,
    ) -> None:
        super().__init__(message, code=COLLABORATOR_ERROR)
        self.stage = stage
        self.cause = cause
        self.exit_code = exit_code
        self.log_path = log_path


class CacheError(FFUBuilderError):
    """A cache manifest could not be read or parsed."""

    def __init__(self, message: str, manifest_path: str | None = None) -> None:
        super().__init__(message, code=CACHE_ERROR)
        self.manifest_path = manifest_path


class TaskItemError(FFUBuilderError):
    """One work item of a batch failed."""

    def __init__(self, identifier: str, detail: str) -> None:
        super().__init__(f"Work item {identifier} failed: {detail}", code=TASK_ERROR)
        self.identifier = identifier
        self.detail = detail


class BuildCancelledError(FFUBuilderError):
    """The run was cancelled by the user."""

    def __init__(self, message: str = "Build cancelled") -> None:
        super().__init__(message, code=CANCELLED)


class BuildError(FFUBuilderError):
    """Terminal error of a pipeline run.

    Attributes:
        stage: Name of the stage that failed.
        cause: The underlying exception.
    """

    def __init__(self, stage: str, cause: BaseException) -> None:
        code = cause.code if isinstance(cause, FFUBuilderError) else INTERNAL_ERROR
        super().__init__(f"Stage {stage} failed: {cause}", code=code)
        self.stage = stage
        self.cause = cause

    @property
    def cancelled(self) -> bool:
        """Whether the run ended because of a cancellation."""
        return isinstance(self.cause, BuildCancelledError)


__all__ = [
    "CACHE_ERROR",
    "CANCELLED",
    "COLLABORATOR_ERROR",
    "INTERNAL_ERROR",
    "TASK_ERROR",
    "VALIDATION_ERROR",
    "BuildCancelledError",
    "BuildError",
    "BuildValidationError",
    "CacheError",
    "CollaboratorError",
    "FFUBuilderError",
    "TaskItemError",
]
