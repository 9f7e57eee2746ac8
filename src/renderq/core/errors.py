"""
Structured error types for renderq.

Every error raised across a component boundary derives from
:class:`RenderqError` and carries a category plus an explicit retry flag.
Callers branch on the type (``AdmissionLimitError`` vs ``CircuitOpenError``
vs a job failure) instead of parsing messages.

Hierarchy::

    RenderqError  (category, retryable, retry_after, context, cause)
    ├── ValidationError          never retried, never enqueued
    ├── AdmissionLimitError      user over quota, carries current/maximum
    ├── ConfigError
    ├── JobNotFoundError
    ├── TransientBackendError    datastore/connection hiccup, retryable
    ├── CircuitOpenError         fail-fast signal, retryable after cooldown
    ├── RenderExecutionError     render collaborator failed, retried by requeue
    └── StorageFinalizeError     artifact finalize failed, treated as job failure
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    VALIDATION = "VALIDATION"
    ADMISSION = "ADMISSION"
    CONFIG = "CONFIG"
    DATABASE = "DATABASE"
    NETWORK = "NETWORK"
    RENDER = "RENDER"
    STORAGE = "STORAGE"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error for logging."""

    job_id: str | None = None
    user_id: str | None = None
    queue_name: str | None = None
    attempt: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["job_id", "user_id", "queue_name", "attempt"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class RenderqError(Exception):
    """Base exception for all renderq errors."""

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> RenderqError:
        """
        Add context to this error (fluent API).

        Usage:
            raise RenderExecutionError("encoder crashed").with_context(job_id=job_id)
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


class ValidationError(RenderqError):
    """
    Malformed submission payload.

    Never retryable - the payload must be fixed by the caller.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field_errors: list[str] | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field_errors = field_errors or []

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field_errors:
            result["field_errors"] = list(self.field_errors)
        return result


class AdmissionLimitError(RenderqError):
    """User already has the maximum number of active render jobs."""

    default_category = ErrorCategory.ADMISSION
    default_retryable = False

    def __init__(self, current: int, maximum: int, **kwargs: Any):
        super().__init__(
            f"Maximum {maximum} concurrent render jobs per user (currently: {current})",
            **kwargs,
        )
        self.current = current
        self.maximum = maximum

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["current"] = self.current
        result["maximum"] = self.maximum
        return result


class ConfigError(RenderqError):
    """Missing or invalid configuration."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class JobNotFoundError(RenderqError):
    """Referenced job does not exist in the job store."""

    default_category = ErrorCategory.DATABASE
    default_retryable = False

    def __init__(self, job_id: str):
        super().__init__(f"Render job not found: {job_id}")
        self.job_id = job_id


class TransientBackendError(RenderqError):
    """Datastore or connection hiccup; the same call may succeed later."""

    default_category = ErrorCategory.DATABASE
    default_retryable = True


class CircuitOpenError(RenderqError):
    """Raised when a circuit breaker rejects a call without attempting it."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True

    def __init__(
        self,
        message: str = "Circuit breaker is open",
        *,
        name: str = "default",
        retry_after: float | None = None,
    ):
        super().__init__(message, retry_after=retry_after)
        self.name = name


class RenderExecutionError(RenderqError):
    """Render collaborator failed for a job attempt."""

    default_category = ErrorCategory.RENDER
    default_retryable = True


class StorageFinalizeError(RenderqError):
    """Rendered artifact could not be finalized into storage."""

    default_category = ErrorCategory.STORAGE
    default_retryable = True


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, RenderqError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, RenderqError):
        return error.category
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorCategory.NETWORK
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "RenderqError",
    "ValidationError",
    "AdmissionLimitError",
    "ConfigError",
    "JobNotFoundError",
    "TransientBackendError",
    "CircuitOpenError",
    "RenderExecutionError",
    "StorageFinalizeError",
    "is_retryable",
    "categorize_error",
]
