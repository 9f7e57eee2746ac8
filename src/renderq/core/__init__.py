"""Core primitives shared by every renderq component.

Errors, logging, settings, persistence and the notification channel live
here; orchestration logic lives in :mod:`renderq.execution`.
"""

from renderq.core.errors import (
    AdmissionLimitError,
    CircuitOpenError,
    ConfigError,
    ErrorCategory,
    JobNotFoundError,
    RenderExecutionError,
    RenderqError,
    StorageFinalizeError,
    TransientBackendError,
    ValidationError,
    is_retryable,
)

__all__ = [
    "AdmissionLimitError",
    "CircuitOpenError",
    "ConfigError",
    "ErrorCategory",
    "JobNotFoundError",
    "RenderExecutionError",
    "RenderqError",
    "StorageFinalizeError",
    "TransientBackendError",
    "ValidationError",
    "is_retryable",
]
