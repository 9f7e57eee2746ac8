"""Render-job domain models.

Defines the core data structures for the orchestration system:
- JobStatus: lifecycle of a render job, with enforced transitions
- RenderJob: a row of the job store
- JobTransition: one entry of a job's status history
- RenderPayload: validated scene + config submission payload
- SubmissionResult: outcome of a submit-and-wait call
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from renderq.core.errors import ValidationError
from renderq.core.timestamps import as_utc


class InvalidTransitionError(ValueError):
    """Raised when an illegal job status transition is attempted."""

    def __init__(self, current: str | None, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid JobStatus transition: {current} → {target}")


class JobStatus(str, Enum):
    """Status of a render job.

    Valid transition graph::

        QUEUED     → PROCESSING | FAILED
        PROCESSING → COMPLETED | FAILED | QUEUED (retry)
        COMPLETED  → (terminal)
        FAILED     → (terminal)
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING})
TERMINAL_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

JOB_VALID_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.QUEUED,  # retry
    }),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def validate_job_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_job_transition(JobStatus.PROCESSING, JobStatus.COMPLETED)
        >>> validate_job_transition(JobStatus.COMPLETED, JobStatus.PROCESSING)
        InvalidTransitionError: Invalid JobStatus transition: completed → processing
    """
    if target not in JOB_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value)


@dataclass
class RenderJob:
    """A render job as recorded in the job store."""

    id: str
    user_id: str
    status: JobStatus
    payload: dict[str, Any] = field(default_factory=dict)
    output_url: str | None = None
    error: str | None = None
    attempt: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_row(cls, row: Any) -> RenderJob:
        return cls(
            id=row.id,
            user_id=row.user_id,
            status=JobStatus(row.status),
            payload=dict(row.payload or {}),
            output_url=row.output_url,
            error=row.error,
            attempt=row.attempt or 0,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "output_url": self.output_url,
            "error": self.error,
            "attempt": self.attempt,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class JobTransition:
    """One recorded status change of a job."""

    job_id: str
    from_status: JobStatus | None
    to_status: JobStatus
    error: str | None
    attempt: int
    created_at: datetime | None


class RenderConfig(BaseModel):
    """Output settings the render collaborator needs."""

    model_config = ConfigDict(extra="allow")

    width: float = Field(gt=0)
    height: float = Field(gt=0)
    fps: float = Field(gt=0)


class RenderPayload(BaseModel):
    """Submission payload: an opaque scene plus render config."""

    model_config = ConfigDict(extra="allow")

    scene: dict[str, Any]
    config: RenderConfig

    @classmethod
    def parse(cls, payload: Any) -> RenderPayload:
        """Validate *payload*, raising renderq's :class:`ValidationError`."""
        if not isinstance(payload, dict):
            raise ValidationError("Render payload must be an object")
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as exc:
            field_errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            ]
            raise ValidationError(
                "Invalid render payload", field_errors=field_errors, cause=exc
            ) from exc


@dataclass
class SubmissionResult:
    """Outcome of ``submit_and_wait``: terminal result or still-queued."""

    job_id: str
    status: JobStatus
    output_url: str | None = None
    error: str | None = None

    @property
    def settled(self) -> bool:
        return self.status.is_terminal
