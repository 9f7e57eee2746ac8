"""Wire models and channel names for job notifications.

Wire shape of a completion::

    {"jobId": "abc", "status": "completed", "outputUrl": "https://..."}
    {"jobId": "abc", "status": "failed", "error": "encoder crashed"}
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

JOB_AVAILABLE_CHANNEL = "renderq:job-available"
JOB_COMPLETED_CHANNEL = "renderq:job-completed"
DEFAULT_CHANNELS = (JOB_AVAILABLE_CHANNEL, JOB_COMPLETED_CHANNEL)


class NotificationEvent(BaseModel):
    """Terminal result of a render job, as pushed to waiters."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    job_id: str = Field(alias="jobId", min_length=1)
    status: Literal["completed", "failed"]
    output_url: str | None = Field(default=None, alias="outputUrl")
    error: str | None = None

    @classmethod
    def completed(cls, job_id: str, output_url: str | None) -> NotificationEvent:
        return cls(job_id=job_id, status="completed", output_url=output_url)

    @classmethod
    def failed(cls, job_id: str, error: str | None) -> NotificationEvent:
        return cls(job_id=job_id, status="failed", error=error)

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_wire(cls, data: str | bytes) -> NotificationEvent:
        """Parse a wire message; raises ``pydantic.ValidationError`` on bad shape."""
        return cls.model_validate_json(data)


class JobAvailable(BaseModel):
    """Hint that new work was enqueued on *queue*."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    queue: str = Field(min_length=1)
    job_id: str | None = Field(default=None, alias="jobId")

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_wire(cls, data: str | bytes) -> JobAvailable:
        return cls.model_validate_json(data)
