"""Contracts for the external collaborators a worker drives.

Rendering (scene -> pixels -> encoded file) and artifact storage live
outside renderq. A worker only needs:

* ``Renderer.render(payload) -> RenderOutput`` - raises on failure
* ``StorageFinalizer.finalize(output_path, destination_key) -> FinalizedArtifact``
  - raises on failure; retried internally by the collaborator if it wishes

A render that succeeds but whose artifact cannot be finalized is a failed
attempt.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class RenderOutput:
    output_path: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FinalizedArtifact:
    public_url: str


@runtime_checkable
class Renderer(Protocol):
    def render(self, payload: dict[str, Any]) -> RenderOutput: ...


@runtime_checkable
class StorageFinalizer(Protocol):
    def finalize(self, output_path: str, destination_key: str) -> FinalizedArtifact: ...


def destination_key(user_id: str, job_id: str, output_path: str) -> str:
    """Storage key for a finished render: ``renders/{user}/{job}{suffix}``."""
    suffix = PurePosixPath(output_path.replace("\\", "/")).suffix or ".mp4"
    return f"renders/{user_id}/{job_id}{suffix}"


class PassthroughFinalizer:
    """Finalizer for renderers that already write to a served location.

    ``public_url`` is the output path joined to *base_url*.
    """

    def __init__(self, base_url: str = ""):
        self._base_url = base_url.rstrip("/")

    def finalize(self, output_path: str, destination_key: str) -> FinalizedArtifact:
        if self._base_url:
            return FinalizedArtifact(public_url=f"{self._base_url}/{destination_key}")
        return FinalizedArtifact(public_url=output_path)
