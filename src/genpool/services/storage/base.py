"""Storage backend port and artifact types."""

from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

CONTENT_TYPE_EXTENSIONS = {
    "video/mp4": "mp4",
    "video/webm": "webm",
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


@dataclass(frozen=True)
class Artifact:
    """Output of a completed generation: a provider-hosted URL, raw bytes, or both."""

    url: str | None = None
    data: bytes | None = None
    content_type: str = "video/mp4"


@dataclass(frozen=True)
class StoredArtifact:
    """Where an artifact ended up.

    backend is "existing" (durable URL already on the job), "provider"
    (provider-hosted URL used as-is), a configured backend name, or "memory".
    """

    url: str
    stored_in_memory: bool
    backend: str


class StorageBackend(Protocol):
    """One persistent destination in the fallback chain."""

    name: str

    async def upload(self, data: bytes, job_id: UUID, content_type: str) -> str: ...


def file_name_for(job_id: UUID, content_type: str) -> str:
    """Return the object name for a job's artifact (e.g. "<job_id>.mp4")."""
    extension = CONTENT_TYPE_EXTENSIONS.get(content_type, "bin")
    return f"{job_id}.{extension}"
