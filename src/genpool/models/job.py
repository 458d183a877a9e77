"""GenerationJob entity - one tenant-submitted unit of generation work."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Text
from sqlmodel import Field, SQLModel

from genpool.core.timezone import utcnow

DURABLE_URL_SCHEMES = ("http://", "https://", "s3://", "ipfs://")
MAX_ERROR_LENGTH = 1000


class JobStatus(str, Enum):
    """Job lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.RETRYING})

# Terminal states have no automatic exits; failed -> pending goes through reopen()
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset(
        {JobStatus.PROCESSING, JobStatus.RETRYING, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.PROCESSING, JobStatus.RETRYING, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.RETRYING: frozenset(
        {JobStatus.PROCESSING, JobStatus.RETRYING, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition."""

    pass


def is_durable_reference(url: Optional[str]) -> bool:
    """Return True when url points at authoritative storage.

    memory:// cache sentinels and data: payloads are ephemeral and never count.
    """
    if not url:
        return False
    return url.lower().startswith(DURABLE_URL_SCHEMES)


class GenerationJob(SQLModel, table=True):
    """GenerationJob tracks one generation request from submission to terminal status."""

    __tablename__ = "generation_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    tenant_id: str = Field(index=True, max_length=255)
    batch_id: UUID = Field(default_factory=uuid4, index=True)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    sequence_number: int = Field(default=0, ge=0)
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)

    token_id: Optional[UUID] = Field(default=None)
    operation_handle: Optional[str] = Field(default=None, max_length=255)
    result_url: Optional[str] = Field(default=None, sa_column=Column(Text))
    error_message: Optional[str] = Field(default=None, max_length=MAX_ERROR_LENGTH)

    instant_retry_count: int = Field(default=0, ge=0)
    polling_retry_count: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, index=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_durable_result(self) -> bool:
        return is_durable_reference(self.result_url)

    def can_transition_to(self, status: JobStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    def transition_to(self, status: JobStatus) -> None:
        """Move the job to a new status.

        Args:
            status: Target status

        Raises:
            InvalidStateTransition: If the move is not allowed from the current status
        """
        if not self.can_transition_to(status):
            raise InvalidStateTransition(
                f"Cannot move job {self.id} from {self.status.value} to {status.value}."
            )
        self.status = status
        self.touch()

    def set_result_url(self, url: str) -> bool:
        """Record the artifact reference unless a durable one is already stored.

        Args:
            url: Artifact reference (durable URL, data: URL or memory:// sentinel)

        Returns:
            True if the reference was written, False if an existing durable URL was kept
        """
        if self.has_durable_result and url != self.result_url:
            return False
        self.result_url = url
        self.touch()
        return True

    def set_error(self, message: str) -> None:
        """Store an error message (truncated to 1000 characters)."""
        self.error_message = message[:MAX_ERROR_LENGTH]
        self.touch()

    def reopen(self) -> None:
        """Reset a failed job to pending for an explicit regenerate action.

        Raises:
            InvalidStateTransition: If the job is not failed
        """
        if self.status != JobStatus.FAILED:
            raise InvalidStateTransition(
                f"Only failed jobs can be regenerated; job {self.id} is {self.status.value}."
            )
        self.status = JobStatus.PENDING
        self.token_id = None
        self.operation_handle = None
        self.error_message = None
        self.instant_retry_count = 0
        self.polling_retry_count = 0
        self.touch()

    def touch(self) -> None:
        self.updated_at = utcnow()
