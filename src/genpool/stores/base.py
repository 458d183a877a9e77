"""Store ports for job records and provider tokens.

Both the in-memory and the PostgreSQL stores apply status and field updates
through the helpers in this module, so transition rules are identical across
backends.
"""

from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

import structlog

from genpool.models.job import GenerationJob, JobStatus
from genpool.models.token import ProviderToken

logger = structlog.get_logger(__name__)

UPDATABLE_JOB_FIELDS = frozenset(
    {
        "token_id",
        "operation_handle",
        "result_url",
        "error_message",
        "instant_retry_count",
        "polling_retry_count",
    }
)


class JobStore(Protocol):
    """Durable record of every submitted job."""

    async def get_job(self, job_id: UUID) -> GenerationJob | None: ...

    async def create_job(self, job: GenerationJob) -> GenerationJob: ...

    async def update_job_status(
        self,
        job_id: UUID,
        tenant_id: str,
        status: JobStatus,
        *,
        url: str | None = None,
        error: str | None = None,
    ) -> GenerationJob | None: ...

    async def update_job_fields(self, job_id: UUID, **fields: Any) -> GenerationJob | None: ...

    async def reopen_job(self, job_id: UUID, tenant_id: str) -> GenerationJob: ...

    async def list_stale_jobs(
        self, updated_before: datetime, limit: int = 500
    ) -> list[GenerationJob]: ...


class TokenStore(Protocol):
    """Persistence for provider tokens and the shared rotation cursor."""

    async def list_tokens(self) -> list[ProviderToken]: ...

    async def list_active(self) -> list[ProviderToken]: ...

    async def get_token(self, token_id: UUID) -> ProviderToken | None: ...

    async def add_token(self, token: ProviderToken) -> ProviderToken: ...

    async def set_active(self, token_id: UUID, is_active: bool) -> bool: ...

    async def record_usage(self, token_id: UUID) -> None: ...

    async def advance_cursor(self, count: int, pool_size: int) -> int: ...


class JobNotFoundError(LookupError):
    """Raised when an operation targets a job that does not exist for the tenant."""

    pass


def apply_status_update(
    job: GenerationJob,
    tenant_id: str,
    status: JobStatus,
    url: str | None = None,
    error: str | None = None,
) -> bool:
    """Apply a status write to a job if the transition is allowed.

    Stale or illegal writes (e.g. "processing" after "completed") are logged and
    skipped, never applied.

    Args:
        job: Job to update in place
        tenant_id: Tenant issuing the write (must own the job)
        status: Target status
        url: Optional artifact reference
        error: Optional error message

    Returns:
        True if the update was applied, False if it was skipped
    """
    if job.tenant_id != tenant_id:
        logger.warning(
            "job.update.tenant_mismatch",
            job_id=str(job.id),
            owner=job.tenant_id,
            tenant_id=tenant_id,
        )
        return False

    if not job.can_transition_to(status):
        logger.info(
            "job.update.skipped",
            job_id=str(job.id),
            current_status=job.status.value,
            requested_status=status.value,
        )
        return False

    job.transition_to(status)
    if url is not None and not job.set_result_url(url):
        logger.info("job.update.durable_url_kept", job_id=str(job.id))
    if error is not None:
        job.set_error(error)
    return True


def apply_field_updates(job: GenerationJob, fields: dict[str, Any]) -> bool:
    """Apply a partial field update to a non-terminal job.

    Args:
        job: Job to update in place
        fields: Field names and values (status is not updatable here)

    Returns:
        True if the update was applied, False if the job is already terminal

    Raises:
        ValueError: If fields contains a name that is not updatable
    """
    unknown = set(fields) - UPDATABLE_JOB_FIELDS
    if unknown:
        raise ValueError(f"Fields not updatable: {', '.join(sorted(unknown))}")

    if job.is_terminal:
        logger.info(
            "job.update.skipped",
            job_id=str(job.id),
            current_status=job.status.value,
            fields=sorted(fields),
        )
        return False

    for name, value in fields.items():
        if name == "result_url":
            if value is not None and not job.set_result_url(value):
                logger.info("job.update.durable_url_kept", job_id=str(job.id))
        elif name == "error_message" and value is not None:
            job.set_error(value)
        else:
            setattr(job, name, value)
    job.touch()
    return True
