"""PostgreSQL stores built on the Unit of Work.

Every operation runs in its own short transaction. Status and field writes
lock the job row (SELECT ... FOR UPDATE) so the transition check and the write
are atomic with respect to other writers of the same job.
"""

from datetime import datetime
from typing import Any, Awaitable, Callable
from uuid import UUID

from genpool.models.job import GenerationJob, JobStatus
from genpool.models.token import ProviderToken
from genpool.stores.base import JobNotFoundError, apply_field_updates, apply_status_update
from genpool.uow import UnitOfWork

UowFactory = Callable[[], Awaitable[UnitOfWork]]


class SqlJobStore:
    """JobStore backed by the generation_jobs table."""

    def __init__(self, uow_factory: UowFactory):
        """Initialize store.

        Args:
            uow_factory: Factory returned by create_uow_factory()
        """
        self.uow_factory = uow_factory

    async def get_job(self, job_id: UUID) -> GenerationJob | None:
        async with await self.uow_factory() as uow:
            return await uow.jobs.get_by_id(job_id)

    async def create_job(self, job: GenerationJob) -> GenerationJob:
        async with await self.uow_factory() as uow:
            return await uow.jobs.add(job)

    async def update_job_status(
        self,
        job_id: UUID,
        tenant_id: str,
        status: JobStatus,
        *,
        url: str | None = None,
        error: str | None = None,
    ) -> GenerationJob | None:
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_for_update(job_id)
            if job is None:
                return None
            if apply_status_update(job, tenant_id, status, url=url, error=error):
                await uow.jobs.save(job)
            return job

    async def update_job_fields(self, job_id: UUID, **fields: Any) -> GenerationJob | None:
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_for_update(job_id)
            if job is None:
                return None
            if apply_field_updates(job, fields):
                await uow.jobs.save(job)
            return job

    async def reopen_job(self, job_id: UUID, tenant_id: str) -> GenerationJob:
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_for_update(job_id)
            if job is None or job.tenant_id != tenant_id:
                raise JobNotFoundError(f"Job {job_id} not found for tenant {tenant_id}")
            job.reopen()
            return await uow.jobs.save(job)

    async def list_stale_jobs(
        self, updated_before: datetime, limit: int = 500
    ) -> list[GenerationJob]:
        async with await self.uow_factory() as uow:
            return await uow.jobs.list_stale(updated_before, limit=limit)


class SqlTokenStore:
    """TokenStore backed by provider_tokens and the rotation_cursor row."""

    def __init__(self, uow_factory: UowFactory):
        """Initialize store.

        Args:
            uow_factory: Factory returned by create_uow_factory()
        """
        self.uow_factory = uow_factory

    async def list_tokens(self) -> list[ProviderToken]:
        async with await self.uow_factory() as uow:
            return await uow.tokens.list_all()

    async def list_active(self) -> list[ProviderToken]:
        async with await self.uow_factory() as uow:
            return await uow.tokens.list_active()

    async def get_token(self, token_id: UUID) -> ProviderToken | None:
        async with await self.uow_factory() as uow:
            return await uow.tokens.get_by_id(token_id)

    async def add_token(self, token: ProviderToken) -> ProviderToken:
        async with await self.uow_factory() as uow:
            return await uow.tokens.add(token)

    async def set_active(self, token_id: UUID, is_active: bool) -> bool:
        async with await self.uow_factory() as uow:
            return await uow.tokens.set_active(token_id, is_active)

    async def record_usage(self, token_id: UUID) -> None:
        async with await self.uow_factory() as uow:
            await uow.tokens.record_usage(token_id)

    async def advance_cursor(self, count: int, pool_size: int) -> int:
        async with await self.uow_factory() as uow:
            return await uow.rotation_cursor.advance(count, pool_size)
