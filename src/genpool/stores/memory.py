"""In-memory stores for local development and tests."""

import asyncio
from datetime import datetime
from typing import Any
from uuid import UUID

from genpool.models.job import GenerationJob, JobStatus
from genpool.models.token import ProviderToken
from genpool.stores.base import JobNotFoundError, apply_field_updates, apply_status_update


class InMemoryJobStore:
    """Job records kept in a dict guarded by an asyncio.Lock."""

    def __init__(self) -> None:
        self._jobs: dict[UUID, GenerationJob] = {}
        self._lock = asyncio.Lock()

    async def get_job(self, job_id: UUID) -> GenerationJob | None:
        return self._jobs.get(job_id)

    async def create_job(self, job: GenerationJob) -> GenerationJob:
        async with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            self._jobs[job.id] = job
            return job

    async def update_job_status(
        self,
        job_id: UUID,
        tenant_id: str,
        status: JobStatus,
        *,
        url: str | None = None,
        error: str | None = None,
    ) -> GenerationJob | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            apply_status_update(job, tenant_id, status, url=url, error=error)
            return job

    async def update_job_fields(self, job_id: UUID, **fields: Any) -> GenerationJob | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            apply_field_updates(job, fields)
            return job

    async def reopen_job(self, job_id: UUID, tenant_id: str) -> GenerationJob:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.tenant_id != tenant_id:
                raise JobNotFoundError(f"Job {job_id} not found for tenant {tenant_id}")
            job.reopen()
            return job

    async def list_stale_jobs(
        self, updated_before: datetime, limit: int = 500
    ) -> list[GenerationJob]:
        stale = [
            job
            for job in self._jobs.values()
            if not job.is_terminal and job.updated_at < updated_before
        ]
        stale.sort(key=lambda job: job.updated_at)
        return stale[:limit]

    async def list_jobs(self, tenant_id: str | None = None) -> list[GenerationJob]:
        """Return all jobs (optionally of one tenant) ordered by batch sequence."""
        jobs = [
            job for job in self._jobs.values() if tenant_id is None or job.tenant_id == tenant_id
        ]
        jobs.sort(key=lambda job: (job.created_at, job.sequence_number))
        return jobs


class InMemoryTokenStore:
    """Provider tokens and rotation cursor kept in memory.

    Tokens keep insertion order; list_active sorts by created_at with a stable
    sort so tokens created in the same microsecond keep that order.
    """

    def __init__(self, tokens: list[ProviderToken] | None = None) -> None:
        self._tokens: dict[UUID, ProviderToken] = {}
        self._cursor = 0
        self._lock = asyncio.Lock()
        for token in tokens or []:
            self._tokens[token.id] = token

    async def list_tokens(self) -> list[ProviderToken]:
        return sorted(self._tokens.values(), key=lambda token: token.created_at)

    async def list_active(self) -> list[ProviderToken]:
        return [token for token in await self.list_tokens() if token.is_active]

    async def get_token(self, token_id: UUID) -> ProviderToken | None:
        return self._tokens.get(token_id)

    async def add_token(self, token: ProviderToken) -> ProviderToken:
        async with self._lock:
            self._tokens[token.id] = token
            return token

    async def set_active(self, token_id: UUID, is_active: bool) -> bool:
        async with self._lock:
            token = self._tokens.get(token_id)
            if token is None:
                return False
            token.is_active = is_active
            return True

    async def record_usage(self, token_id: UUID) -> None:
        async with self._lock:
            token = self._tokens.get(token_id)
            if token is not None:
                token.mark_used()

    async def advance_cursor(self, count: int, pool_size: int) -> int:
        async with self._lock:
            start = self._cursor % pool_size
            self._cursor = (self._cursor + count) % pool_size
            return start
