"""GenerationJob repository.

Provides data access methods for job records, including row-locked reads used
by status writers so concurrent writers for one job serialize on the row.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genpool.models.job import ACTIVE_STATUSES, GenerationJob


class GenerationJobRepository:
    """Repository for GenerationJob entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, job_id: UUID) -> GenerationJob | None:
        """Retrieve job by UUID.

        Args:
            job_id: Job's unique identifier

        Returns:
            GenerationJob if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationJob).where(GenerationJob.id == job_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, job_id: UUID) -> GenerationJob | None:
        """Retrieve job by UUID with a row lock (SELECT ... FOR UPDATE).

        The lock is held until the surrounding transaction ends, so the
        read-check-write of a status update is atomic per job.

        Args:
            job_id: Job's unique identifier

        Returns:
            Locked GenerationJob if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def add(self, job: GenerationJob) -> GenerationJob:
        """Persist new job to database.

        Args:
            job: GenerationJob entity to persist

        Returns:
            Persisted job
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def save(self, job: GenerationJob) -> GenerationJob:
        """Flush changes of an attached job and refresh it from the database."""
        self.session.add(job)
        await self.session.flush()
        await self.session.refresh(job)
        return job

    async def list_by_batch(self, batch_id: UUID) -> list[GenerationJob]:
        """Retrieve all jobs of a batch ordered by sequence number."""
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.batch_id == batch_id)  # type: ignore[arg-type]
            .order_by(GenerationJob.sequence_number.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def list_stale(self, updated_before: datetime, limit: int = 500) -> list[GenerationJob]:
        """Retrieve non-terminal jobs with no update since updated_before.

        Query explanation:
        - WHERE status IN ('pending', 'processing', 'retrying'): still open
        - AND updated_at < :updated_before: no progress written recently
        - ORDER BY updated_at ASC: oldest first

        Args:
            updated_before: Cutoff timestamp (naive UTC)
            limit: Maximum number of jobs to return (default: 500)

        Returns:
            List of stale jobs, oldest first
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.status.in_(ACTIVE_STATUSES))  # type: ignore[attr-defined]
            .where(GenerationJob.updated_at < updated_before)  # type: ignore[arg-type]
            .order_by(GenerationJob.updated_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())
