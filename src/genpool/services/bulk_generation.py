"""Bulk generation service: the entry point used by the surrounding application."""

from dataclasses import dataclass, field
from typing import Any, Sequence
from uuid import UUID, uuid4

import structlog

from genpool.models.job import GenerationJob
from genpool.services.exceptions import BatchTooLargeError
from genpool.services.plan_policy import PlanPolicyProvider
from genpool.state import QueuedJob
from genpool.stores.base import JobStore
from genpool.workers.task_registry import TaskRegistry
from genpool.workers.tenant_queue import (
    ForceResetResult,
    QueueStatus,
    StopResult,
    TenantQueueManager,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BatchAccepted:
    accepted: bool
    batch_id: UUID
    job_ids: list[UUID] = field(default_factory=list)


class BulkGenerationService:
    """Accepts tenant batches and exposes queue controls.

    submit_batch is fire-and-forget: it records the jobs, enqueues them and
    returns; progress is tracked through each job's record.
    """

    def __init__(
        self,
        job_store: JobStore,
        queue_manager: TenantQueueManager,
        policy_provider: PlanPolicyProvider,
        tasks: TaskRegistry,
    ):
        self.job_store = job_store
        self.queue_manager = queue_manager
        self.policy_provider = policy_provider
        self.tasks = tasks

    async def submit_batch(
        self, tenant_id: str, payloads: Sequence[dict[str, Any]]
    ) -> BatchAccepted:
        """Create job records for a batch and enqueue them.

        Args:
            tenant_id: Submitting tenant
            payloads: One opaque provider payload per job

        Returns:
            BatchAccepted with the new batch and job IDs

        Raises:
            ValueError: If payloads is empty
            BatchTooLargeError: If the batch exceeds the tenant's prompt limit
        """
        if not payloads:
            raise ValueError("Batch must contain at least one job")

        policy = await self.policy_provider.get_batch_policy(tenant_id)
        if len(payloads) > policy.max_prompts_per_batch:
            raise BatchTooLargeError(
                f"Batch of {len(payloads)} exceeds limit of {policy.max_prompts_per_batch} "
                f"prompts per batch"
            )

        batch_id = uuid4()
        queued: list[QueuedJob] = []
        for sequence_number, payload in enumerate(payloads):
            job = await self.job_store.create_job(
                GenerationJob(
                    tenant_id=tenant_id,
                    batch_id=batch_id,
                    payload=dict(payload),
                    sequence_number=sequence_number,
                )
            )
            queued.append(
                QueuedJob(
                    job_id=job.id,
                    tenant_id=tenant_id,
                    payload=job.payload,
                    sequence_number=sequence_number,
                )
            )

        self.queue_manager.enqueue(tenant_id, queued)
        logger.info(
            "batch.accepted",
            tenant_id=tenant_id,
            batch_id=str(batch_id),
            job_count=len(queued),
        )
        return BatchAccepted(
            accepted=True, batch_id=batch_id, job_ids=[job.job_id for job in queued]
        )

    async def regenerate_job(self, tenant_id: str, job_id: UUID) -> GenerationJob:
        """Reopen a failed job and queue it again.

        Raises:
            JobNotFoundError: If the job does not exist for the tenant
            InvalidStateTransition: If the job is not failed
        """
        job = await self.job_store.reopen_job(job_id, tenant_id)
        self.queue_manager.enqueue(
            tenant_id,
            [
                QueuedJob(
                    job_id=job.id,
                    tenant_id=tenant_id,
                    payload=job.payload,
                    sequence_number=job.sequence_number,
                )
            ],
        )
        logger.info("job.regenerate.queued", tenant_id=tenant_id, job_id=str(job_id))
        return job

    async def get_queue_status(self, tenant_id: str) -> QueueStatus:
        return self.queue_manager.status(tenant_id)

    async def stop_processing(self, tenant_id: str) -> StopResult:
        return self.queue_manager.stop(tenant_id)

    async def force_reset_queue(self, tenant_id: str) -> ForceResetResult:
        return self.queue_manager.force_reset(tenant_id)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every tenant loop and poller to finish."""
        await self.tasks.wait_all(timeout=timeout)

    async def shutdown(self) -> None:
        """Cancel every tenant loop and poller."""
        await self.tasks.cancel_all()
        logger.info("scheduler.shutdown")
