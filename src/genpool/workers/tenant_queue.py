"""Per-tenant queue manager.

Each tenant owns one FIFO queue and at most one processing loop. The loop
cuts the queue into batches, reserves a round-robin token slice per batch,
submits the batch concurrently and pauses between batches.

State machine per tenant:
    Idle -[enqueue]-> Running -[queue empty]-> Idle
    Running -[stop]-> Idle (forced)
    Running -[watchdog timeout]-> Idle (forced, logged as auto-reset)

stop/reset bump the tenant's loop epoch and wake the sleeping loop, so a new
batch can start immediately; the superseded loop notices the epoch change and
exits after its in-flight batch without touching its successor's flags.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from genpool.core.config import Settings
from genpool.core.timezone import utcnow
from genpool.models.job import JobStatus
from genpool.services.exceptions import ResourceExhausted, StuckStateError
from genpool.services.plan_policy import BatchPolicy, PlanPolicyProvider, sanitize_policy
from genpool.services.token_pool import TokenPoolRegistry
from genpool.state import QueuedJob, SchedulerState, TenantQueueState
from genpool.stores.base import JobStore
from genpool.workers.submission import PreAssigned, SubmissionEngine
from genpool.workers.task_registry import TaskRegistry

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class QueueSnapshot:
    queue_length: int
    is_processing: bool
    processing_started_at: datetime | None


@dataclass(frozen=True)
class QueueStatus:
    queue_length: int
    is_processing: bool
    processing_started_at: datetime | None
    was_auto_reset: bool = False


@dataclass(frozen=True)
class StopResult:
    cleared_count: int
    was_processing: bool


@dataclass(frozen=True)
class ForceResetResult:
    previous_state: QueueSnapshot


def tenant_loop_key(tenant_id: str, epoch: int) -> str:
    return f"tenant:{tenant_id}:{epoch}"


class TenantQueueManager:
    """Owns tenant queues and their processing loops."""

    def __init__(
        self,
        state: SchedulerState,
        registry: TokenPoolRegistry,
        engine: SubmissionEngine,
        job_store: JobStore,
        policy_provider: PlanPolicyProvider,
        tasks: TaskRegistry,
        settings: Settings,
    ):
        self.state = state
        self.registry = registry
        self.engine = engine
        self.job_store = job_store
        self.policy_provider = policy_provider
        self.tasks = tasks
        self.max_processing = timedelta(seconds=settings.max_processing_seconds)
        self.default_policy = BatchPolicy(
            batch_size=settings.default_batch_size,
            inter_batch_delay_seconds=settings.default_batch_delay_seconds,
            max_prompts_per_batch=settings.default_max_prompts_per_batch,
        )

    def enqueue(self, tenant_id: str, jobs: list[QueuedJob]) -> None:
        """Append jobs to the tenant queue and start a loop if none is running."""
        queue_state = self.state.tenant(tenant_id)
        self._heal_if_stuck(queue_state)

        queue_state.queue.extend(jobs)
        queue_state.should_stop = False

        logger.info(
            "tenant_queue.enqueued",
            tenant_id=tenant_id,
            added=len(jobs),
            queue_length=len(queue_state.queue),
            already_processing=queue_state.is_processing,
        )

        if not queue_state.is_processing:
            self._start_loop(queue_state)

    def stop(self, tenant_id: str) -> StopResult:
        """Discard queued jobs and release the tenant lock immediately.

        Jobs already submitted keep being polled to their terminal state.
        """
        queue_state = self.state.tenant_queues.get(tenant_id)
        if queue_state is None:
            return StopResult(cleared_count=0, was_processing=False)

        cleared = len(queue_state.queue)
        was_processing = queue_state.is_processing
        self._reset(queue_state)

        logger.info(
            "tenant_queue.stopped",
            tenant_id=tenant_id,
            cleared_count=cleared,
            was_processing=was_processing,
        )
        return StopResult(cleared_count=cleared, was_processing=was_processing)

    def status(self, tenant_id: str) -> QueueStatus:
        """Return queue status, auto-resetting a loop that exceeded the maximum duration."""
        queue_state = self.state.tenant_queues.get(tenant_id)
        if queue_state is None:
            return QueueStatus(queue_length=0, is_processing=False, processing_started_at=None)

        was_auto_reset = self._heal_if_stuck(queue_state)
        return QueueStatus(
            queue_length=len(queue_state.queue),
            is_processing=queue_state.is_processing,
            processing_started_at=queue_state.processing_started_at,
            was_auto_reset=was_auto_reset,
        )

    def force_reset(self, tenant_id: str) -> ForceResetResult:
        """Administrative reset: clear the queue and flags, report what was there."""
        queue_state = self.state.tenant(tenant_id)
        previous = QueueSnapshot(
            queue_length=len(queue_state.queue),
            is_processing=queue_state.is_processing,
            processing_started_at=queue_state.processing_started_at,
        )
        self._reset(queue_state)
        logger.warning(
            "tenant_queue.force_reset",
            tenant_id=tenant_id,
            previous_queue_length=previous.queue_length,
            previous_is_processing=previous.is_processing,
        )
        return ForceResetResult(previous_state=previous)

    def check_watchdog(self, queue_state: TenantQueueState) -> None:
        """Raise StuckStateError when the tenant loop has run longer than allowed."""
        started_at = queue_state.processing_started_at
        if not queue_state.is_processing or started_at is None:
            return
        age = utcnow() - started_at
        if age > self.max_processing:
            raise StuckStateError(
                f"Tenant {queue_state.tenant_id} has been processing for "
                f"{age.total_seconds():.0f}s (limit {self.max_processing.total_seconds():.0f}s)"
            )

    def _heal_if_stuck(self, queue_state: TenantQueueState) -> bool:
        try:
            self.check_watchdog(queue_state)
        except StuckStateError as e:
            logger.warning(
                "tenant_queue.auto_reset",
                tenant_id=queue_state.tenant_id,
                cleared_count=len(queue_state.queue),
                reason=str(e),
            )
            self._reset(queue_state)
            return True
        return False

    def _reset(self, queue_state: TenantQueueState) -> None:
        queue_state.queue.clear()
        queue_state.should_stop = True
        queue_state.loop_epoch += 1
        queue_state.is_processing = False
        queue_state.processing_started_at = None
        queue_state.wake.set()

    def _start_loop(self, queue_state: TenantQueueState) -> None:
        queue_state.loop_epoch += 1
        queue_state.is_processing = True
        queue_state.processing_started_at = utcnow()
        queue_state.wake = asyncio.Event()

        epoch = queue_state.loop_epoch
        self.tasks.spawn(
            tenant_loop_key(queue_state.tenant_id, epoch),
            self._process_loop(queue_state, epoch, queue_state.wake),
        )

    def _owns(self, queue_state: TenantQueueState, epoch: int) -> bool:
        return queue_state.loop_epoch == epoch and not queue_state.should_stop

    async def _process_loop(
        self, queue_state: TenantQueueState, epoch: int, wake: asyncio.Event
    ) -> None:
        tenant_id = queue_state.tenant_id
        policy = await self._load_policy(tenant_id)
        batch_number = 0

        logger.info(
            "tenant_queue.loop.started",
            tenant_id=tenant_id,
            batch_size=policy.batch_size,
            inter_batch_delay_seconds=policy.inter_batch_delay_seconds,
        )

        try:
            while self._owns(queue_state, epoch) and queue_state.queue:
                take = min(policy.batch_size, len(queue_state.queue))
                batch = [queue_state.queue.popleft() for _ in range(take)]
                batch_number += 1

                dispatched = await self._dispatch_batch(tenant_id, batch, batch_number)

                if not dispatched or not queue_state.queue or not self._owns(queue_state, epoch):
                    continue

                if policy.inter_batch_delay_seconds > 0:
                    try:
                        await asyncio.wait_for(
                            wake.wait(), timeout=policy.inter_batch_delay_seconds
                        )
                    except TimeoutError:
                        pass
        finally:
            if queue_state.loop_epoch == epoch:
                queue_state.is_processing = False
                queue_state.processing_started_at = None
            logger.info(
                "tenant_queue.loop.finished",
                tenant_id=tenant_id,
                batches=batch_number,
                superseded=queue_state.loop_epoch != epoch,
            )

    async def _dispatch_batch(
        self, tenant_id: str, batch: list[QueuedJob], batch_number: int
    ) -> bool:
        """Assign tokens and submit a batch concurrently.

        Returns:
            False if the batch was failed because tokens could not be assigned
        """
        try:
            tokens = await self.registry.assign_round_robin(len(batch))
        except ResourceExhausted:
            logger.error(
                "tenant_queue.batch.no_tokens",
                tenant_id=tenant_id,
                batch_number=batch_number,
                batch_size=len(batch),
            )
            await self._fail_batch(
                batch,
                f"No active tokens available for batch {batch_number} ({len(batch)} jobs)",
            )
            return False
        except Exception as e:
            logger.error(
                "tenant_queue.batch.assignment_failed",
                tenant_id=tenant_id,
                batch_number=batch_number,
                batch_size=len(batch),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            await self._fail_batch(
                batch, f"Token assignment failed for batch {batch_number}: {e}"
            )
            return False

        logger.info(
            "tenant_queue.batch.dispatched",
            tenant_id=tenant_id,
            batch_number=batch_number,
            batch_size=len(batch),
        )

        results = await asyncio.gather(
            *(self.engine.submit(job, PreAssigned(token)) for job, token in zip(batch, tokens)),
            return_exceptions=True,
        )

        for job, result in zip(batch, results):
            if isinstance(result, BaseException):
                logger.error(
                    "tenant_queue.submission_crashed",
                    tenant_id=tenant_id,
                    job_id=str(job.job_id),
                    error=str(result),
                    error_type=type(result).__name__,
                )
                await self._fail_job(job, f"Submission error: {result}")
        return True

    async def _fail_batch(self, batch: list[QueuedJob], message: str) -> None:
        await asyncio.gather(*(self._fail_job(job, message) for job in batch))

    async def _fail_job(self, job: QueuedJob, message: str) -> None:
        await self.job_store.update_job_status(
            job.job_id, job.tenant_id, JobStatus.FAILED, error=message
        )

    async def _load_policy(self, tenant_id: str) -> BatchPolicy:
        try:
            policy = await self.policy_provider.get_batch_policy(tenant_id)
        except Exception as e:
            logger.warning(
                "tenant_queue.policy_unavailable",
                tenant_id=tenant_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return self.default_policy
        return sanitize_policy(policy, self.default_policy)
