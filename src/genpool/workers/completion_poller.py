"""Completion poller: one supervised polling task per started job.

Each tick:
1. Re-read the job; a terminal job ends the poller without any write
2. Adopt the failover operation if it produced a handle since the last tick
3. Launch the one-time failover once the failover threshold is reached
4. Poll the current operation and classify the result:
   - success with artifact → storage chain → completed
   - transient provider error → new operation with a new token (bounded)
   - other terminal error → token error recorded, job failed
   - still running, or network-level poll error → next tick

When the attempt budget runs out the job fails with a timeout message.

Failover runs the replacement start call concurrently while the original
operation keeps being polled; whichever resolves first wins. The provider has
no cancel primitive, so both operations may finish and bill.
"""

import asyncio
from dataclasses import dataclass
from typing import Any
from uuid import UUID

import structlog

from genpool.core.config import Settings
from genpool.models.job import GenerationJob, JobStatus
from genpool.models.token import ProviderToken
from genpool.services.exceptions import (
    ProviderError,
    SchedulerError,
    StorageBackendError,
    TransientError,
)
from genpool.services.providers.base import PollResult, ProviderClient
from genpool.services.providers.classification import (
    ErrorCategory,
    classify_provider_error,
    is_transient,
)
from genpool.services.storage.base import Artifact
from genpool.services.storage.chain import StorageFallbackChain
from genpool.services.token_pool import TokenPoolRegistry
from genpool.stores.base import JobStore
from genpool.workers.task_registry import TaskRegistry

logger = structlog.get_logger(__name__)


def poller_key(job_id: UUID) -> str:
    return f"poll:{job_id}"


@dataclass
class _PollContext:
    job_id: UUID
    tenant_id: str
    handle: str
    token: ProviderToken
    polling_retries: int = 0
    safety_retries: int = 0
    failover_launched: bool = False
    failover_task: asyncio.Task | None = None


def describe_terminal_error(result: PollResult, category: ErrorCategory) -> str:
    """Build the user-visible message for a non-retryable provider failure."""
    provider_category = result.error_category or (
        str(result.error_code) if result.error_code is not None else "unknown"
    )
    detail = result.error_message or "no details provided"
    if category == ErrorCategory.CONTENT_POLICY:
        prefix = "Content policy rejection"
    elif category == ErrorCategory.AUTHENTICATION:
        prefix = "Provider rejected credential"
    else:
        prefix = "Generation failed"
    return (
        f"{prefix} (provider category: {provider_category}, "
        f"classified: {category.value}): {detail}"
    )


class CompletionPoller:
    """Tracks started jobs to a terminal status."""

    def __init__(
        self,
        job_store: JobStore,
        registry: TokenPoolRegistry,
        provider: ProviderClient,
        storage_chain: StorageFallbackChain,
        tasks: TaskRegistry,
        settings: Settings,
    ):
        self.job_store = job_store
        self.registry = registry
        self.provider = provider
        self.storage_chain = storage_chain
        self.tasks = tasks
        self.poll_interval_seconds = settings.poll_interval_seconds
        self.poll_timeout_seconds = settings.poll_timeout_seconds
        self.start_timeout_seconds = settings.start_timeout_seconds
        self.max_poll_attempts = settings.max_poll_attempts
        self.failover_after_attempts = settings.failover_after_attempts
        self.max_polling_retries = settings.max_polling_retries
        self.max_content_safety_retries = settings.max_content_safety_retries

    def start(
        self, job_id: UUID, tenant_id: str, operation_handle: str, token: ProviderToken
    ) -> asyncio.Task:
        """Spawn the polling task for a started job."""
        ctx = _PollContext(job_id=job_id, tenant_id=tenant_id, handle=operation_handle, token=token)
        return self.tasks.spawn(poller_key(job_id), self._run(ctx))

    def is_polling(self, job_id: UUID) -> bool:
        return self.tasks.is_active(poller_key(job_id))

    async def _run(self, ctx: _PollContext) -> None:
        log = logger.bind(job_id=str(ctx.job_id), tenant_id=ctx.tenant_id)
        log.info("job.polling.started", operation_handle=ctx.handle)
        try:
            await self._poll_until_terminal(ctx)
        except asyncio.CancelledError:
            log.info("job.polling.cancelled")
            raise
        except Exception as e:
            log.error(
                "job.polling.fatal",
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            await self._fail(ctx, f"Fatal error during polling: {e}")
        finally:
            self._discard_failover(ctx)

    def _discard_failover(self, ctx: _PollContext) -> None:
        task = ctx.failover_task
        ctx.failover_task = None
        if task is None:
            return
        if not task.done():
            task.cancel()
            logger.info("job.failover.abandoned", job_id=str(ctx.job_id))
        elif not task.cancelled() and task.exception() is None:
            # A second provider operation exists that nobody will poll
            handle, token = task.result()
            logger.warning(
                "job.failover.unused_operation",
                job_id=str(ctx.job_id),
                operation_handle=handle,
                token=token.display_name(),
            )

    async def _poll_until_terminal(self, ctx: _PollContext) -> None:
        loop = asyncio.get_running_loop()
        started_at = loop.time()

        for attempt in range(1, self.max_poll_attempts + 1):
            await asyncio.sleep(self.poll_interval_seconds)

            job = await self.job_store.get_job(ctx.job_id)
            if job is None:
                logger.warning("job.polling.job_missing", job_id=str(ctx.job_id))
                return
            if job.is_terminal:
                logger.info(
                    "job.polling.already_terminal",
                    job_id=str(ctx.job_id),
                    status=job.status.value,
                )
                return

            if ctx.failover_task is not None and ctx.failover_task.done():
                await self._adopt_failover(ctx)

            if attempt == self.failover_after_attempts and not ctx.failover_launched:
                self._launch_failover(ctx, job)

            try:
                result = await asyncio.wait_for(
                    self.provider.poll_status(ctx.token.secret, ctx.handle),
                    timeout=self.poll_timeout_seconds,
                )
            except (TransientError, TimeoutError) as e:
                logger.debug(
                    "job.polling.network_error",
                    job_id=str(ctx.job_id),
                    attempt_number=attempt,
                    error_type=type(e).__name__,
                )
                continue
            except ProviderError as e:
                self.registry.record_error(ctx.token.id)
                logger.warning(
                    "job.polling.provider_error",
                    job_id=str(ctx.job_id),
                    attempt_number=attempt,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
                continue

            if not result.terminal:
                continue

            if result.success:
                if not result.has_artifact:
                    logger.warning("job.polling.success_without_artifact", job_id=str(ctx.job_id))
                    continue
                await self._complete(ctx, result, attempt)
                return

            category = classify_provider_error(
                result.error_code, result.error_category, result.error_message
            )
            if is_transient(category):
                if await self._restart_operation(ctx, job, result, category):
                    continue
                return

            await self._fail_terminal(ctx, result, category)
            return

        elapsed = loop.time() - started_at
        await self._fail(
            ctx,
            f"Generation timed out after {elapsed:.0f}s ({self.max_poll_attempts} poll attempts)",
        )

    async def _complete(self, ctx: _PollContext, result: PollResult, attempt: int) -> None:
        artifact = Artifact(
            url=result.artifact_url,
            data=result.artifact_bytes,
            content_type=result.content_type,
        )
        try:
            stored = await self.storage_chain.persist(artifact, ctx.job_id)
        except StorageBackendError as e:
            await self._fail(ctx, f"Storage failed: {e}")
            return

        await self.job_store.update_job_status(
            ctx.job_id, ctx.tenant_id, JobStatus.COMPLETED, url=stored.url
        )
        logger.info(
            "job.polling.completed",
            job_id=str(ctx.job_id),
            tenant_id=ctx.tenant_id,
            backend=stored.backend,
            stored_in_memory=stored.stored_in_memory,
            attempt_number=attempt,
        )

    async def _fail_terminal(
        self, ctx: _PollContext, result: PollResult, category: ErrorCategory
    ) -> None:
        self.registry.record_error(ctx.token.id)
        if category == ErrorCategory.AUTHENTICATION:
            await self.registry.disable(ctx.token.id, reason=result.error_message or "")
        await self._fail(ctx, describe_terminal_error(result, category))

    async def _restart_operation(
        self,
        ctx: _PollContext,
        job: GenerationJob,
        result: PollResult,
        category: ErrorCategory,
    ) -> bool:
        """Start a brand-new operation with a new token after a transient provider error.

        Returns:
            True if polling continues on the new operation, False if the job was failed
        """
        if category == ErrorCategory.CONTENT_SAFETY:
            ctx.safety_retries += 1
            used, limit = ctx.safety_retries, self.max_content_safety_retries
        else:
            ctx.polling_retries += 1
            used, limit = ctx.polling_retries, self.max_polling_retries

        detail = result.error_message or category.value
        if used > limit:
            await self._fail(
                ctx,
                f"Provider error ({category.value}): {detail} "
                f"(failed after {limit} polling retries)",
            )
            return False

        # The current operation resolved first, so a pending failover has lost
        self._discard_failover(ctx)

        try:
            token = await self.registry.select_next(excluding={ctx.token.id})
            await self.registry.record_usage(token.id)
            handle = await asyncio.wait_for(
                self.provider.start_generation(token.secret, job.payload),
                timeout=self.start_timeout_seconds,
            )
        except (SchedulerError, TimeoutError) as e:
            await self._fail(
                ctx,
                f"Provider error ({category.value}): {detail}; restart failed: {e} "
                f"(failed after {used} polling retries)",
            )
            return False

        logger.warning(
            "job.polling.retry",
            job_id=str(ctx.job_id),
            category=category.value,
            retry_number=used,
            max_retries=limit,
            token=token.display_name(),
        )
        await self._switch_operation(ctx, handle, token)
        return True

    def _launch_failover(self, ctx: _PollContext, job: GenerationJob) -> None:
        ctx.failover_launched = True
        self.registry.record_error(ctx.token.id)
        ctx.failover_task = asyncio.create_task(
            self._start_failover(ctx.token.id, job.payload),
            name=f"failover:{ctx.job_id}",
        )
        logger.warning(
            "job.failover.launched",
            job_id=str(ctx.job_id),
            previous_token=ctx.token.display_name(),
        )

    async def _start_failover(
        self, previous_token_id: UUID, payload: dict[str, Any]
    ) -> tuple[str, ProviderToken]:
        token = await self.registry.select_next(excluding={previous_token_id})
        await self.registry.record_usage(token.id)
        handle = await asyncio.wait_for(
            self.provider.start_generation(token.secret, payload),
            timeout=self.start_timeout_seconds,
        )
        return handle, token

    async def _adopt_failover(self, ctx: _PollContext) -> None:
        task = ctx.failover_task
        ctx.failover_task = None
        if task is None or task.cancelled():
            return

        exc = task.exception()
        if exc is not None:
            logger.warning(
                "job.failover.failed",
                job_id=str(ctx.job_id),
                error_type=type(exc).__name__,
                error_message=str(exc),
            )
            return

        handle, token = task.result()
        logger.warning(
            "job.failover.switched",
            job_id=str(ctx.job_id),
            previous_handle=ctx.handle,
            operation_handle=handle,
            token=token.display_name(),
        )
        await self._switch_operation(ctx, handle, token)

    async def _switch_operation(self, ctx: _PollContext, handle: str, token: ProviderToken) -> None:
        ctx.handle = handle
        ctx.token = token
        await self.job_store.update_job_fields(
            ctx.job_id,
            operation_handle=handle,
            token_id=token.id,
            polling_retry_count=ctx.polling_retries + ctx.safety_retries,
        )
        await self.job_store.update_job_status(ctx.job_id, ctx.tenant_id, JobStatus.RETRYING)

    async def _fail(self, ctx: _PollContext, message: str) -> None:
        await self.job_store.update_job_status(
            ctx.job_id, ctx.tenant_id, JobStatus.FAILED, error=message
        )
        logger.error(
            "job.polling.failed",
            job_id=str(ctx.job_id),
            tenant_id=ctx.tenant_id,
            error_message=message,
        )
