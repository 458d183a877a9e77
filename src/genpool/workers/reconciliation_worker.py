"""Reconciliation worker.

In-flight scheduler state is not persisted, so jobs whose poller died with the
process would stay open forever. This worker periodically:

1. Fails non-terminal jobs with no progress for JOB_STALE_AFTER_SECONDS that
   have no live poller in this process
2. Disables tokens over the configured error or request limits
3. Purges expired entries from the in-memory artifact cache
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from uuid import UUID

import structlog

from genpool.core.config import Settings
from genpool.core.timezone import utcnow
from genpool.models.job import JobStatus
from genpool.services.storage.memory_cache import MemoryArtifactCache
from genpool.services.token_pool import TokenPoolRegistry
from genpool.stores.base import JobStore
from genpool.workers.completion_poller import CompletionPoller

logger = structlog.get_logger(__name__)


@dataclass
class ReconciliationResult:
    """Outcome of one reconciliation pass."""

    stale_jobs: list[UUID] = field(default_factory=list)
    disabled_tokens: list[UUID] = field(default_factory=list)
    purged_cache_entries: int = 0
    dry_run: bool = False


async def reconcile_stale_jobs(
    job_store: JobStore,
    poller: CompletionPoller | None,
    settings: Settings,
    dry_run: bool = False,
) -> list[UUID]:
    """Mark stale non-terminal jobs as failed.

    Args:
        job_store: Store holding the job records
        poller: Local poller (jobs it is still tracking are skipped); None for offline runs
        settings: Staleness threshold
        dry_run: Report stale jobs without writing

    Returns:
        IDs of jobs that were (or, in dry-run, would be) failed
    """
    stale_after = timedelta(seconds=settings.job_stale_after_seconds)
    cutoff = utcnow() - stale_after
    minutes = int(stale_after.total_seconds() // 60)

    reconciled: list[UUID] = []
    for job in await job_store.list_stale_jobs(cutoff):
        if poller is not None and poller.is_polling(job.id):
            continue

        reconciled.append(job.id)
        if dry_run:
            continue

        await job_store.update_job_status(
            job.id,
            job.tenant_id,
            JobStatus.FAILED,
            error=f"Timed out: no progress for {minutes} minutes",
        )
        logger.warning(
            "reconciliation.job_failed",
            job_id=str(job.id),
            tenant_id=job.tenant_id,
            previous_status=job.status.value,
        )

    return reconciled


async def sweep_tokens(
    registry: TokenPoolRegistry, settings: Settings, dry_run: bool = False
) -> list[UUID]:
    """Disable active tokens over the recent-error or lifetime-request limits.

    A limit of 0 turns that check off.

    Returns:
        IDs of tokens that were (or, in dry-run, would be) disabled
    """
    max_errors = settings.token_max_recent_errors
    max_requests = settings.token_max_requests
    if max_errors <= 0 and max_requests <= 0:
        return []

    disabled: list[UUID] = []
    for token in await registry.list_active():
        recent_errors = registry.recent_error_count(token.id)
        if max_errors > 0 and recent_errors >= max_errors:
            reason = f"{recent_errors} errors in window"
        elif max_requests > 0 and token.request_count >= max_requests:
            reason = f"{token.request_count} requests"
        else:
            continue

        disabled.append(token.id)
        if not dry_run:
            await registry.disable(token.id, reason=reason)

    return disabled


async def run_reconciliation_pass(
    job_store: JobStore,
    registry: TokenPoolRegistry,
    settings: Settings,
    poller: CompletionPoller | None = None,
    memory_cache: MemoryArtifactCache | None = None,
    dry_run: bool = False,
    skip_tokens: bool = False,
) -> ReconciliationResult:
    """Run all reconciliation steps once."""
    result = ReconciliationResult(dry_run=dry_run)
    result.stale_jobs = await reconcile_stale_jobs(job_store, poller, settings, dry_run=dry_run)
    if not skip_tokens:
        result.disabled_tokens = await sweep_tokens(registry, settings, dry_run=dry_run)
    if memory_cache is not None and not dry_run:
        result.purged_cache_entries = memory_cache.purge_expired()

    if result.stale_jobs or result.disabled_tokens or result.purged_cache_entries:
        logger.info(
            "reconciliation.pass_completed",
            stale_jobs=len(result.stale_jobs),
            disabled_tokens=len(result.disabled_tokens),
            purged_cache_entries=result.purged_cache_entries,
            dry_run=dry_run,
        )
    return result


async def run_reconciliation_worker(
    job_store: JobStore,
    registry: TokenPoolRegistry,
    poller: CompletionPoller,
    memory_cache: MemoryArtifactCache,
    settings: Settings,
) -> None:
    """Main worker loop for reconciliation.

    Runs a pass every RECONCILIATION_INTERVAL_SECONDS and handles graceful shutdown.
    """
    logger.info(
        "worker.started",
        worker="reconciliation",
        interval_seconds=settings.reconciliation_interval_seconds,
        stale_after_seconds=settings.job_stale_after_seconds,
    )

    try:
        while True:
            try:
                await run_reconciliation_pass(
                    job_store,
                    registry,
                    settings,
                    poller=poller,
                    memory_cache=memory_cache,
                )
                await asyncio.sleep(settings.reconciliation_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                # Unexpected error in sweep - log and continue with backoff
                logger.error(
                    "worker.error",
                    worker="reconciliation",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker="reconciliation")
        raise
