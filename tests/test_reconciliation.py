"""Tests for the reconciliation pass (stale jobs, token sweep, cache purge)."""

import asyncio
from datetime import timedelta

import pytest

from genpool.core.timezone import utcnow
from genpool.models.job import GenerationJob, JobStatus
from genpool.services.storage.memory_cache import MemoryArtifactCache
from genpool.services.token_pool import TokenPoolRegistry
from genpool.state import SchedulerState
from genpool.workers.reconciliation_worker import (
    run_reconciliation_pass,
    run_reconciliation_worker,
)
from tests.conftest import make_settings


class StubPoller:
    def __init__(self, polling=()):
        self.polling = set(polling)

    def is_polling(self, job_id) -> bool:
        return job_id in self.polling


async def create_job(job_store, age: timedelta, status=JobStatus.PROCESSING) -> GenerationJob:
    return await job_store.create_job(
        GenerationJob(tenant_id="tenant-a", status=status, updated_at=utcnow() - age)
    )


@pytest.fixture
def settings():
    return make_settings(
        job_stale_after_seconds=1800, token_max_recent_errors=3, token_max_requests=100
    )


@pytest.fixture
def registry(token_store, settings):
    return TokenPoolRegistry(token_store, SchedulerState(), settings)


@pytest.mark.asyncio
async def test_stale_jobs_are_failed(job_store, registry, settings):
    stale = await create_job(job_store, timedelta(hours=1))
    fresh = await create_job(job_store, timedelta(minutes=1))
    done = await create_job(job_store, timedelta(hours=1), status=JobStatus.COMPLETED)

    result = await run_reconciliation_pass(job_store, registry, settings)

    assert result.stale_jobs == [stale.id]
    stale = await job_store.get_job(stale.id)
    assert stale.status == JobStatus.FAILED
    assert stale.error_message == "Timed out: no progress for 30 minutes"
    assert (await job_store.get_job(fresh.id)).status == JobStatus.PROCESSING
    assert (await job_store.get_job(done.id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_jobs_with_live_poller_are_skipped(job_store, registry, settings):
    stale = await create_job(job_store, timedelta(hours=1))

    result = await run_reconciliation_pass(
        job_store, registry, settings, poller=StubPoller([stale.id])
    )

    assert result.stale_jobs == []
    assert (await job_store.get_job(stale.id)).status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_dry_run_reports_without_writing(job_store, registry, settings, tokens):
    stale = await create_job(job_store, timedelta(hours=1))
    tokens[0].request_count = 100

    result = await run_reconciliation_pass(job_store, registry, settings, dry_run=True)

    assert result.dry_run
    assert result.stale_jobs == [stale.id]
    assert result.disabled_tokens == [tokens[0].id]
    assert (await job_store.get_job(stale.id)).status == JobStatus.PROCESSING
    assert await registry.is_active(tokens[0].id)


@pytest.mark.asyncio
async def test_token_sweep_disables_over_limit_tokens(job_store, registry, settings, tokens):
    for _ in range(3):
        registry.record_error(tokens[1].id)
    tokens[2].request_count = 150

    result = await run_reconciliation_pass(job_store, registry, settings)

    assert set(result.disabled_tokens) == {tokens[1].id, tokens[2].id}
    assert [t.id for t in await registry.list_active()] == [tokens[0].id]


@pytest.mark.asyncio
async def test_token_sweep_can_be_skipped(job_store, registry, settings, tokens):
    tokens[0].request_count = 500

    result = await run_reconciliation_pass(job_store, registry, settings, skip_tokens=True)

    assert result.disabled_tokens == []
    assert await registry.is_active(tokens[0].id)


@pytest.mark.asyncio
async def test_token_sweep_off_by_default(job_store, token_store, tokens):
    settings = make_settings()
    registry = TokenPoolRegistry(token_store, SchedulerState(), settings)
    tokens[0].request_count = 10_000

    result = await run_reconciliation_pass(job_store, registry, settings)

    assert result.disabled_tokens == []


@pytest.mark.asyncio
async def test_expired_cache_entries_are_purged(job_store, registry, settings):
    now = [0.0]
    cache = MemoryArtifactCache(100, 100, ttl_seconds=10, clock=lambda: now[0])
    cache.put("job-1", b"abc", "video/mp4")
    now[0] = 30

    result = await run_reconciliation_pass(job_store, registry, settings, memory_cache=cache)

    assert result.purged_cache_entries == 1


@pytest.mark.asyncio
async def test_worker_runs_until_cancelled(job_store, registry):
    settings = make_settings(reconciliation_interval_seconds=0.01, job_stale_after_seconds=60)
    stale = await create_job(job_store, timedelta(hours=1))
    cache = MemoryArtifactCache(100, 100, ttl_seconds=10)

    task = asyncio.create_task(
        run_reconciliation_worker(job_store, registry, StubPoller(), cache, settings)
    )
    async with asyncio.timeout(2):
        while (await job_store.get_job(stale.id)).status != JobStatus.FAILED:
            await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
