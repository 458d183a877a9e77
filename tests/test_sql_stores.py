"""Tests for the PostgreSQL job and token stores.

Uses testcontainers PostgreSQL; skipped when Docker is unavailable.
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from genpool.core.timezone import utcnow
from genpool.models.job import GenerationJob, JobStatus
from genpool.stores.base import JobNotFoundError
from genpool.stores.sql import SqlJobStore, SqlTokenStore
from tests.conftest import make_tokens


@pytest.mark.asyncio
async def test_job_status_flow_and_stale_write(uow_factory):
    store = SqlJobStore(uow_factory)
    job = await store.create_job(GenerationJob(tenant_id="tenant-a", payload={"prompt": "cat"}))

    await store.update_job_status(job.id, "tenant-a", JobStatus.PROCESSING)
    await store.update_job_status(
        job.id, "tenant-a", JobStatus.COMPLETED, url="https://gateway.example/ipfs/Qm1"
    )
    stale = await store.update_job_status(job.id, "tenant-a", JobStatus.PROCESSING)

    assert stale.status == JobStatus.COMPLETED
    stored = await store.get_job(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.result_url == "https://gateway.example/ipfs/Qm1"
    assert stored.payload == {"prompt": "cat"}


@pytest.mark.asyncio
async def test_other_tenant_cannot_update_job(uow_factory):
    store = SqlJobStore(uow_factory)
    job = await store.create_job(GenerationJob(tenant_id="tenant-a"))

    await store.update_job_status(job.id, "tenant-b", JobStatus.FAILED, error="nope")

    assert (await store.get_job(job.id)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_field_updates_skip_terminal_jobs(uow_factory):
    store = SqlJobStore(uow_factory)
    job = await store.create_job(GenerationJob(tenant_id="tenant-a"))

    await store.update_job_fields(job.id, operation_handle="op-1", polling_retry_count=1)
    await store.update_job_status(job.id, "tenant-a", JobStatus.FAILED, error="boom")
    await store.update_job_fields(job.id, operation_handle="op-2")

    stored = await store.get_job(job.id)
    assert stored.operation_handle == "op-1"
    assert stored.polling_retry_count == 1
    assert stored.error_message == "boom"


@pytest.mark.asyncio
async def test_reopen_failed_job(uow_factory):
    store = SqlJobStore(uow_factory)
    job = await store.create_job(GenerationJob(tenant_id="tenant-a"))
    await store.update_job_status(job.id, "tenant-a", JobStatus.FAILED, error="boom")

    reopened = await store.reopen_job(job.id, "tenant-a")

    assert reopened.status == JobStatus.PENDING
    assert reopened.error_message is None
    with pytest.raises(JobNotFoundError):
        await store.reopen_job(job.id, "tenant-b")
    with pytest.raises(JobNotFoundError):
        await store.reopen_job(uuid4(), "tenant-a")


@pytest.mark.asyncio
async def test_list_stale_jobs_oldest_first(uow_factory):
    store = SqlJobStore(uow_factory)
    now = utcnow()
    older = await store.create_job(
        GenerationJob(
            tenant_id="a", status=JobStatus.PROCESSING, updated_at=now - timedelta(hours=2)
        )
    )
    old = await store.create_job(
        GenerationJob(tenant_id="a", status=JobStatus.RETRYING, updated_at=now - timedelta(hours=1))
    )
    await store.create_job(GenerationJob(tenant_id="a", status=JobStatus.PROCESSING))
    await store.create_job(
        GenerationJob(
            tenant_id="a", status=JobStatus.COMPLETED, updated_at=now - timedelta(hours=3)
        )
    )

    stale = await store.list_stale_jobs(now - timedelta(minutes=30))

    assert [job.id for job in stale] == [older.id, old.id]


@pytest.mark.asyncio
async def test_batch_jobs_listed_by_sequence(uow_factory):
    store = SqlJobStore(uow_factory)
    batch_id = uuid4()
    for sequence_number in (2, 0, 1):
        await store.create_job(
            GenerationJob(tenant_id="a", batch_id=batch_id, sequence_number=sequence_number)
        )

    async with await uow_factory() as uow:
        jobs = await uow.jobs.list_by_batch(batch_id)

    assert [job.sequence_number for job in jobs] == [0, 1, 2]


@pytest.mark.asyncio
async def test_token_order_activation_and_usage(uow_factory):
    store = SqlTokenStore(uow_factory)
    tokens = make_tokens(3)
    for token in reversed(tokens):
        await store.add_token(token)

    assert [t.id for t in await store.list_active()] == [t.id for t in tokens]

    assert await store.set_active(tokens[1].id, False)
    assert not await store.set_active(uuid4(), False)
    assert [t.id for t in await store.list_active()] == [tokens[0].id, tokens[2].id]
    assert len(await store.list_tokens()) == 3

    await store.record_usage(tokens[0].id)
    await store.record_usage(tokens[0].id)
    used = await store.get_token(tokens[0].id)
    assert used.request_count == 2
    assert used.last_used_at is not None


@pytest.mark.asyncio
async def test_cursor_advances_and_wraps(uow_factory):
    store = SqlTokenStore(uow_factory)

    assert [await store.advance_cursor(1, 3) for _ in range(4)] == [0, 1, 2, 0]

    async with await uow_factory() as uow:
        assert await uow.rotation_cursor.get_next_index() == 1


@pytest.mark.asyncio
async def test_concurrent_cursor_reservations_do_not_overlap(uow_factory):
    store = SqlTokenStore(uow_factory)
    await store.advance_cursor(1, 100)

    starts = await asyncio.gather(*(store.advance_cursor(2, 100) for _ in range(10)))

    assert sorted(starts) == list(range(1, 21, 2))
