"""Scheduler wiring and runtime lifespan."""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Sequence

import structlog

# Import timezone enforcement (sets TZ=UTC)
from genpool.core import timezone  # noqa: F401
from genpool.core.config import Settings, StoreBackend, configure_logging
from genpool.core.database import create_schema, setup_db_session
from genpool.models.token import ProviderToken
from genpool.services.bulk_generation import BulkGenerationService
from genpool.services.plan_policy import PlanPolicyProvider, StaticPlanPolicy
from genpool.services.providers.base import ProviderClient
from genpool.services.providers.replicate_client import ReplicateProviderClient
from genpool.services.storage.base import StorageBackend
from genpool.services.storage.chain import StorageFallbackChain
from genpool.services.storage.data_url import DataUrlBackend
from genpool.services.storage.memory_cache import MemoryArtifactCache
from genpool.services.storage.pinata import PinataBackend
from genpool.services.storage.s3 import S3Backend
from genpool.services.token_pool import TokenPoolRegistry
from genpool.state import SchedulerState
from genpool.stores import InMemoryJobStore, InMemoryTokenStore, SqlJobStore, SqlTokenStore
from genpool.stores.base import JobStore, TokenStore
from genpool.uow import create_uow_factory
from genpool.workers.completion_poller import CompletionPoller
from genpool.workers.reconciliation_worker import run_reconciliation_worker
from genpool.workers.submission import SubmissionEngine
from genpool.workers.task_registry import TaskRegistry
from genpool.workers.tenant_queue import TenantQueueManager

logger = structlog.get_logger(__name__)


@dataclass
class Scheduler:
    """Wired scheduler components sharing one state and task registry."""

    settings: Settings
    state: SchedulerState
    tasks: TaskRegistry
    job_store: JobStore
    token_store: TokenStore
    registry: TokenPoolRegistry
    provider: ProviderClient
    memory_cache: MemoryArtifactCache
    storage_chain: StorageFallbackChain
    poller: CompletionPoller
    engine: SubmissionEngine
    queue_manager: TenantQueueManager
    policy_provider: PlanPolicyProvider
    service: BulkGenerationService


def create_resilient_worker(
    coro_factory: Callable[[], Awaitable[None]],
    worker_name: str,
    shutdown_event: asyncio.Event,
):
    """Create a worker with automatic restart on failure.

    Args:
        coro_factory: Zero-argument callable returning the worker coroutine
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """
    RESTART_DELAY = 1  # Fixed 1 second delay between restarts

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RESTART_DELAY,
                exc_info=exc,
            )
        else:
            # Worker loops run forever, returning is unexpected
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_factory())
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_factory())
    task.add_done_callback(on_worker_done)
    return task


async def build_stores(settings: Settings) -> tuple[JobStore, TokenStore]:
    """Create the job and token stores selected by STORE_BACKEND.

    The postgres backend creates missing tables before returning.
    """
    if settings.store_backend == StoreBackend.POSTGRES:
        session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
        await create_schema(session_factory)
        uow_factory = create_uow_factory(session_factory)
        return SqlJobStore(uow_factory), SqlTokenStore(uow_factory)

    return InMemoryJobStore(), InMemoryTokenStore()


def build_storage_backends(settings: Settings) -> list[StorageBackend]:
    """Instantiate persistent storage backends in STORAGE_BACKENDS order."""
    backends: list[StorageBackend] = []
    for name in settings.storage_backend_list:
        if name == "pinata":
            backends.append(
                PinataBackend(
                    jwt_token=settings.pinata_jwt,
                    gateway_domain=settings.pinata_gateway,
                    timeout_seconds=settings.storage_upload_timeout_seconds,
                )
            )
        elif name == "s3":
            backends.append(
                S3Backend(
                    bucket=settings.s3_bucket,
                    region=settings.s3_region,
                    prefix=settings.s3_prefix,
                    public_base_url=settings.s3_public_base_url,
                )
            )
        elif name == "data_url":
            max_bytes = settings.memory_cache_max_item_mb * 1024 * 1024
            backends.append(DataUrlBackend(max_bytes=max_bytes))
    return backends


def build_provider(settings: Settings) -> ProviderClient:
    return ReplicateProviderClient(model_version=settings.replicate_model_version)


def build_scheduler(
    settings: Settings,
    *,
    job_store: JobStore,
    token_store: TokenStore,
    provider: ProviderClient,
    backends: Sequence[StorageBackend] = (),
    memory_cache: MemoryArtifactCache | None = None,
    policy_provider: PlanPolicyProvider | None = None,
    state: SchedulerState | None = None,
) -> Scheduler:
    """Wire scheduler components around the given adapters.

    Args:
        settings: Scheduler settings
        job_store: Job persistence
        token_store: Token and rotation cursor persistence
        provider: Provider client used for starts and polls
        backends: Persistent storage backends in priority order
        memory_cache: Last-resort artifact cache (default: sized from settings)
        policy_provider: Tenant batch policies (default: StaticPlanPolicy)
        state: Shared scheduler state (default: fresh state)

    Returns:
        Scheduler with every component wired
    """
    state = state or SchedulerState()
    tasks = TaskRegistry(retention_seconds=settings.poller_retention_seconds)
    memory_cache = memory_cache or MemoryArtifactCache.from_megabytes(
        settings.memory_cache_max_mb,
        settings.memory_cache_max_item_mb,
        settings.memory_cache_ttl_seconds,
    )
    policy_provider = policy_provider or StaticPlanPolicy(settings)

    registry = TokenPoolRegistry(token_store, state, settings)
    storage_chain = StorageFallbackChain(
        job_store,
        backends,
        memory_cache,
        upload_timeout_seconds=settings.storage_upload_timeout_seconds,
    )
    poller = CompletionPoller(job_store, registry, provider, storage_chain, tasks, settings)
    engine = SubmissionEngine(job_store, registry, provider, poller, settings)
    queue_manager = TenantQueueManager(
        state, registry, engine, job_store, policy_provider, tasks, settings
    )
    service = BulkGenerationService(job_store, queue_manager, policy_provider, tasks)

    return Scheduler(
        settings=settings,
        state=state,
        tasks=tasks,
        job_store=job_store,
        token_store=token_store,
        registry=registry,
        provider=provider,
        memory_cache=memory_cache,
        storage_chain=storage_chain,
        poller=poller,
        engine=engine,
        queue_manager=queue_manager,
        policy_provider=policy_provider,
        service=service,
    )


async def seed_tokens(token_store: TokenStore, secrets: Sequence[str]) -> int:
    """Add configured provider credentials that are not in the store yet.

    Returns:
        Number of tokens added
    """
    known = {token.secret for token in await token_store.list_tokens()}
    added = 0
    for index, secret in enumerate(secrets, start=1):
        if secret in known:
            continue
        await token_store.add_token(ProviderToken(label=f"replicate-{index}", secret=secret))
        known.add(secret)
        added += 1

    if added:
        logger.info("tokens.seeded", added=added, total=len(known))
    return added


@asynccontextmanager
async def scheduler_lifespan(settings: Settings | None = None) -> AsyncIterator[Scheduler]:
    """Run the scheduler for the duration of the context.

    Handles startup and shutdown tasks:
    - Startup: configure logging, build stores, seed tokens, start reconciliation
    - Shutdown: stop the reconciliation worker, cancel tenant loops and pollers
    """
    settings = settings or Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    job_store, token_store = await build_stores(settings)
    await seed_tokens(token_store, settings.replicate_api_token_list)
    if not await token_store.list_active():
        logger.warning(
            "tokens.none_active",
            message="Every job will fail until a token is added (REPLICATE_API_TOKENS)",
        )

    scheduler = build_scheduler(
        settings,
        job_store=job_store,
        token_store=token_store,
        provider=build_provider(settings),
        backends=build_storage_backends(settings),
    )

    shutdown_event = asyncio.Event()
    reconciliation_task = create_resilient_worker(
        lambda: run_reconciliation_worker(
            job_store,
            scheduler.registry,
            scheduler.poller,
            scheduler.memory_cache,
            settings,
        ),
        "reconciliation",
        shutdown_event,
    )

    logger.info(
        "application.startup",
        store_backend=settings.store_backend.value,
        storage_backends=scheduler.storage_chain.backend_names,
    )

    try:
        yield scheduler
    finally:
        logger.info("application.shutdown")
        shutdown_event.set()
        reconciliation_task.cancel()
        await asyncio.gather(reconciliation_task, return_exceptions=True)
        await scheduler.service.shutdown()
