"""pytest fixtures for genpool tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- settings: Test settings with millisecond timings and no persistent storage backends
- provider: Scripted in-process ProviderClient
- token_store / job_store: In-memory stores (three tokens with distinct created_at)
- scheduler: Fully wired scheduler around the fakes
- postgres_container / uow_factory: Session-scoped PostgreSQL testcontainer (Docker required)
"""

import asyncio
import os
import shutil
from datetime import timedelta
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import text

from genpool.app import Scheduler, build_scheduler
from genpool.core.config import Settings
from genpool.core.timezone import utcnow
from genpool.models.token import ProviderToken
from genpool.services.exceptions import AuthenticationError
from genpool.services.providers.base import PollResult
from genpool.services.storage.memory_cache import MemoryArtifactCache
from genpool.stores.memory import InMemoryJobStore, InMemoryTokenStore


def make_settings(**overrides: Any) -> Settings:
    """Build settings for tests: tiny intervals, no external services."""
    values: dict[str, Any] = {
        "app_env": "test",
        "storage_backends": "",
        "replicate_api_tokens": "",
        "start_timeout_seconds": 1.0,
        "poll_timeout_seconds": 1.0,
        "max_instant_retries": 10,
        "instant_retry_delay_seconds": 0,
        "poll_interval_seconds": 0.001,
        "max_poll_attempts": 50,
        "failover_after_attempts": 1000,
        "max_polling_retries": 3,
        "max_content_safety_retries": 2,
        "poller_retention_seconds": 0,
        "default_batch_size": 10,
        "default_batch_delay_seconds": 0.01,
        "default_max_prompts_per_batch": 100,
        "tenant_plans": "",
        "storage_upload_timeout_seconds": 1.0,
    }
    values.update(overrides)
    return Settings(**values)


def make_tokens(count: int) -> list[ProviderToken]:
    """Tokens with strictly increasing created_at so rotation order is deterministic."""
    base = utcnow() - timedelta(hours=1)
    return [
        ProviderToken(
            label=f"token-{index}",
            secret=f"secret-{index}",
            created_at=base + timedelta(seconds=index),
        )
        for index in range(count)
    ]


class FakeProvider:
    """Scripted ProviderClient.

    Start calls return sequential handles ("op-1", "op-2", ...) unless the
    credential is in auth_failures or start_failures still holds exceptions.
    Poll results come from poll_scripts keyed by handle, then by payload
    "prompt"; the last scripted item repeats. Unscripted operations succeed
    with a provider-hosted URL.
    """

    def __init__(self) -> None:
        self.start_calls: list[tuple[str, dict[str, Any]]] = []
        self.poll_calls: list[tuple[str, str]] = []
        self.auth_failures: set[str] = set()
        self.start_failures: list[Exception] = []
        self.start_delay: float = 0
        self.poll_scripts: dict[str, list[PollResult | Exception]] = {}
        self.operations: dict[str, dict[str, Any]] = {}

    async def start_generation(self, credential: str, payload: dict[str, Any]) -> str:
        self.start_calls.append((credential, payload))
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if credential in self.auth_failures:
            raise AuthenticationError(f"Authentication failed: invalid token {credential}")
        if self.start_failures:
            raise self.start_failures.pop(0)
        handle = f"op-{len(self.operations) + 1}"
        self.operations[handle] = {"credential": credential, "payload": payload}
        return handle

    async def poll_status(self, credential: str, operation_handle: str) -> PollResult:
        self.poll_calls.append((credential, operation_handle))
        payload = self.operations.get(operation_handle, {}).get("payload", {})
        script = self.poll_scripts.get(operation_handle)
        if script is None:
            script = self.poll_scripts.get(payload.get("prompt", ""))
        if not script:
            return PollResult.succeeded(
                artifact_url=f"https://cdn.example.com/{operation_handle}.mp4"
            )

        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item

    def credentials_started(self) -> list[str]:
        return [credential for credential, _ in self.start_calls]


class FakeBackend:
    """Storage backend that records uploads and optionally fails."""

    def __init__(self, name: str, error: Exception | None = None, delay: float = 0):
        self.name = name
        self.error = error
        self.delay = delay
        self.uploads: list[str] = []

    async def upload(self, data: bytes, job_id, content_type: str) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.uploads.append(str(job_id))
        return f"https://{self.name}.example.com/{job_id}"


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def tokens() -> list[ProviderToken]:
    return make_tokens(3)


@pytest.fixture
def token_store(tokens) -> InMemoryTokenStore:
    return InMemoryTokenStore(tokens)


@pytest.fixture
def job_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def memory_cache() -> MemoryArtifactCache:
    return MemoryArtifactCache(max_total_bytes=1024, max_item_bytes=512, ttl_seconds=60)


@pytest_asyncio.fixture
async def scheduler(settings, job_store, token_store, provider, memory_cache) -> Scheduler:
    """Wired scheduler with in-memory stores; cancels leftover tasks on teardown."""
    built = build_scheduler(
        settings,
        job_store=job_store,
        token_store=token_store,
        provider=provider,
        memory_cache=memory_cache,
    )
    yield built
    await built.service.shutdown()


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container.

    Skips the dependent tests when Docker is not available.
    """
    if shutil.which("docker") is None and not os.environ.get("DOCKER_HOST"):
        pytest.skip("Docker is required for PostgreSQL tests")

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_genpool",
    ) as container:
        yield container


@pytest_asyncio.fixture(scope="function")
async def uow_factory(postgres_container):
    """Provide function-scoped UnitOfWork factory over a freshly truncated schema."""
    from genpool.core.database import create_schema, setup_db_session
    from genpool.uow import create_uow_factory

    db_url = postgres_container.get_connection_url(driver="psycopg")
    session_factory = setup_db_session(db_url, pool_size=5)
    await create_schema(session_factory)

    yield create_uow_factory(session_factory)

    async with session_factory() as session:
        await session.execute(text("DELETE FROM generation_jobs"))
        await session.execute(text("DELETE FROM provider_tokens"))
        await session.execute(text("DELETE FROM rotation_cursor"))
        await session.commit()

    engine = session_factory.kw["bind"]
    await engine.dispose()
