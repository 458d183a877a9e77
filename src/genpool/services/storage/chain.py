"""Storage fallback chain.

persist() lands a completed job's artifact in the first backend that accepts
it and degrades to the in-memory cache when every persistent backend fails.

Order of checks:
1. Durable URL already on the job record → return it, no upload
2. Provider-hosted URL without bytes → use as-is, never re-upload
3. Configured backends in order (e.g. pinata, s3, data_url)
4. In-memory cache (memory://<job_id>)

Concurrent calls for one job are serialized, and a durable upload is written to
the job record before the lock is released, so a racing second caller
short-circuits at step 1.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Sequence
from uuid import UUID

import structlog

from genpool.models.job import is_durable_reference
from genpool.services.exceptions import StorageBackendError
from genpool.services.storage.base import Artifact, StorageBackend, StoredArtifact
from genpool.services.storage.memory_cache import MemoryArtifactCache
from genpool.stores.base import JobStore

logger = structlog.get_logger(__name__)


class StorageFallbackChain:
    """Ordered storage backends with a final in-memory fallback."""

    def __init__(
        self,
        job_store: JobStore,
        backends: Sequence[StorageBackend],
        memory_cache: MemoryArtifactCache,
        upload_timeout_seconds: float = 120.0,
    ):
        """Initialize chain.

        Args:
            job_store: Store consulted for existing durable URLs and updated after uploads
            backends: Persistent backends in priority order (may be empty)
            memory_cache: Last-resort cache
            upload_timeout_seconds: Per-backend upload timeout
        """
        self.job_store = job_store
        self.backends = list(backends)
        self.memory_cache = memory_cache
        self.upload_timeout_seconds = upload_timeout_seconds
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._lock_users: dict[UUID, int] = {}

    @property
    def backend_names(self) -> list[str]:
        return [backend.name for backend in self.backends]

    async def persist(self, artifact: Artifact, job_id: UUID) -> StoredArtifact:
        """Persist a job's artifact through the fallback chain.

        Args:
            artifact: Provider URL and/or raw bytes
            job_id: Job the artifact belongs to

        Returns:
            StoredArtifact with the resolved reference

        Raises:
            StorageBackendError: If every backend and the memory cache failed
        """
        async with self._job_lock(job_id):
            return await self._persist_locked(artifact, job_id)

    async def _persist_locked(self, artifact: Artifact, job_id: UUID) -> StoredArtifact:
        existing = await self.job_store.get_job(job_id)
        if existing is not None and existing.has_durable_result:
            logger.info("storage.persist.existing_url", job_id=str(job_id))
            return StoredArtifact(
                url=existing.result_url,  # type: ignore[arg-type]
                stored_in_memory=False,
                backend="existing",
            )

        if artifact.data is None:
            if not artifact.url:
                raise StorageBackendError(f"Job {job_id} produced neither artifact bytes nor URL")
            if is_durable_reference(artifact.url):
                await self.job_store.update_job_fields(job_id, result_url=artifact.url)
            logger.info("storage.persist.provider_url", job_id=str(job_id))
            return StoredArtifact(url=artifact.url, stored_in_memory=False, backend="provider")

        errors: list[str] = []
        for backend in self.backends:
            try:
                url = await asyncio.wait_for(
                    backend.upload(artifact.data, job_id, artifact.content_type),
                    timeout=self.upload_timeout_seconds,
                )
            except TimeoutError:
                errors.append(f"{backend.name}: timed out after {self.upload_timeout_seconds:g}s")
                logger.warning(
                    "storage.backend.failed",
                    job_id=str(job_id),
                    backend=backend.name,
                    error_type="TimeoutError",
                )
                continue
            except Exception as e:
                errors.append(f"{backend.name}: {e}")
                logger.warning(
                    "storage.backend.failed",
                    job_id=str(job_id),
                    backend=backend.name,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
                continue

            if is_durable_reference(url):
                await self.job_store.update_job_fields(job_id, result_url=url)
            logger.info(
                "storage.persist.uploaded",
                job_id=str(job_id),
                backend=backend.name,
                size_bytes=len(artifact.data),
            )
            return StoredArtifact(url=url, stored_in_memory=False, backend=backend.name)

        try:
            reference = self.memory_cache.put(str(job_id), artifact.data, artifact.content_type)
        except StorageBackendError as e:
            errors.append(str(e))
            logger.error("storage.persist.failed", job_id=str(job_id), errors=errors)
            raise StorageBackendError(
                f"All storage methods failed for job {job_id}: " + "; ".join(errors)
            ) from e

        logger.warning(
            "storage.persist.memory_fallback",
            job_id=str(job_id),
            failed_backends=errors,
            size_bytes=len(artifact.data),
        )
        return StoredArtifact(url=reference, stored_in_memory=True, backend="memory")

    @asynccontextmanager
    async def _job_lock(self, job_id: UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(job_id, asyncio.Lock())
        self._lock_users[job_id] = self._lock_users.get(job_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[job_id] -= 1
            if self._lock_users[job_id] == 0:
                del self._lock_users[job_id]
                del self._locks[job_id]
