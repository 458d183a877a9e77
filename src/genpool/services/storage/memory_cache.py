"""Size-bounded in-memory artifact cache, the last step of the fallback chain.

Entries are keyed by job id, evicted least-recently-used when the total size
limit is reached, and expire after a TTL. References use the memory:// scheme.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

import structlog

from genpool.services.exceptions import StorageBackendError

logger = structlog.get_logger(__name__)

MEMORY_SCHEME = "memory://"


@dataclass
class CachedArtifact:
    data: bytes
    content_type: str
    stored_at: float

    @property
    def size(self) -> int:
        return len(self.data)


def memory_reference(job_id: str) -> str:
    return f"{MEMORY_SCHEME}{job_id}"


class MemoryArtifactCache:
    """LRU cache with per-item and total byte limits plus TTL expiry."""

    def __init__(
        self,
        max_total_bytes: int,
        max_item_bytes: int,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_total_bytes = max_total_bytes
        self.max_item_bytes = max_item_bytes
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: OrderedDict[str, CachedArtifact] = OrderedDict()
        self._total_bytes = 0

    @classmethod
    def from_megabytes(
        cls, max_total_mb: int, max_item_mb: int, ttl_seconds: float
    ) -> "MemoryArtifactCache":
        return cls(
            max_total_bytes=max_total_mb * 1024 * 1024,
            max_item_bytes=max_item_mb * 1024 * 1024,
            ttl_seconds=ttl_seconds,
        )

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def put(self, job_id: str, data: bytes, content_type: str) -> str:
        """Store an artifact and return its memory:// reference.

        Raises:
            StorageBackendError: If the item exceeds the per-item limit or cannot
                fit even after evicting every other entry
        """
        size = len(data)
        if size > self.max_item_bytes:
            raise StorageBackendError(
                f"Memory: item too large ({size} bytes > {self.max_item_bytes} bytes)"
            )
        if size > self.max_total_bytes:
            raise StorageBackendError(f"Memory: cache full ({self.max_total_bytes} bytes)")

        self.purge_expired()
        self._remove(job_id)

        while self._entries and self._total_bytes + size > self.max_total_bytes:
            evicted_id, evicted = self._entries.popitem(last=False)
            self._total_bytes -= evicted.size
            logger.info("memory_cache.evicted", job_id=evicted_id, size_bytes=evicted.size)

        self._entries[job_id] = CachedArtifact(
            data=data, content_type=content_type, stored_at=self.clock()
        )
        self._total_bytes += size
        return memory_reference(job_id)

    def get(self, job_id: str) -> CachedArtifact | None:
        """Return a cached artifact and mark it recently used (None if missing or expired)."""
        entry = self._entries.get(job_id)
        if entry is None:
            return None
        if self._is_expired(entry):
            self._remove(job_id)
            return None
        self._entries.move_to_end(job_id)
        return entry

    def delete(self, job_id: str) -> bool:
        return self._remove(job_id)

    def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""
        expired = [job_id for job_id, entry in self._entries.items() if self._is_expired(entry)]
        for job_id in expired:
            self._remove(job_id)
        if expired:
            logger.info("memory_cache.purged", expired=len(expired))
        return len(expired)

    def stats(self) -> dict[str, int]:
        return {
            "entries": len(self._entries),
            "total_bytes": self._total_bytes,
            "max_total_bytes": self.max_total_bytes,
        }

    def _is_expired(self, entry: CachedArtifact) -> bool:
        return self.clock() - entry.stored_at > self.ttl_seconds

    def _remove(self, job_id: str) -> bool:
        entry = self._entries.pop(job_id, None)
        if entry is None:
            return False
        self._total_bytes -= entry.size
        return True
