"""Token pool registry: LRU selection, round-robin slices and token health.

The registry owns every cross-tenant decision about provider credentials.
Activation state, usage counters and the rotation cursor are persisted through
the TokenStore; rolling error timestamps are windowed in SchedulerState.
"""

import time
from collections import deque
from datetime import datetime
from typing import Callable, Collection
from uuid import UUID

import structlog

from genpool.core.config import Settings
from genpool.models.token import ProviderToken
from genpool.services.exceptions import InvalidRotationRequest, ResourceExhausted
from genpool.state import SchedulerState
from genpool.stores.base import TokenStore

logger = structlog.get_logger(__name__)


def _lru_key(token: ProviderToken) -> tuple[datetime, datetime]:
    # Never-used tokens sort first
    return (token.last_used_at or datetime.min, token.created_at)


class TokenPoolRegistry:
    """Shared pool of provider tokens.

    Recording an error never disables a token: disabling is decided by the
    submission engine (authentication errors) or the maintenance sweep.
    """

    def __init__(
        self,
        store: TokenStore,
        state: SchedulerState,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize registry.

        Args:
            store: Persistence for tokens and the rotation cursor
            state: Scheduler state holding windowed error timestamps
            settings: Error window and cooldown threshold
            clock: Monotonic clock (injectable for tests)
        """
        self.store = store
        self.state = state
        self.error_window_seconds = settings.token_error_window_seconds
        self.cooldown_threshold = settings.token_cooldown_error_threshold
        self.clock = clock

    async def list_tokens(self) -> list[ProviderToken]:
        return await self.store.list_tokens()

    async def list_active(self) -> list[ProviderToken]:
        """Return active tokens in stable rotation order."""
        return await self.store.list_active()

    async def is_active(self, token_id: UUID) -> bool:
        token = await self.store.get_token(token_id)
        return token is not None and token.is_active

    async def select_next(self, excluding: Collection[UUID] = ()) -> ProviderToken:
        """Return the least-recently-used active token not in excluding.

        Preference order: healthy candidates, candidates in cooldown, then any
        active token (best effort when the exclusion set covers the whole pool).

        Args:
            excluding: Token IDs the caller does not want

        Returns:
            Selected token

        Raises:
            ResourceExhausted: If no token is active
        """
        active = await self.store.list_active()
        if not active:
            raise ResourceExhausted("No active tokens available")

        candidates = [token for token in active if token.id not in excluding]
        healthy = [token for token in candidates if not self.is_in_cooldown(token.id)]

        if healthy:
            pool = healthy
        elif candidates:
            pool = candidates
            logger.warning("token_pool.selection.cooldown_fallback", candidates=len(candidates))
        else:
            pool = active
            logger.warning(
                "token_pool.selection.best_effort",
                active=len(active),
                excluded=len(excluding),
            )

        return min(pool, key=_lru_key)

    async def reserve_round_robin_slice(self, count: int, pool_size: int) -> int:
        """Atomically advance the rotation cursor by count and return the start offset.

        Indices (start + i) % pool_size for i in [0, count) belong to the caller.

        Args:
            count: Number of jobs in the batch
            pool_size: Number of tokens being rotated over

        Returns:
            Pre-advance offset in [0, pool_size)

        Raises:
            InvalidRotationRequest: If count or pool_size is not positive
        """
        if pool_size <= 0:
            raise InvalidRotationRequest(f"pool_size must be positive, got {pool_size}")
        if count <= 0:
            raise InvalidRotationRequest(f"count must be positive, got {count}")

        start = await self.store.advance_cursor(count, pool_size)
        logger.debug("token_pool.slice_reserved", start=start, count=count, pool_size=pool_size)
        return start

    async def assign_round_robin(self, count: int) -> list[ProviderToken]:
        """Assign one token per job of a batch by cyclic index.

        Tokens in cooldown are left out of the rotation unless every active
        token is in cooldown.

        Args:
            count: Number of jobs in the batch

        Returns:
            Tokens in job order

        Raises:
            ResourceExhausted: If no token is active
            InvalidRotationRequest: If count is not positive
        """
        active = await self.store.list_active()
        if not active:
            raise ResourceExhausted("No active tokens available")

        rotation = [token for token in active if not self.is_in_cooldown(token.id)] or active
        start = await self.reserve_round_robin_slice(count, len(rotation))
        return [rotation[(start + i) % len(rotation)] for i in range(count)]

    async def record_usage(self, token_id: UUID) -> None:
        await self.store.record_usage(token_id)

    def record_error(self, token_id: UUID) -> int:
        """Record an error timestamp for a token.

        Args:
            token_id: Token that produced the error

        Returns:
            Number of errors inside the rolling window, including this one
        """
        timestamps = self.state.token_errors.setdefault(token_id, deque())
        timestamps.append(self.clock())
        count = self._prune(timestamps)
        logger.info("token.error_recorded", token_id=str(token_id), recent_errors=count)
        return count

    def recent_error_count(self, token_id: UUID) -> int:
        timestamps = self.state.token_errors.get(token_id)
        if not timestamps:
            return 0
        return self._prune(timestamps)

    def is_in_cooldown(self, token_id: UUID) -> bool:
        if self.cooldown_threshold <= 0:
            return False
        return self.recent_error_count(token_id) >= self.cooldown_threshold

    async def disable(self, token_id: UUID, reason: str = "") -> None:
        """Deactivate a token so selection and rotation never return it."""
        await self.store.set_active(token_id, False)
        logger.warning("token.disabled", token_id=str(token_id), reason=reason)

    async def enable(self, token_id: UUID) -> None:
        await self.store.set_active(token_id, True)
        self.state.token_errors.pop(token_id, None)
        logger.info("token.enabled", token_id=str(token_id))

    def _prune(self, timestamps: deque[float]) -> int:
        cutoff = self.clock() - self.error_window_seconds
        while timestamps and timestamps[0] < cutoff:
            timestamps.popleft()
        return len(timestamps)
