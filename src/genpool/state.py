"""In-process scheduler state.

One SchedulerState instance is injected into every component that needs shared
mutable state, so isolated schedulers can coexist (e.g. one per test).
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID


@dataclass(frozen=True)
class QueuedJob:
    """A job waiting in a tenant queue for submission."""

    job_id: UUID
    tenant_id: str
    payload: dict[str, Any]
    sequence_number: int = 0


@dataclass
class TenantQueueState:
    """Queue and processing flags of one tenant.

    loop_epoch identifies the processing loop that currently owns the tenant;
    stop/reset bump it so a superseded loop exits and never clears the flags of
    its successor. wake is set to interrupt the owning loop's inter-batch sleep.
    """

    tenant_id: str
    queue: deque[QueuedJob] = field(default_factory=deque)
    is_processing: bool = False
    should_stop: bool = False
    processing_started_at: datetime | None = None
    loop_epoch: int = 0
    wake: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class SchedulerState:
    """Shared mutable state: tenant queues and windowed token error timestamps."""

    tenant_queues: dict[str, TenantQueueState] = field(default_factory=dict)
    token_errors: dict[UUID, deque[float]] = field(default_factory=dict)

    def tenant(self, tenant_id: str) -> TenantQueueState:
        """Return the queue state of a tenant, creating it on first use."""
        queue_state = self.tenant_queues.get(tenant_id)
        if queue_state is None:
            queue_state = TenantQueueState(tenant_id=tenant_id)
            self.tenant_queues[tenant_id] = queue_state
        return queue_state
