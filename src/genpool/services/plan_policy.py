"""Per-tenant batch policy derived from the tenant's plan."""

from dataclasses import dataclass
from typing import Protocol

import structlog

from genpool.core.config import Settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BatchPolicy:
    """How a tenant's queue is cut into batches."""

    batch_size: int
    inter_batch_delay_seconds: float
    max_prompts_per_batch: int


PLAN_BATCH_POLICIES: dict[str, BatchPolicy] = {
    "scale": BatchPolicy(batch_size=7, inter_batch_delay_seconds=30, max_prompts_per_batch=50),
    "empire": BatchPolicy(batch_size=100, inter_batch_delay_seconds=15, max_prompts_per_batch=100),
    "enterprise": BatchPolicy(
        batch_size=100, inter_batch_delay_seconds=10, max_prompts_per_batch=500
    ),
}


class PlanPolicyProvider(Protocol):
    async def get_batch_policy(self, tenant_id: str) -> BatchPolicy: ...


def sanitize_policy(policy: BatchPolicy, fallback: BatchPolicy) -> BatchPolicy:
    """Replace non-positive sizes and negative delays with fallback values."""
    return BatchPolicy(
        batch_size=policy.batch_size if policy.batch_size > 0 else fallback.batch_size,
        inter_batch_delay_seconds=(
            policy.inter_batch_delay_seconds
            if policy.inter_batch_delay_seconds >= 0
            else fallback.inter_batch_delay_seconds
        ),
        max_prompts_per_batch=(
            policy.max_prompts_per_batch
            if policy.max_prompts_per_batch > 0
            else fallback.max_prompts_per_batch
        ),
    )


class StaticPlanPolicy:
    """Plan table lookup with per-tenant overrides.

    Tenants with no plan (or an unknown plan) get the defaults from settings.
    """

    def __init__(
        self,
        settings: Settings,
        tenant_plans: dict[str, str] | None = None,
        overrides: dict[str, BatchPolicy] | None = None,
    ):
        """Initialize policy provider.

        Args:
            settings: Source of default batch size, delay and prompt limit
            tenant_plans: tenant_id -> plan name (defaults to TENANT_PLANS)
            overrides: tenant_id -> custom policy (enterprise custom limits)
        """
        self.default = BatchPolicy(
            batch_size=settings.default_batch_size,
            inter_batch_delay_seconds=settings.default_batch_delay_seconds,
            max_prompts_per_batch=settings.default_max_prompts_per_batch,
        )
        self.tenant_plans = tenant_plans if tenant_plans is not None else settings.tenant_plan_map
        self.overrides = overrides or {}

    async def get_batch_policy(self, tenant_id: str) -> BatchPolicy:
        if tenant_id in self.overrides:
            return sanitize_policy(self.overrides[tenant_id], self.default)

        plan = self.tenant_plans.get(tenant_id)
        if plan is None:
            return self.default

        policy = PLAN_BATCH_POLICIES.get(plan)
        if policy is None:
            logger.warning("plan_policy.unknown_plan", tenant_id=tenant_id, plan=plan)
            return self.default
        return policy
