"""Tests for plan-based batch policies."""

import pytest

from genpool.services.plan_policy import (
    PLAN_BATCH_POLICIES,
    BatchPolicy,
    StaticPlanPolicy,
    sanitize_policy,
)
from tests.conftest import make_settings


@pytest.mark.asyncio
async def test_plan_lookup_from_settings():
    provider = StaticPlanPolicy(make_settings(tenant_plans="acme:Scale, globex:empire"))

    assert await provider.get_batch_policy("acme") == PLAN_BATCH_POLICIES["scale"]
    assert await provider.get_batch_policy("globex") == PLAN_BATCH_POLICIES["empire"]


@pytest.mark.asyncio
async def test_unknown_tenant_and_unknown_plan_get_defaults():
    settings = make_settings(
        default_batch_size=4, default_batch_delay_seconds=2, default_max_prompts_per_batch=8
    )
    provider = StaticPlanPolicy(settings, tenant_plans={"acme": "platinum"})
    expected = BatchPolicy(batch_size=4, inter_batch_delay_seconds=2, max_prompts_per_batch=8)

    assert await provider.get_batch_policy("acme") == expected
    assert await provider.get_batch_policy("nobody") == expected


@pytest.mark.asyncio
async def test_overrides_are_sanitized():
    provider = StaticPlanPolicy(
        make_settings(default_batch_size=5),
        overrides={
            "acme": BatchPolicy(batch_size=0, inter_batch_delay_seconds=3, max_prompts_per_batch=50)
        },
    )

    policy = await provider.get_batch_policy("acme")

    assert policy.batch_size == 5
    assert policy.inter_batch_delay_seconds == 3
    assert policy.max_prompts_per_batch == 50


def test_sanitize_policy_replaces_invalid_values():
    fallback = BatchPolicy(batch_size=10, inter_batch_delay_seconds=20, max_prompts_per_batch=100)

    policy = sanitize_policy(
        BatchPolicy(batch_size=-1, inter_batch_delay_seconds=-5, max_prompts_per_batch=0), fallback
    )

    assert policy == fallback


def test_sanitize_policy_keeps_zero_delay():
    fallback = BatchPolicy(batch_size=10, inter_batch_delay_seconds=20, max_prompts_per_batch=100)

    policy = sanitize_policy(BatchPolicy(3, 0, 30), fallback)

    assert policy == BatchPolicy(3, 0, 30)
