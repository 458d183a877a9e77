"""Tests for TokenPoolRegistry: round-robin slices, LRU selection and token health."""

import asyncio

import pytest

from genpool.services.exceptions import InvalidRotationRequest, ResourceExhausted
from genpool.services.token_pool import TokenPoolRegistry
from genpool.state import SchedulerState
from genpool.stores.memory import InMemoryTokenStore
from tests.conftest import make_settings, make_tokens


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def make_registry(token_count: int = 3, clock=None, **settings_overrides) -> TokenPoolRegistry:
    store = InMemoryTokenStore(make_tokens(token_count))
    settings = make_settings(**settings_overrides)
    if clock is None:
        return TokenPoolRegistry(store, SchedulerState(), settings)
    return TokenPoolRegistry(store, SchedulerState(), settings, clock=clock)


@pytest.mark.asyncio
async def test_round_robin_assigns_cyclic_indices():
    registry = make_registry(3)

    first = await registry.assign_round_robin(5)
    second = await registry.assign_round_robin(2)

    assert [t.label for t in first] == ["token-0", "token-1", "token-2", "token-0", "token-1"]
    assert [t.label for t in second] == ["token-2", "token-0"]


@pytest.mark.asyncio
async def test_round_robin_batch_smaller_than_pool_uses_distinct_tokens():
    registry = make_registry(5)

    assigned = await registry.assign_round_robin(4)

    assert len({t.id for t in assigned}) == 4


@pytest.mark.asyncio
async def test_concurrent_slice_reservations_do_not_overlap():
    registry = make_registry(10)

    starts = await asyncio.gather(
        *(registry.reserve_round_robin_slice(2, 10) for _ in range(5))
    )

    assert sorted(starts) == [0, 2, 4, 6, 8]


@pytest.mark.asyncio
async def test_concurrent_batches_spread_evenly_over_pool():
    registry = make_registry(4)

    batches = await asyncio.gather(*(registry.assign_round_robin(2) for _ in range(6)))

    counts: dict[str, int] = {}
    for batch in batches:
        for token in batch:
            counts[token.label] = counts.get(token.label, 0) + 1
    assert counts == {"token-0": 3, "token-1": 3, "token-2": 3, "token-3": 3}


@pytest.mark.asyncio
@pytest.mark.parametrize("count,pool_size", [(0, 3), (-1, 3), (2, 0), (2, -4)])
async def test_reserve_slice_rejects_invalid_arguments(count, pool_size):
    registry = make_registry(3)

    with pytest.raises(InvalidRotationRequest):
        await registry.reserve_round_robin_slice(count, pool_size)


@pytest.mark.asyncio
async def test_invalid_rotation_request_is_value_error():
    registry = make_registry(3)

    with pytest.raises(ValueError):
        await registry.assign_round_robin(0)


@pytest.mark.asyncio
async def test_empty_pool_raises_resource_exhausted():
    registry = make_registry(0)

    with pytest.raises(ResourceExhausted, match="No active tokens available"):
        await registry.assign_round_robin(3)
    with pytest.raises(ResourceExhausted, match="No active tokens available"):
        await registry.select_next()


@pytest.mark.asyncio
async def test_select_next_prefers_least_recently_used():
    registry = make_registry(3)
    tokens = await registry.list_active()

    await registry.record_usage(tokens[0].id)
    await registry.record_usage(tokens[1].id)

    selected = await registry.select_next()
    assert selected.id == tokens[2].id

    await registry.record_usage(tokens[2].id)
    selected = await registry.select_next()
    assert selected.id == tokens[0].id


@pytest.mark.asyncio
async def test_select_next_honours_exclusions():
    registry = make_registry(3)
    tokens = await registry.list_active()

    selected = await registry.select_next(excluding={tokens[0].id, tokens[1].id})

    assert selected.id == tokens[2].id


@pytest.mark.asyncio
async def test_select_next_falls_back_when_everything_is_excluded():
    registry = make_registry(2)
    tokens = await registry.list_active()

    selected = await registry.select_next(excluding={t.id for t in tokens})

    assert selected.id in {t.id for t in tokens}


@pytest.mark.asyncio
async def test_disabled_token_is_never_selected_or_rotated():
    registry = make_registry(3)
    tokens = await registry.list_active()

    await registry.disable(tokens[1].id, reason="auth")

    assert not await registry.is_active(tokens[1].id)
    assigned = await registry.assign_round_robin(4)
    assert tokens[1].id not in {t.id for t in assigned}
    for _ in range(4):
        selected = await registry.select_next()
        assert selected.id != tokens[1].id
        await registry.record_usage(selected.id)


@pytest.mark.asyncio
async def test_enable_restores_token_and_clears_errors():
    registry = make_registry(2)
    tokens = await registry.list_active()
    registry.record_error(tokens[0].id)
    await registry.disable(tokens[0].id)

    await registry.enable(tokens[0].id)

    assert await registry.is_active(tokens[0].id)
    assert registry.recent_error_count(tokens[0].id) == 0


@pytest.mark.asyncio
async def test_errors_expire_after_window():
    clock = FakeClock()
    registry = make_registry(1, clock=clock, token_error_window_seconds=60)
    token = (await registry.list_active())[0]

    assert registry.record_error(token.id) == 1
    clock.now += 30
    assert registry.record_error(token.id) == 2
    clock.now += 45

    assert registry.recent_error_count(token.id) == 1


@pytest.mark.asyncio
async def test_recording_errors_never_disables_token():
    registry = make_registry(1)
    token = (await registry.list_active())[0]

    for _ in range(50):
        registry.record_error(token.id)

    assert await registry.is_active(token.id)


@pytest.mark.asyncio
async def test_cooldown_tokens_are_skipped_when_others_are_healthy():
    registry = make_registry(3, token_cooldown_error_threshold=2)
    tokens = await registry.list_active()
    registry.record_error(tokens[0].id)
    registry.record_error(tokens[0].id)

    assert registry.is_in_cooldown(tokens[0].id)
    assert (await registry.select_next()).id != tokens[0].id
    assigned = await registry.assign_round_robin(4)
    assert tokens[0].id not in {t.id for t in assigned}


@pytest.mark.asyncio
async def test_cooldown_is_ignored_when_every_token_is_cooling_down():
    registry = make_registry(2, token_cooldown_error_threshold=1)
    tokens = await registry.list_active()
    for token in tokens:
        registry.record_error(token.id)

    assigned = await registry.assign_round_robin(2)

    assert {t.id for t in assigned} == {t.id for t in tokens}


@pytest.mark.asyncio
async def test_cooldown_disabled_by_default():
    registry = make_registry(1)
    token = (await registry.list_active())[0]
    for _ in range(10):
        registry.record_error(token.id)

    assert not registry.is_in_cooldown(token.id)
