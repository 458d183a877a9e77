"""Tests for the Replicate provider adapter with a fake SDK client."""

from types import SimpleNamespace

import httpx
import pytest
from replicate.exceptions import ReplicateError

from genpool.services.exceptions import (
    AuthenticationError,
    ProviderError,
    ProviderTransientError,
    TransientNetworkError,
)
from genpool.services.providers.replicate_client import (
    ReplicateProviderClient,
    extract_output_url,
    map_replicate_error,
)


class FakePredictions:
    def __init__(self, prediction=None, error: Exception | None = None):
        self.prediction = prediction
        self.error = error
        self.create_calls: list[dict] = []
        self.get_calls: list[str] = []

    def create(self, **kwargs):
        self.create_calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.prediction

    def get(self, prediction_id: str):
        self.get_calls.append(prediction_id)
        if self.error is not None:
            raise self.error
        return self.prediction


def make_client(prediction=None, error: Exception | None = None):
    predictions = FakePredictions(prediction, error)
    fake = SimpleNamespace(
        predictions=predictions,
        models=SimpleNamespace(predictions=predictions),
    )
    credentials: list[str] = []

    def factory(token: str):
        credentials.append(token)
        return fake

    return factory, predictions, credentials


@pytest.mark.asyncio
async def test_start_with_model_name_uses_model_predictions():
    factory, predictions, credentials = make_client(SimpleNamespace(id="pred-1"))
    client = ReplicateProviderClient("owner/video-model", client_factory=factory)

    handle = await client.start_generation("secret-0", {"prompt": "a cat"})

    assert handle == "pred-1"
    assert credentials == ["secret-0"]
    assert predictions.create_calls == [
        {"model": "owner/video-model", "input": {"prompt": "a cat"}}
    ]


@pytest.mark.asyncio
async def test_start_with_version_id_uses_version():
    factory, predictions, _ = make_client(SimpleNamespace(id="pred-2"))
    client = ReplicateProviderClient("owner/video-model:abc123", client_factory=factory)

    await client.start_generation("secret-0", {"prompt": "a cat"})

    assert predictions.create_calls == [{"version": "abc123", "input": {"prompt": "a cat"}}]


@pytest.mark.asyncio
async def test_start_without_id_is_provider_error():
    factory, _, _ = make_client(SimpleNamespace(id=None))
    client = ReplicateProviderClient("owner/model", client_factory=factory)

    with pytest.raises(ProviderError, match="missing operation handle"):
        await client.start_generation("secret-0", {})


@pytest.mark.asyncio
async def test_start_auth_rejection_raises_authentication_error():
    factory, _, _ = make_client(error=ReplicateError(status=401, detail="Unauthenticated"))
    client = ReplicateProviderClient("owner/model", client_factory=factory)

    with pytest.raises(AuthenticationError):
        await client.start_generation("secret-0", {})


@pytest.mark.asyncio
async def test_start_network_failure_is_transient():
    factory, _, _ = make_client(error=httpx.ConnectError("connection reset"))
    client = ReplicateProviderClient("owner/model", client_factory=factory)

    with pytest.raises(TransientNetworkError):
        await client.start_generation("secret-0", {})


@pytest.mark.parametrize(
    "status,error_type",
    [
        (401, AuthenticationError),
        (403, AuthenticationError),
        (429, ProviderTransientError),
        (503, ProviderTransientError),
        (422, ProviderError),
    ],
)
def test_map_replicate_error(status, error_type):
    error = map_replicate_error(ReplicateError(status=status, detail="request failed"))

    assert type(error) is error_type


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["starting", "processing"])
async def test_poll_running(status):
    factory, predictions, _ = make_client(SimpleNamespace(status=status))
    client = ReplicateProviderClient("owner/model", client_factory=factory)

    result = await client.poll_status("secret-0", "pred-1")

    assert not result.terminal
    assert predictions.get_calls == ["pred-1"]


@pytest.mark.asyncio
async def test_poll_succeeded_extracts_url():
    prediction = SimpleNamespace(status="succeeded", output=["https://replicate.delivery/a.mp4"])
    factory, _, _ = make_client(prediction)
    client = ReplicateProviderClient("owner/model", client_factory=factory)

    result = await client.poll_status("secret-0", "pred-1")

    assert result.terminal and result.success
    assert result.artifact_url == "https://replicate.delivery/a.mp4"


@pytest.mark.asyncio
async def test_poll_failed_carries_provider_error():
    prediction = SimpleNamespace(status="failed", error="E004: high traffic, try later")
    factory, _, _ = make_client(prediction)
    client = ReplicateProviderClient("owner/model", client_factory=factory)

    result = await client.poll_status("secret-0", "pred-1")

    assert result.terminal and not result.success
    assert result.error_category == "failed"
    assert result.error_message == "E004: high traffic, try later"


@pytest.mark.asyncio
async def test_poll_server_error_is_transient():
    factory, _, _ = make_client(error=ReplicateError(status=502, detail="bad gateway"))
    client = ReplicateProviderClient("owner/model", client_factory=factory)

    with pytest.raises(TransientNetworkError):
        await client.poll_status("secret-0", "pred-1")


@pytest.mark.parametrize(
    "output,expected",
    [
        ("https://x/a.mp4", "https://x/a.mp4"),
        (["https://x/a.mp4", "https://x/b.mp4"], "https://x/a.mp4"),
        (SimpleNamespace(url="https://x/c.mp4"), "https://x/c.mp4"),
        ([], None),
        (None, None),
    ],
)
def test_extract_output_url(output, expected):
    assert extract_output_url(output) == expected
