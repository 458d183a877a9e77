"""Tests for the Pinata storage backend using httpx.MockTransport."""

from uuid import uuid4

import httpx
import pytest

from genpool.services.exceptions import (
    StorageAuthError,
    StorageNetworkError,
    StorageRateLimitError,
    StorageValidationError,
    TransientError,
)
from genpool.services.storage.pinata import PinataBackend


def make_backend(handler) -> PinataBackend:
    return PinataBackend(
        jwt_token="test-jwt",
        gateway_domain="example.mypinata.cloud",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_upload_returns_gateway_url():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"IpfsHash": "bafy123"})

    job_id = uuid4()
    url = await make_backend(handler).upload(b"video", job_id, "video/mp4")

    assert url == "https://example.mypinata.cloud/ipfs/bafy123"
    assert requests[0].url.path == "/pinning/pinFileToIPFS"
    assert requests[0].headers["Authorization"] == "Bearer test-jwt"
    assert f"{job_id}.mp4".encode() in requests[0].content


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code,error_type",
    [
        (429, StorageRateLimitError),
        (500, StorageNetworkError),
        (502, StorageNetworkError),
        (503, StorageNetworkError),
        (401, StorageAuthError),
        (403, StorageAuthError),
        (400, StorageValidationError),
        (413, StorageValidationError),
    ],
)
async def test_upload_error_classification(status_code, error_type):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, text="nope")

    with pytest.raises(error_type):
        await make_backend(handler).upload(b"video", uuid4(), "video/mp4")


@pytest.mark.asyncio
async def test_transient_errors_are_marked_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="slow down")

    with pytest.raises(StorageRateLimitError) as exc_info:
        await make_backend(handler).upload(b"video", uuid4(), "video/mp4")

    assert isinstance(exc_info.value, TransientError)


@pytest.mark.asyncio
async def test_malformed_response_is_validation_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"unexpected": True})

    with pytest.raises(StorageValidationError, match="Malformed"):
        await make_backend(handler).upload(b"video", uuid4(), "video/mp4")


@pytest.mark.asyncio
async def test_network_failure_is_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(StorageNetworkError, match="Network error"):
        await make_backend(handler).upload(b"video", uuid4(), "video/mp4")


@pytest.mark.asyncio
async def test_timeout_is_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(StorageNetworkError, match="Request timeout"):
        await make_backend(handler).upload(b"video", uuid4(), "video/mp4")
