"""Pinata IPFS storage backend."""

import json
from uuid import UUID

import httpx

from genpool.services.exceptions import (
    StorageAuthError,
    StorageNetworkError,
    StorageRateLimitError,
    StorageValidationError,
)
from genpool.services.storage.base import file_name_for


class PinataBackend:
    """IPFS upload backend using the Pinata pinning service."""

    name = "pinata"

    def __init__(
        self,
        jwt_token: str,
        gateway_domain: str = "gateway.pinata.cloud",
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Pinata backend.

        Args:
            jwt_token: Pinata API JWT token (from PINATA_JWT env var)
            gateway_domain: Gateway domain for URL generation (default: public gateway)
            timeout_seconds: Upload timeout
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.jwt_token = jwt_token
        self.gateway_domain = gateway_domain
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.base_url = "https://api.pinata.cloud"
        self.headers = {"Authorization": f"Bearer {jwt_token}"}

    async def upload(self, data: bytes, job_id: UUID, content_type: str) -> str:
        """Upload artifact bytes to IPFS via Pinata.

        Args:
            data: Raw artifact bytes
            job_id: Job ID for semantic filename (e.g., <job_id>.mp4)
            content_type: MIME type of the artifact

        Returns:
            Gateway URL of the pinned file (https://<gateway>/ipfs/<CID>)

        Raises:
            StorageRateLimitError: Rate limit (429)
            StorageNetworkError: Network timeout, service unavailable (500/502/503)
            StorageAuthError: Invalid API key (401), forbidden (403)
            StorageValidationError: Bad request (400) or malformed response
        """
        filename = file_name_for(job_id, content_type)
        pinata_metadata = {"name": filename, "keyvalues": {"job_id": str(job_id)}}

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self.transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}/pinning/pinFileToIPFS",
                    headers=self.headers,
                    files={"file": (filename, data, content_type)},
                    data={
                        "pinataOptions": '{"cidVersion": 1}',
                        "pinataMetadata": json.dumps(pinata_metadata),
                    },
                )
        except httpx.TimeoutException as e:
            raise StorageNetworkError(
                f"Request timeout after {self.timeout_seconds:g}s: {str(e)}"
            ) from e
        except httpx.HTTPError as e:
            raise StorageNetworkError(f"Network error: {str(e)}") from e

        # Error classification
        if response.status_code == 429:
            raise StorageRateLimitError(f"Rate limit exceeded: {response.text}")
        elif response.status_code in (500, 502, 503):
            raise StorageNetworkError(
                f"Service unavailable ({response.status_code}): {response.text}"
            )
        elif response.status_code == 401:
            raise StorageAuthError(
                "Unauthorized: Invalid API key. Check PINATA_JWT configuration. "
                "Verify JWT token is active at https://app.pinata.cloud/developers/api-keys"
            )
        elif response.status_code == 403:
            raise StorageAuthError(
                "Forbidden: Access denied. "
                "Check PINATA_JWT permissions (requires pinFileToIPFS access)."
            )
        elif response.status_code >= 400:
            raise StorageValidationError(
                f"Bad request ({response.status_code}): {response.text}"
            )

        try:
            cid = response.json()["IpfsHash"]
        except (ValueError, KeyError) as e:
            raise StorageValidationError(f"Malformed Pinata response: {response.text}") from e

        return self.get_gateway_url(cid)

    def get_gateway_url(self, cid: str) -> str:
        """Convert CID to gateway URL for browser access.

        Args:
            cid: IPFS CID

        Returns:
            Gateway URL (e.g., "https://gateway.pinata.cloud/ipfs/<CID>")
        """
        return f"https://{self.gateway_domain}/ipfs/{cid}"
