"""Amazon S3 storage backend."""

import asyncio
from typing import Any
from uuid import UUID

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
)

from genpool.services.exceptions import (
    StorageAuthError,
    StorageBackendError,
    StorageNetworkError,
    StorageRateLimitError,
)
from genpool.services.storage.base import file_name_for

AUTH_ERROR_CODES = ("AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch", "ExpiredToken")
THROTTLE_ERROR_CODES = ("SlowDown", "Throttling", "ThrottlingException", "RequestLimitExceeded")


class S3Backend:
    """Uploads artifacts with put_object; the boto3 client runs in a worker thread."""

    name = "s3"

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        prefix: str = "generations",
        public_base_url: str = "",
        client: Any | None = None,
    ):
        """Initialize S3 backend.

        Args:
            bucket: Target bucket
            region: AWS region of the bucket
            prefix: Key prefix for artifacts
            public_base_url: Base URL for returned links (default: virtual-hosted S3 URL)
            client: Optional pre-built S3 client (tests inject a stub)
        """
        self.bucket = bucket
        self.region = region
        self.prefix = prefix.strip("/")
        self.public_base_url = public_base_url.rstrip("/")
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("s3", region_name=self.region)
        return self._client

    def object_key(self, job_id: UUID, content_type: str) -> str:
        name = file_name_for(job_id, content_type)
        return f"{self.prefix}/{name}" if self.prefix else name

    def object_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    async def upload(self, data: bytes, job_id: UUID, content_type: str) -> str:
        """Upload artifact bytes to S3.

        Returns:
            Public URL of the stored object

        Raises:
            StorageAuthError: Credentials rejected
            StorageRateLimitError: Request throttled
            StorageNetworkError: Endpoint unreachable or connect timeout
            StorageBackendError: Any other S3 error
        """
        key = self.object_key(job_id, content_type)
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in AUTH_ERROR_CODES:
                raise StorageAuthError(f"S3 access denied ({code}): {e}") from e
            if code in THROTTLE_ERROR_CODES:
                raise StorageRateLimitError(f"S3 throttled ({code}): {e}") from e
            raise StorageBackendError(f"S3 put_object failed ({code}): {e}") from e
        except (EndpointConnectionError, ConnectTimeoutError) as e:
            raise StorageNetworkError(f"S3 unreachable: {e}") from e
        except BotoCoreError as e:
            raise StorageBackendError(f"S3 client error: {e}") from e

        return self.object_url(key)
