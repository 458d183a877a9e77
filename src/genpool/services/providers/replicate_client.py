"""Replicate predictions API adapter with error classification."""

import asyncio
from typing import Any, Callable

import httpx
import replicate
import structlog
from replicate.exceptions import ReplicateError as ReplicateAPIError

from genpool.services.exceptions import (
    AuthenticationError,
    ProviderError,
    ProviderTransientError,
    TransientNetworkError,
)
from genpool.services.providers.base import PollResult
from genpool.services.providers.classification import is_auth_error_message

logger = structlog.get_logger(__name__)

RUNNING_STATUSES = ("starting", "processing")
FAILED_STATUSES = ("failed", "canceled", "aborted")


def map_replicate_error(exception: ReplicateAPIError) -> ProviderError:
    """Map a Replicate SDK error onto the scheduler error taxonomy.

    Classification rules:
        - 401/403 or authentication markers → AuthenticationError
        - 429 (rate limit) / 5xx → ProviderTransientError
        - Everything else → ProviderError
    """
    status = getattr(exception, "status", None)
    message = str(exception)

    if status in (401, 403) or is_auth_error_message(message):
        return AuthenticationError(f"Authentication failed: {message}")
    if status == 429 or (isinstance(status, int) and status >= 500):
        return ProviderTransientError(f"Provider unavailable ({status}): {message}")
    return ProviderError(f"Provider rejected request: {message}")


def extract_output_url(output: Any) -> str | None:
    """Extract the artifact URL from a prediction output (format varies by model)."""
    if isinstance(output, list):
        output = output[0] if output else None
    if output is None:
        return None
    url = getattr(output, "url", None)
    if isinstance(url, str) and url:
        return url
    if isinstance(output, str) and output:
        return output
    return None


class ReplicateProviderClient:
    """ProviderClient backed by Replicate predictions.

    The SDK is synchronous, so every call runs in the default thread pool.
    One SDK client is built per credential call through client_factory.
    """

    def __init__(
        self,
        model_version: str,
        client_factory: Callable[[str], Any] | None = None,
    ):
        """Initialize adapter.

        Args:
            model_version: "owner/model" name or a 64-character version id
            client_factory: Builds an SDK client from an API token
                (default: replicate.Client)
        """
        self.model_version = model_version
        self.client_factory = client_factory or (lambda token: replicate.Client(api_token=token))

    async def start_generation(self, credential: str, payload: dict[str, Any]) -> str:
        """Create a prediction and return its id as the operation handle.

        Raises:
            AuthenticationError: Token rejected
            TransientNetworkError: Network-level failure
            ProviderError: Any other rejection or a response without an id
        """
        client = self.client_factory(credential)

        def _create() -> Any:
            if "/" in self.model_version and ":" not in self.model_version:
                return client.models.predictions.create(model=self.model_version, input=payload)
            version = self.model_version.split(":")[-1]
            return client.predictions.create(version=version, input=payload)

        try:
            prediction = await asyncio.to_thread(_create)
        except ReplicateAPIError as e:
            raise map_replicate_error(e) from e
        except (httpx.TransportError, ConnectionError, TimeoutError) as e:
            raise TransientNetworkError(f"Network error starting generation: {e}") from e

        prediction_id = getattr(prediction, "id", None)
        if not prediction_id:
            raise ProviderError("Provider response missing operation handle")
        return prediction_id

    async def poll_status(self, credential: str, operation_handle: str) -> PollResult:
        """Fetch a prediction and translate its status into a PollResult.

        Raises:
            TransientNetworkError: Network-level failure or provider 5xx
            ProviderError: Any other API error
        """
        client = self.client_factory(credential)

        try:
            prediction = await asyncio.to_thread(client.predictions.get, operation_handle)
        except ReplicateAPIError as e:
            error = map_replicate_error(e)
            if isinstance(error, ProviderTransientError):
                raise TransientNetworkError(str(error)) from e
            raise error from e
        except (httpx.TransportError, ConnectionError, TimeoutError) as e:
            raise TransientNetworkError(f"Network error polling generation: {e}") from e

        status = getattr(prediction, "status", None)
        if status in RUNNING_STATUSES:
            return PollResult.running()

        if status == "succeeded":
            return PollResult.succeeded(artifact_url=extract_output_url(prediction.output))

        if status in FAILED_STATUSES:
            error = getattr(prediction, "error", None)
            return PollResult.failed(
                error_message=str(error) if error else f"Prediction {status}",
                error_category=status,
            )

        logger.warning("provider.unknown_status", operation_handle=operation_handle, status=status)
        return PollResult.running()
