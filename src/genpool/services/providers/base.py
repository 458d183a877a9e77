"""Provider client port and poll result type."""

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class PollResult:
    """One observation of a provider operation.

    terminal=False means the operation is still running. A terminal result is
    either a success (artifact_url and/or artifact_bytes) or an error described
    by error_code, error_category and error_message as reported by the provider.
    """

    terminal: bool
    success: bool = False
    artifact_url: str | None = None
    artifact_bytes: bytes | None = None
    content_type: str = "video/mp4"
    error_code: str | int | None = None
    error_category: str | None = None
    error_message: str | None = None

    @property
    def has_artifact(self) -> bool:
        return bool(self.artifact_url or self.artifact_bytes)

    @classmethod
    def running(cls) -> "PollResult":
        return cls(terminal=False)

    @classmethod
    def succeeded(
        cls,
        artifact_url: str | None = None,
        artifact_bytes: bytes | None = None,
        content_type: str = "video/mp4",
    ) -> "PollResult":
        return cls(
            terminal=True,
            success=True,
            artifact_url=artifact_url,
            artifact_bytes=artifact_bytes,
            content_type=content_type,
        )

    @classmethod
    def failed(
        cls,
        error_message: str,
        error_category: str | None = None,
        error_code: str | int | None = None,
    ) -> "PollResult":
        return cls(
            terminal=True,
            success=False,
            error_code=error_code,
            error_category=error_category,
            error_message=error_message,
        )


class ProviderClient(Protocol):
    """Opaque async job API: start -> operation handle -> poll -> terminal result.

    start_generation raises AuthenticationError for rejected credentials,
    TransientNetworkError for network-level failures and ProviderError for
    any other rejection. poll_status raises TransientNetworkError for
    network-level failures.
    """

    async def start_generation(self, credential: str, payload: dict[str, Any]) -> str: ...

    async def poll_status(self, credential: str, operation_handle: str) -> PollResult: ...
