"""ProviderToken entity - one credential in the shared provider pool."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from genpool.core.timezone import utcnow


class ProviderToken(SQLModel, table=True):
    """ProviderToken holds a provider credential with activation state and usage counters.

    Rolling error timestamps are not persisted; they live in the scheduler state
    and are windowed in memory.
    """

    __tablename__ = "provider_tokens"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    label: str = Field(default="", max_length=255)
    secret: str = Field(max_length=1000)
    is_active: bool = Field(default=True, index=True)
    last_used_at: Optional[datetime] = Field(default=None)
    request_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)

    def mark_used(self) -> None:
        """Stamp last-used time and bump the cumulative request counter."""
        self.last_used_at = utcnow()
        self.request_count += 1

    def display_name(self) -> str:
        """Return a log-safe name for the token (never the raw secret)."""
        return self.label or f"token-{str(self.id)[:8]}"
