"""RotationCursor entity - singleton round-robin offset shared by all tenants."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from genpool.core.timezone import utcnow

ROTATION_CURSOR_ID = 1


class RotationCursor(SQLModel, table=True):
    """Single-row table holding the next round-robin offset into the active token list."""

    __tablename__ = "rotation_cursor"  # type: ignore[assignment]

    id: int = Field(default=ROTATION_CURSOR_ID, primary_key=True)
    next_index: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utcnow)
