"""RotationCursor repository.

Advances the shared round-robin offset with a single UPDATE ... RETURNING so
concurrent batches from different tenants never compute overlapping slices.
"""

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from genpool.core.timezone import utcnow
from genpool.models.rotation_cursor import ROTATION_CURSOR_ID, RotationCursor


class RotationCursorRepository:
    """Repository for the singleton RotationCursor row."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def ensure_row(self) -> None:
        """Insert the cursor row if it does not exist (idempotent)."""
        stmt = insert(RotationCursor).values(
            id=ROTATION_CURSOR_ID, next_index=0, updated_at=utcnow()
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["id"])
        await self.session.execute(stmt)
        await self.session.flush()

    async def get_next_index(self) -> int:
        """Read the current cursor value (0 if the row does not exist yet)."""
        result = await self.session.execute(
            select(RotationCursor.next_index).where(
                RotationCursor.id == ROTATION_CURSOR_ID  # type: ignore[arg-type]
            )
        )
        value = result.scalar_one_or_none()
        return value or 0

    async def advance(self, count: int, pool_size: int) -> int:
        """Advance the cursor by count (mod pool_size) and return the pre-advance offset.

        Query explanation:
        - UPDATE rotation_cursor SET next_index = (next_index + :count) % :pool_size
        - RETURNING next_index: post-advance value, read under the row lock
        - start = (returned - count) mod pool_size

        Args:
            count: Number of slots to reserve (> 0, validated by caller)
            pool_size: Number of active tokens (> 0, validated by caller)

        Returns:
            Start offset in [0, pool_size)
        """
        stmt = (
            update(RotationCursor)
            .where(RotationCursor.id == ROTATION_CURSOR_ID)  # type: ignore[arg-type]
            .values(
                next_index=(RotationCursor.next_index + count) % pool_size,
                updated_at=utcnow(),
            )
            .returning(RotationCursor.next_index)
        )
        result = await self.session.execute(stmt)
        new_index = result.scalar_one_or_none()

        if new_index is None:
            await self.ensure_row()
            result = await self.session.execute(stmt)
            new_index = result.scalar_one()

        await self.session.flush()
        return (new_index - count) % pool_size
