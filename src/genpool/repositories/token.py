"""ProviderToken repository.

Provides data access methods for the provider credential pool.
"""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genpool.core.timezone import utcnow
from genpool.models.token import ProviderToken


class ProviderTokenRepository:
    """Repository for ProviderToken entities.

    Usage counters are bumped with single UPDATE statements so concurrent jobs
    sharing a token never lose increments.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, token_id: UUID) -> ProviderToken | None:
        """Retrieve token by UUID.

        Args:
            token_id: Token's unique identifier

        Returns:
            ProviderToken if found, None otherwise
        """
        result = await self.session.execute(
            select(ProviderToken).where(ProviderToken.id == token_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def add(self, token: ProviderToken) -> ProviderToken:
        """Persist new token to database.

        Args:
            token: ProviderToken entity to persist

        Returns:
            Persisted token with generated ID
        """
        self.session.add(token)
        await self.session.flush()
        return token

    async def list_all(self) -> list[ProviderToken]:
        """Retrieve every token in stable rotation order (created_at, id)."""
        result = await self.session.execute(
            select(ProviderToken).order_by(
                ProviderToken.created_at.asc(),  # type: ignore[attr-defined]
                ProviderToken.id.asc(),  # type: ignore[attr-defined]
            )
        )
        return list(result.scalars().all())

    async def list_active(self) -> list[ProviderToken]:
        """Retrieve active tokens in stable rotation order (created_at, id).

        The order must be stable between calls because round-robin offsets index
        into this list.
        """
        result = await self.session.execute(
            select(ProviderToken)
            .where(ProviderToken.is_active.is_(True))  # type: ignore[attr-defined]
            .order_by(
                ProviderToken.created_at.asc(),  # type: ignore[attr-defined]
                ProviderToken.id.asc(),  # type: ignore[attr-defined]
            )
        )
        return list(result.scalars().all())

    async def set_active(self, token_id: UUID, is_active: bool) -> bool:
        """Enable or disable a token.

        Args:
            token_id: Token to update
            is_active: New activation flag

        Returns:
            True if a row was updated, False if the token does not exist
        """
        result = await self.session.execute(
            update(ProviderToken)
            .where(ProviderToken.id == token_id)  # type: ignore[arg-type]
            .values(is_active=is_active)
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def record_usage(self, token_id: UUID) -> None:
        """Stamp last_used_at and increment request_count atomically.

        Args:
            token_id: Token that served a provider call
        """
        await self.session.execute(
            update(ProviderToken)
            .where(ProviderToken.id == token_id)  # type: ignore[arg-type]
            .values(
                last_used_at=utcnow(),
                request_count=ProviderToken.request_count + 1,
            )
        )
        await self.session.flush()
