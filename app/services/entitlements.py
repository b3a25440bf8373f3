"""
Entitlement Manager - Free / Premium tier lifecycle.

Premium is never read from a cached flag: every decision is derived from
tier + premium_until compared against the current time. There is no
background downgrade job; an expired premium simply reads as free.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import User
from app.models.api import Tier
from app.models.domain import EntitlementData, UserData
from app.observability import get_logger

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def is_premium_active(tier: str, premium_until: datetime | None, now: datetime | None = None) -> bool:
    """
    Derive "is premium right now".

    A premium tier without an expiry, or with an expiry at or before now,
    is treated as free.
    """
    if tier != Tier.PREMIUM.value or premium_until is None:
        return False
    return premium_until > (now or _utc_now())


def user_to_domain(user: User, now: datetime | None = None) -> UserData:
    """Convert ORM user to domain model."""
    return UserData(
        user_id=user.id,
        email=user.email,
        username=user.username,
        display_name=user.display_name,
        tier=Tier(user.tier),
        premium_until=user.premium_until,
        free_credits=user.free_credits,
        total_uses=user.total_uses,
        created_at=user.created_at,
        is_premium_now=is_premium_active(user.tier, user.premium_until, now),
    )


class EntitlementManager:
    """Reads and mutates a user's access tier."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize entitlement manager with database session."""
        self.session = session

    async def get_user(self, user_id: UUID) -> User | None:
        """Load a user, always refreshing from the database."""
        stmt = select(User).where(User.id == user_id).execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_entitlement(
        self, user_id: UUID, now: datetime | None = None
    ) -> EntitlementData | None:
        """Current entitlement for a user, or None when the user is unknown."""
        user = await self.get_user(user_id)
        if user is None:
            return None
        return EntitlementData(
            user_id=user.id,
            tier=Tier(user.tier),
            premium_until=user.premium_until,
            is_premium_now=is_premium_active(user.tier, user.premium_until, now),
            free_credits=user.free_credits,
        )

    async def activate_premium(
        self,
        user_id: UUID,
        days: int,
        now: datetime | None = None,
        commit: bool = True,
    ) -> UserData | None:
        """
        Grant premium for `days` starting now.

        Overwrites premium_until rather than stacking, so repeated calls are
        idempotent within the same instant. free_credits is left untouched and
        is simply not consulted while premium is active.

        With commit=False the update joins the caller's transaction.
        """
        if days <= 0:
            raise ValueError(f"Premium duration must be positive: {days}")

        now = now or _utc_now()
        premium_until = now + timedelta(days=days)

        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(tier=Tier.PREMIUM.value, premium_until=premium_until, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:  # type: ignore[attr-defined]
            logger.warning("premium_activation_user_missing", user_id=str(user_id))
            return None

        if commit:
            await self.session.commit()

        user = await self.get_user(user_id)
        if user is None:
            return None

        logger.info(
            "premium_activated",
            user_id=str(user_id),
            days=days,
            premium_until=premium_until.isoformat(),
        )
        return user_to_domain(user, now)
