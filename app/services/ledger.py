"""
Credit Ledger - The single shared free-use counter gating every metered feature.

The deduction is one conditional UPDATE (compare-and-decrement). Two
concurrent calls can never both observe free_credits = 1 and both succeed:
the database applies the WHERE free_credits > 0 guard row-atomically.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import and_, not_, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import User
from app.models.api import Tier
from app.models.domain import UNLIMITED, DeductResult, UsageSnapshot
from app.observability import get_logger, metrics
from app.services.entitlements import EntitlementManager, is_premium_active

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _premium_active_clause(now: datetime):  # type: ignore[no-untyped-def]
    """SQL form of is_premium_active, evaluated inside the UPDATE."""
    return and_(
        User.tier == Tier.PREMIUM.value,
        User.premium_until.is_not(None),
        User.premium_until > now,
    )


class CreditLedger:
    """
    Authoritative counter of remaining free uses per user.

    Business outcomes (no credits, unknown user) are returned as values,
    never raised.
    """

    def __init__(self, session: AsyncSession, free_credits_limit: int | None = None) -> None:
        """Initialize ledger with database session."""
        self.session = session
        self.entitlements = EntitlementManager(session)
        self.free_credits_limit = (
            free_credits_limit
            if free_credits_limit is not None
            else settings.free_credits_per_account
        )

    async def deduct(self, user_id: UUID, feature: str, now: datetime | None = None) -> DeductResult:
        """
        Consume one free credit for `feature`.

        Premium (and not expired) users are always allowed and never mutated.
        """
        now = now or _utc_now()

        stmt = (
            update(User)
            .where(
                User.id == user_id,
                User.free_credits > 0,
                not_(_premium_active_clause(now)),
            )
            .values(
                free_credits=User.free_credits - 1,
                total_uses=User.total_uses + 1,
                updated_at=now,
            )
            .returning(User.free_credits)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        remaining = result.scalar_one_or_none()

        if remaining is not None:
            await self.session.commit()
            self._emit_usage_event(user_id, feature, remaining, premium=False, allowed=True)
            metrics.record_deduction(feature, "allowed")
            return DeductResult(allowed=True, remaining=remaining, is_premium=False)

        # Nothing was written; end the transaction before classifying the miss
        await self.session.rollback()

        user = await self.entitlements.get_user(user_id)
        if user is None:
            logger.warning("credit_deduct_user_missing", user_id=str(user_id), feature=feature)
            metrics.record_deduction(feature, "not_found")
            return DeductResult(allowed=False, remaining=0, is_premium=False, reason="not_found")

        if is_premium_active(user.tier, user.premium_until, now):
            self._emit_usage_event(user_id, feature, UNLIMITED, premium=True, allowed=True)
            metrics.record_deduction(feature, "premium")
            return DeductResult(allowed=True, remaining=UNLIMITED, is_premium=True)

        self._emit_usage_event(user_id, feature, 0, premium=False, allowed=False)
        metrics.record_deduction(feature, "no_credits")
        return DeductResult(allowed=False, remaining=0, is_premium=False, reason="no_credits")

    async def peek(self, user_id: UUID, now: datetime | None = None) -> UsageSnapshot:
        """Read-only pre-flight check. Never mutates state."""
        user = await self.entitlements.get_user(user_id)
        if user is None:
            return UsageSnapshot(
                found=False,
                allowed=False,
                remaining=0,
                is_premium=False,
                limit=self.free_credits_limit,
            )

        if is_premium_active(user.tier, user.premium_until, now):
            return UsageSnapshot(
                found=True,
                allowed=True,
                remaining=UNLIMITED,
                is_premium=True,
                limit=self.free_credits_limit,
                premium_until=user.premium_until,
            )

        return UsageSnapshot(
            found=True,
            allowed=user.free_credits > 0,
            remaining=user.free_credits,
            is_premium=False,
            limit=self.free_credits_limit,
            premium_until=user.premium_until,
        )

    async def grant(self, user_id: UUID, amount: int) -> int | None:
        """
        Add free credits (administrative top-up).

        Returns the new balance, or None when the user is unknown.
        """
        if amount <= 0:
            raise ValueError(f"Grant amount must be positive: {amount}")

        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(free_credits=User.free_credits + amount, updated_at=_utc_now())
            .returning(User.free_credits)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            await self.session.rollback()
            return None

        await self.session.commit()
        logger.info(
            "free_credits_granted",
            user_id=str(user_id),
            amount=amount,
            free_credits=new_balance,
        )
        return int(new_balance)

    def _emit_usage_event(
        self, user_id: UUID, feature: str, remaining: int, premium: bool, allowed: bool
    ) -> None:
        """Structured usage event for analytics; has no effect on correctness."""
        logger.info(
            "usage_event",
            user_id=str(user_id),
            feature=feature,
            remaining=remaining,
            premium=premium,
            allowed=allowed,
        )
