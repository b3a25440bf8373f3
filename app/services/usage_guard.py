"""
Usage Guard - Per-request composition of entitlement and ledger checks.

Rate limiting and authentication run earlier, as FastAPI dependencies; by
the time check() runs the caller is known.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.domain import UsageDecision, UsageStatus
from app.services.ledger import CreditLedger


class UsageGuard:
    """Gate for metered features sharing the single free-credit counter."""

    def __init__(self, session: AsyncSession, ledger: CreditLedger | None = None) -> None:
        self.session = session
        self.ledger = ledger or CreditLedger(session)

    async def check(
        self,
        user_id: UUID,
        feature: str,
        consume: bool = True,
        now: datetime | None = None,
    ) -> UsageDecision:
        """Consume one credit (or only look, with consume=False)."""
        if consume:
            result = await self.ledger.deduct(user_id, feature, now=now)
            return UsageDecision(
                allowed=result.allowed,
                remaining=result.remaining,
                is_premium=result.is_premium,
                found=result.reason != "not_found",
                reason=result.reason,
            )

        snapshot = await self.ledger.peek(user_id, now=now)
        return UsageDecision(
            allowed=snapshot.allowed,
            remaining=snapshot.remaining,
            is_premium=snapshot.is_premium,
            found=snapshot.found,
            reason=None if snapshot.allowed else ("not_found" if not snapshot.found else "no_credits"),
        )

    async def status(self, user_id: UUID, now: datetime | None = None) -> UsageStatus | None:
        snapshot = await self.ledger.peek(user_id, now=now)
        if not snapshot.found:
            return None
        # Report the stored counter even for premium users
        user = await self.ledger.entitlements.get_user(user_id)
        free_credits = user.free_credits if user is not None else 0
        return UsageStatus(
            is_premium=snapshot.is_premium,
            free_credits=free_credits,
            free_credits_limit=snapshot.limit,
            blocked=not snapshot.allowed,
            premium_until=snapshot.premium_until,
        )
