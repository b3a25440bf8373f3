"""
Payment Gateway - PIX payment requests and their lifecycle.

Status only moves forward: pending -> completed or pending -> expired.
Every transition is a conditional UPDATE on the current status, so
concurrent confirmers (user, webhook, admin, scheduler) race safely and
exactly one of them observes transitioned=True.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import Payment
from app.exceptions import DataIntegrityError
from app.models.api import ConfirmationSource, PaymentStatus
from app.models.domain import ConfirmResult, CreatePaymentResult, PaymentData
from app.observability import get_logger, metrics
from app.services.entitlements import EntitlementManager, is_premium_active
from app.services.pix import build_br_code, txid_for

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def payment_to_domain(payment: Payment) -> PaymentData:
    """Convert ORM payment to domain model."""
    return PaymentData(
        payment_id=payment.id,
        user_id=payment.user_id,
        amount_minor=payment.amount_minor,
        currency=payment.currency,
        status=PaymentStatus(payment.status),
        payment_code=payment.payment_code,
        created_at=payment.created_at,
        expires_at=payment.expires_at,
        confirmed_at=payment.confirmed_at,
        confirmed_by=ConfirmationSource(payment.confirmed_by) if payment.confirmed_by else None,
        premium_activated_at=payment.premium_activated_at,
    )


class PaymentGateway:
    """
    Creates and tracks PIX payment requests.

    Unknown ids are returned as None; ownership is checked by the HTTP layer
    against PaymentData.user_id.
    """

    def __init__(
        self,
        session: AsyncSession,
        price_minor: int | None = None,
        expiry_seconds: int | None = None,
        premium_days: int | None = None,
    ) -> None:
        """Initialize gateway with database session and pricing."""
        self.session = session
        self.entitlements = EntitlementManager(session)
        self.price_minor = price_minor if price_minor is not None else settings.premium_price_minor
        self.expiry_seconds = (
            expiry_seconds if expiry_seconds is not None else settings.payment_expiry_seconds
        )
        self.premium_days = premium_days if premium_days is not None else settings.premium_days

    async def get(self, payment_id: UUID) -> Payment | None:
        """Load a payment, always refreshing from the database."""
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        user_id: UUID,
        amount_minor: int | None = None,
        now: datetime | None = None,
    ) -> CreatePaymentResult:
        """
        Open a pending payment with a freshly generated BR Code.

        Refused with reason "already_premium" while the user's premium is
        active, and "not_found" for unknown users.
        """
        now = now or _utc_now()
        amount = amount_minor if amount_minor is not None else self.price_minor
        if amount <= 0:
            raise ValueError(f"Payment amount must be positive: {amount}")

        user = await self.entitlements.get_user(user_id)
        if user is None:
            return CreatePaymentResult(payment=None, reason="not_found")
        if is_premium_active(user.tier, user.premium_until, now):
            logger.info("payment_refused_already_premium", user_id=str(user_id))
            return CreatePaymentResult(payment=None, reason="already_premium")

        payment_id = uuid4()
        payment_code = build_br_code(
            pix_key=settings.pix_key,
            amount_minor=amount,
            merchant_name=settings.pix_merchant_name,
            merchant_city=settings.pix_merchant_city,
            txid=txid_for(payment_id),
        )
        payment = Payment(
            id=payment_id,
            user_id=user_id,
            amount_minor=amount,
            currency=settings.premium_currency,
            status=PaymentStatus.PENDING.value,
            payment_code=payment_code,
            created_at=now,
            expires_at=now + timedelta(seconds=self.expiry_seconds),
        )
        self.session.add(payment)
        await self.session.commit()

        metrics.payments_created_total.inc()
        logger.info(
            "payment_created",
            payment_id=str(payment_id),
            user_id=str(user_id),
            amount_minor=amount,
            expires_at=payment.expires_at.isoformat(),
        )
        return CreatePaymentResult(payment=payment_to_domain(payment))

    async def confirm(
        self,
        payment_id: UUID,
        source: ConfirmationSource,
        now: datetime | None = None,
        commit: bool = True,
    ) -> ConfirmResult | None:
        """
        Move pending -> completed.

        Idempotent: a completed payment is returned unchanged with
        transitioned=False. An expired payment, or a pending one already past
        its expiry, is never resurrected.
        """
        now = now or _utc_now()

        stmt = (
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status == PaymentStatus.PENDING.value,
                Payment.expires_at > now,
            )
            .values(
                status=PaymentStatus.COMPLETED.value,
                confirmed_at=now,
                confirmed_by=source.value,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        transitioned = result.rowcount == 1  # type: ignore[attr-defined]

        if not transitioned:
            payment = await self.get(payment_id)
            if payment is None:
                return None
            if payment.status == PaymentStatus.PENDING.value and payment.expires_at <= now:
                await self._mark_expired(payment_id)

        if commit:
            await self.session.commit()

        payment = await self.get(payment_id)
        if payment is None:
            raise DataIntegrityError(f"Payment {payment_id} vanished during confirmation")

        if transitioned:
            metrics.record_payment_confirmed(source.value)
            logger.info(
                "payment_confirmed",
                payment_id=str(payment_id),
                user_id=str(payment.user_id),
                source=source.value,
            )
        return ConfirmResult(payment=payment_to_domain(payment), transitioned=transitioned)

    async def confirm_and_activate(
        self,
        payment_id: UUID,
        source: ConfirmationSource,
        now: datetime | None = None,
    ) -> ConfirmResult | None:
        """
        Confirm, then grant premium exactly once for this payment.

        Both writes share one transaction. A second call on the same payment
        confirms nothing and activates nothing.
        """
        now = now or _utc_now()

        result = await self.confirm(payment_id, source, now=now, commit=False)
        if result is None:
            await self.session.rollback()
            return None

        activated = False
        if result.payment.status == PaymentStatus.COMPLETED:
            activated = await self._activate_once(result.payment, source, now)

        await self.session.commit()

        payment = await self.get(payment_id)
        if payment is None:
            raise DataIntegrityError(f"Payment {payment_id} vanished during activation")
        return ConfirmResult(
            payment=payment_to_domain(payment),
            transitioned=result.transitioned,
            premium_activated=activated,
        )

    async def status(self, payment_id: UUID, now: datetime | None = None) -> PaymentData | None:
        """
        Read a payment.

        Two writes can happen on this path: an overdue pending payment is
        marked expired, and a completed payment whose confirmation or
        entitlement side effect never landed is repaired.
        """
        now = now or _utc_now()

        payment = await self.get(payment_id)
        if payment is None:
            return None

        if payment.status == PaymentStatus.PENDING.value and payment.expires_at <= now:
            await self._mark_expired(payment_id)
            await self.session.commit()
            payment = await self.get(payment_id)

        elif payment.status == PaymentStatus.COMPLETED.value and (
            payment.confirmed_at is None or payment.premium_activated_at is None
        ):
            await self._repair(payment, now)
            payment = await self.get(payment_id)

        if payment is None:
            raise DataIntegrityError(f"Payment {payment_id} vanished during status read")
        return payment_to_domain(payment)

    async def expire(self, payment_id: UUID) -> PaymentData | None:
        """Move pending -> expired. Terminal payments are returned unchanged."""
        payment = await self.get(payment_id)
        if payment is None:
            return None

        if payment.status == PaymentStatus.PENDING.value:
            await self._mark_expired(payment_id)
            await self.session.commit()
            payment = await self.get(payment_id)
            if payment is None:
                raise DataIntegrityError(f"Payment {payment_id} vanished during expiry")

        return payment_to_domain(payment)

    async def expire_overdue(self, now: datetime | None = None) -> int:
        """Bulk-expire pending payments past their expiry. Returns the count."""
        now = now or _utc_now()
        stmt = (
            update(Payment)
            .where(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.expires_at <= now,
            )
            .values(status=PaymentStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()

        count = int(result.rowcount or 0)  # type: ignore[attr-defined]
        if count:
            metrics.payments_expired_total.inc(count)
            logger.info("payments_expired_overdue", count=count)
        return count

    async def list_payments(
        self,
        status: PaymentStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[PaymentData], int]:
        """Newest first, with the total count for the same filter."""
        stmt = select(Payment)
        count_stmt = select(func.count()).select_from(Payment)
        if status is not None:
            stmt = stmt.where(Payment.status == status.value)
            count_stmt = count_stmt.where(Payment.status == status.value)

        stmt = stmt.order_by(Payment.created_at.desc()).limit(limit).offset(offset)

        rows = (await self.session.execute(stmt)).scalars().all()
        total = (await self.session.execute(count_stmt)).scalar_one()
        return [payment_to_domain(p) for p in rows], int(total)

    async def latest_pending_for_user(self, user_id: UUID) -> PaymentData | None:
        """Most recent pending payment of a user (admin force-confirm by user)."""
        stmt = (
            select(Payment)
            .where(
                Payment.user_id == user_id,
                Payment.status == PaymentStatus.PENDING.value,
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        payment = (await self.session.execute(stmt)).scalar_one_or_none()
        return payment_to_domain(payment) if payment else None

    async def _mark_expired(self, payment_id: UUID) -> bool:
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value)
            .values(status=PaymentStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        expired = result.rowcount == 1  # type: ignore[attr-defined]
        if expired:
            metrics.payments_expired_total.inc()
            logger.info("payment_expired", payment_id=str(payment_id))
        return expired

    async def _activate_once(
        self, payment: PaymentData, source: ConfirmationSource, now: datetime
    ) -> bool:
        """
        Claim the payment's entitlement side effect, then grant premium.

        Runs inside the caller's transaction; returns False when another
        caller already claimed it.
        """
        claim = (
            update(Payment)
            .where(
                Payment.id == payment.payment_id,
                Payment.status == PaymentStatus.COMPLETED.value,
                Payment.premium_activated_at.is_(None),
            )
            .values(premium_activated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(claim)
        if result.rowcount != 1:  # type: ignore[attr-defined]
            return False

        user = await self.entitlements.activate_premium(
            payment.user_id, self.premium_days, now=now, commit=False
        )
        if user is None:
            raise DataIntegrityError(
                f"Payment {payment.payment_id} belongs to missing user {payment.user_id}"
            )

        metrics.record_premium_activation(source.value)
        logger.info(
            "payment_premium_activated",
            payment_id=str(payment.payment_id),
            user_id=str(payment.user_id),
            source=source.value,
        )
        return True

    async def _repair(self, payment: Payment, now: datetime) -> None:
        """Compensate a completed payment missing confirmed_at or its activation."""
        logger.warning(
            "payment_repair_started",
            payment_id=str(payment.id),
            confirmed_at_missing=payment.confirmed_at is None,
            activation_missing=payment.premium_activated_at is None,
        )

        if payment.confirmed_at is None:
            stmt = (
                update(Payment)
                .where(Payment.id == payment.id, Payment.confirmed_at.is_(None))
                .values(
                    confirmed_at=now,
                    confirmed_by=payment.confirmed_by or ConfirmationSource.REPAIR.value,
                )
                .execution_options(synchronize_session=False)
            )
            await self.session.execute(stmt)

        refreshed = await self.get(payment.id)
        if refreshed is None:
            raise DataIntegrityError(f"Payment {payment.id} vanished during repair")
        await self._activate_once(payment_to_domain(refreshed), ConfirmationSource.REPAIR, now)
        await self.session.commit()
