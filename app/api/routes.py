"""
API Routes - Credits, usage and PIX payment endpoints.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import UserIdentity, bounded, get_current_user, rate_limit
from app.db.session import get_db
from app.exceptions import APIError, ErrorCode
from app.models.api import (
    ConfirmationSource,
    ConfirmPaymentResponse,
    ConsumeRequest,
    ConsumeResponse,
    CreatePaymentResponse,
    Feature,
    PaymentResponse,
    PaymentStatus,
    UsageStatusResponse,
    WebhookRequest,
    WebhookResponse,
)
from app.models.domain import PaymentData
from app.observability import get_logger
from app.services.entitlements import EntitlementManager
from app.services.payments import PaymentGateway
from app.services.usage_guard import UsageGuard

logger = get_logger(__name__)

router = APIRouter()


def payment_response(payment: PaymentData) -> PaymentResponse:
    """Public view of a payment."""
    return PaymentResponse(
        id=payment.payment_id,
        status=payment.status,
        amount=payment.amount_minor,
        created_at=payment.created_at,
        expires_at=payment.expires_at,
        confirmed_at=payment.confirmed_at,
    )


async def _owned_payment(gateway: PaymentGateway, payment_id: UUID, user: UserIdentity) -> None:
    """404 for unknown ids, 403 when the caller is not the owner."""
    payment = await bounded(gateway.get(payment_id), "payment_lookup")
    if payment is None:
        raise APIError(ErrorCode.NOT_FOUND, "Payment not found")
    if payment.user_id != user.user_id:
        logger.warning(
            "payment_ownership_mismatch",
            payment_id=str(payment_id),
            caller_id=str(user.user_id),
        )
        raise APIError(ErrorCode.FORBIDDEN, "Payment belongs to another user")


# ============================================================================
# Credits / Usage
# ============================================================================


@router.post(
    "/credits/consume",
    response_model=ConsumeResponse,
    dependencies=[Depends(rate_limit("credits"))],
)
async def consume_credit(
    request: ConsumeRequest,
    user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ConsumeResponse:
    """
    Consume one free credit for a metered feature.

    Premium callers are always allowed and report remaining = -1.
    Denial is 403 no_credits with remaining = 0.
    """
    decision = await bounded(
        UsageGuard(db).check(user.user_id, request.feature.value), "credit_deduct"
    )

    if not decision.allowed:
        if not decision.found:
            raise APIError(ErrorCode.NOT_FOUND, "User not found")
        raise APIError(
            ErrorCode.NO_CREDITS,
            "No free credits left. Upgrade to premium for unlimited use.",
            extra={"remaining": 0},
        )

    return ConsumeResponse(
        allowed=True,
        remaining=decision.remaining,
        is_premium=decision.is_premium,
    )


@router.get(
    "/credits/peek",
    response_model=ConsumeResponse,
    dependencies=[Depends(rate_limit("credits"))],
)
async def peek_credits(
    feature: Feature | None = None,
    user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ConsumeResponse:
    """Pre-flight check for client display. Never consumes."""
    tag = feature.value if feature else "peek"
    decision = await bounded(
        UsageGuard(db).check(user.user_id, tag, consume=False), "credit_peek"
    )
    if not decision.found:
        raise APIError(ErrorCode.NOT_FOUND, "User not found")

    return ConsumeResponse(
        allowed=decision.allowed,
        remaining=decision.remaining,
        is_premium=decision.is_premium,
    )


@router.get(
    "/usage/status",
    response_model=UsageStatusResponse,
    dependencies=[Depends(rate_limit("credits"))],
)
async def usage_status(
    user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> UsageStatusResponse:
    """Aggregate usage view for rendering the credit counter or an upgrade prompt."""
    status = await bounded(UsageGuard(db).status(user.user_id), "usage_status")
    if status is None:
        raise APIError(ErrorCode.NOT_FOUND, "User not found")

    return UsageStatusResponse(
        is_premium=status.is_premium,
        free_credits=status.free_credits,
        free_credits_limit=status.free_credits_limit,
        blocked=status.blocked,
        premium_until=status.premium_until,
    )


# ============================================================================
# Payments
# ============================================================================


@router.post(
    "/payments",
    response_model=CreatePaymentResponse,
    dependencies=[Depends(rate_limit("payments"))],
)
async def create_payment(
    user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> CreatePaymentResponse:
    """Open a PIX payment for premium. Refused while premium is active."""
    gateway = PaymentGateway(db)
    result = await bounded(gateway.create(user.user_id), "payment_create")

    if result.payment is None:
        if result.reason == "already_premium":
            raise APIError(ErrorCode.ALREADY_PREMIUM, "Premium is already active")
        raise APIError(ErrorCode.NOT_FOUND, "User not found")

    payment = result.payment
    return CreatePaymentResponse(
        id=payment.payment_id,
        amount=payment.amount_minor,
        currency=payment.currency,
        payment_code=payment.payment_code,
        expires_in=int((payment.expires_at - payment.created_at).total_seconds()),
        status=payment.status,
    )


@router.post(
    "/payments/webhook",
    response_model=WebhookResponse,
    dependencies=[Depends(rate_limit("webhook"))],
)
async def payment_webhook(
    request: WebhookRequest,
    db: AsyncSession = Depends(get_db),
) -> WebhookResponse:
    """
    Simulated payment-network callback (unauthenticated).

    status completed or omitted confirms and activates premium; expired
    expires a pending payment; pending changes nothing.
    """
    gateway = PaymentGateway(db)
    payment_id = request.payment_id

    if request.status is None or request.status == PaymentStatus.COMPLETED:
        result = await bounded(
            gateway.confirm_and_activate(payment_id, ConfirmationSource.WEBHOOK), "webhook_confirm"
        )
        if result is None:
            raise APIError(ErrorCode.NOT_FOUND, "Payment not found")
        payment = result.payment
    elif request.status == PaymentStatus.EXPIRED:
        expired = await bounded(gateway.expire(payment_id), "webhook_expire")
        if expired is None:
            raise APIError(ErrorCode.NOT_FOUND, "Payment not found")
        payment = expired
    else:
        current = await bounded(gateway.status(payment_id), "webhook_status")
        if current is None:
            raise APIError(ErrorCode.NOT_FOUND, "Payment not found")
        payment = current

    logger.info(
        "payment_webhook_processed",
        payment_id=str(payment_id),
        requested_status=request.status.value if request.status else None,
        status=payment.status.value,
    )
    return WebhookResponse(ok=True, payment=payment_response(payment))


@router.post(
    "/payments/{payment_id}/confirm",
    response_model=ConfirmPaymentResponse,
    dependencies=[Depends(rate_limit("payments"))],
)
async def confirm_payment(
    payment_id: UUID,
    user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ConfirmPaymentResponse:
    """Manual confirmation by the payer. Idempotent; expired payments stay expired."""
    gateway = PaymentGateway(db)
    await _owned_payment(gateway, payment_id, user)

    result = await bounded(
        gateway.confirm_and_activate(payment_id, ConfirmationSource.MANUAL), "payment_confirm"
    )
    if result is None:
        raise APIError(ErrorCode.NOT_FOUND, "Payment not found")
    if result.payment.status == PaymentStatus.EXPIRED:
        raise APIError(ErrorCode.INVALID_REQUEST, "Payment has expired; create a new one")

    entitlement = await bounded(
        EntitlementManager(db).get_entitlement(user.user_id), "entitlement_read"
    )
    base = payment_response(result.payment)
    return ConfirmPaymentResponse(
        **base.model_dump(),
        is_premium=entitlement.is_premium_now if entitlement else False,
        premium_until=entitlement.premium_until if entitlement else None,
    )


@router.get(
    "/payments/{payment_id}",
    response_model=PaymentResponse,
    dependencies=[Depends(rate_limit("payments"))],
)
async def get_payment(
    payment_id: UUID,
    user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    """Poll a payment. May expire an overdue payment or repair a completed one."""
    gateway = PaymentGateway(db)
    await _owned_payment(gateway, payment_id, user)

    payment = await bounded(gateway.status(payment_id), "payment_status")
    if payment is None:
        raise APIError(ErrorCode.NOT_FOUND, "Payment not found")
    return payment_response(payment)
