"""
Admin API routes for payments, credits and registration fraud records.

Protected by Authorization: Bearer {ADMIN_SECRET}.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import bounded, require_admin
from app.db.session import get_db
from app.exceptions import APIError, ErrorCode
from app.models.api import (
    AdminPaymentItem,
    AdminPaymentListResponse,
    ConfirmationSource,
    ForceConfirmRequest,
    ForceConfirmResponse,
    FraudClearResponse,
    FraudStatsResponse,
    GrantCreditsRequest,
    GrantCreditsResponse,
    PaymentStatus,
)
from app.models.domain import PaymentData
from app.observability import get_logger
from app.services.anti_fraud import AntiFraudGuard
from app.services.entitlements import EntitlementManager
from app.services.ledger import CreditLedger
from app.services.payments import PaymentGateway

logger = get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def admin_payment_item(payment: PaymentData) -> AdminPaymentItem:
    return AdminPaymentItem(
        id=payment.payment_id,
        user_id=payment.user_id,
        status=payment.status,
        amount=payment.amount_minor,
        created_at=payment.created_at,
        expires_at=payment.expires_at,
        confirmed_at=payment.confirmed_at,
        confirmed_by=payment.confirmed_by.value if payment.confirmed_by else None,
        premium_activated_at=payment.premium_activated_at,
    )


@router.get("/payments", response_model=AdminPaymentListResponse)
async def list_payments(
    status: PaymentStatus | None = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> AdminPaymentListResponse:
    """List payments, newest first, optionally filtered by status."""
    payments, total = await bounded(
        PaymentGateway(db).list_payments(status=status, limit=limit, offset=offset),
        "admin_list_payments",
    )
    return AdminPaymentListResponse(
        payments=[admin_payment_item(p) for p in payments],
        total=total,
    )


@router.post("/payments/force-confirm", response_model=ForceConfirmResponse)
async def force_confirm(
    request: ForceConfirmRequest,
    db: AsyncSession = Depends(get_db),
) -> ForceConfirmResponse:
    """
    Administrative confirmation.

    With paymentId: confirm that payment and activate premium once.
    With only userId: confirm the user's latest pending payment, or grant
    premium directly when there is none.
    """
    if request.payment_id is None and request.user_id is None:
        raise APIError(ErrorCode.INVALID_REQUEST, "paymentId or userId is required")

    gateway = PaymentGateway(db)
    payment_id = request.payment_id

    if payment_id is None and request.user_id is not None:
        pending = await bounded(
            gateway.latest_pending_for_user(request.user_id), "admin_find_pending"
        )
        if pending is not None:
            payment_id = pending.payment_id

    if payment_id is not None:
        result = await bounded(
            gateway.confirm_and_activate(payment_id, ConfirmationSource.ADMIN),
            "admin_force_confirm",
        )
        if result is None:
            raise APIError(ErrorCode.NOT_FOUND, "Payment not found")
        if result.payment.status == PaymentStatus.EXPIRED:
            raise APIError(ErrorCode.INVALID_REQUEST, "Payment has expired")

        entitlement = await bounded(
            EntitlementManager(db).get_entitlement(result.payment.user_id), "entitlement_read"
        )
        logger.info(
            "admin_force_confirm",
            payment_id=str(payment_id),
            transitioned=result.transitioned,
            premium_activated=result.premium_activated,
        )
        return ForceConfirmResponse(
            user_id=result.payment.user_id,
            payment=admin_payment_item(result.payment),
            premium_until=entitlement.premium_until if entitlement else None,
        )

    # No pending payment for this user: grant premium directly
    user_id = request.user_id
    if user_id is None:
        raise APIError(ErrorCode.INVALID_REQUEST, "userId is required")
    user = await bounded(
        gateway.entitlements.activate_premium(user_id, gateway.premium_days),
        "admin_activate_premium",
    )
    if user is None:
        raise APIError(ErrorCode.NOT_FOUND, "User not found")

    logger.info("admin_premium_granted", user_id=str(user.user_id))
    return ForceConfirmResponse(user_id=user.user_id, premium_until=user.premium_until)


@router.post("/users/{user_id}/credits", response_model=GrantCreditsResponse)
async def grant_credits(
    user_id: UUID,
    request: GrantCreditsRequest,
    db: AsyncSession = Depends(get_db),
) -> GrantCreditsResponse:
    """Top up a user's free credits."""
    balance = await bounded(CreditLedger(db).grant(user_id, request.amount), "admin_grant")
    if balance is None:
        raise APIError(ErrorCode.NOT_FOUND, "User not found")
    return GrantCreditsResponse(user_id=user_id, free_credits=balance)


@router.get("/fraud/stats", response_model=FraudStatsResponse)
async def fraud_stats(db: AsyncSession = Depends(get_db)) -> FraudStatsResponse:
    stats = await bounded(AntiFraudGuard(db).stats(), "admin_fraud_stats")
    return FraudStatsResponse(
        total=stats.total,
        last_24h=stats.last_24h,
        unique_ips=stats.unique_ips,
        unique_fingerprints=stats.unique_fingerprints,
    )


@router.delete("/fraud/records", response_model=FraudClearResponse)
async def clear_fraud_records(
    email: str = Query(..., min_length=3, max_length=255),
    db: AsyncSession = Depends(get_db),
) -> FraudClearResponse:
    """Forget an e-mail's registration records (support override)."""
    removed = await bounded(AntiFraudGuard(db).clear(email), "admin_fraud_clear")
    return FraudClearResponse(email=email.strip().lower(), removed=removed)
