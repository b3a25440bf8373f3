"""
Auth Routes - Registration, login and the caller's own account.
"""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import UserIdentity, bounded, get_current_user, rate_limit
from app.db.session import get_db
from app.exceptions import APIError, ErrorCode
from app.models.api import AuthResponse, LoginRequest, RegisterRequest, UserResponse
from app.models.domain import FraudDecision, UserData
from app.observability import get_logger
from app.services.anti_fraud import (
    RULE_EMAIL_TAKEN,
    RULE_INVALID_EMAIL,
    client_ip,
    fingerprint_from_headers,
)
from app.services.entitlements import EntitlementManager, user_to_domain
from app.services.users import RULE_USERNAME_TAKEN, UserService, issue_token

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def user_response(user: UserData) -> UserResponse:
    return UserResponse(
        id=user.user_id,
        email=user.email,
        username=user.username,
        name=user.display_name,
        tier=user.tier,
        is_premium=user.is_premium_now,
        premium_until=user.premium_until,
        free_credits=user.free_credits,
    )


def _refusal(decision: FraudDecision) -> APIError:
    """Map an admission refusal to its HTTP error."""
    if decision.rule == RULE_EMAIL_TAKEN:
        return APIError(ErrorCode.EMAIL_TAKEN, decision.reason)
    if decision.rule in (RULE_INVALID_EMAIL, RULE_USERNAME_TAKEN):
        return APIError(ErrorCode.INVALID_REQUEST, decision.reason)

    extra: dict[str, object] = {"reason": decision.reason, "rule": decision.rule}
    if decision.wait_hours is not None:
        extra["waitHours"] = decision.wait_hours
    return APIError(ErrorCode.REGISTRATION_BLOCKED, decision.reason, extra=extra)


@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("auth"))],
)
async def register(
    body: RegisterRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> AuthResponse:
    """
    Create an account seeded with the free credits.

    Admission is checked against e-mail, IP cool-down and device fingerprint.
    """
    ip = client_ip(request)
    fingerprint = fingerprint_from_headers(
        request.headers.get("user-agent"),
        request.headers.get("accept-language"),
        body.device_info,
    )

    result = await bounded(
        UserService(db).register(
            email=body.email,
            password=body.password,
            ip=ip,
            fingerprint=fingerprint,
            username=body.username,
            display_name=body.name,
        ),
        "register",
    )

    if result.user is None or result.token is None:
        raise _refusal(result.decision)

    return AuthResponse(token=result.token, user=user_response(result.user))


@router.post(
    "/login",
    response_model=AuthResponse,
    dependencies=[Depends(rate_limit("auth"))],
)
async def login(
    body: LoginRequest,
    db: AsyncSession = Depends(get_db),
) -> AuthResponse:
    user = await bounded(UserService(db).authenticate(body.email, body.password), "login")
    if user is None:
        raise APIError(ErrorCode.UNAUTHORIZED, "Invalid e-mail or password")

    logger.info("user_logged_in", user_id=str(user.user_id))
    return AuthResponse(token=issue_token(user.user_id), user=user_response(user))


@router.get("/me", response_model=UserResponse)
async def me(
    user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    """Caller's account with its entitlement evaluated now."""
    account = await bounded(EntitlementManager(db).get_user(user.user_id), "load_user")
    if account is None:
        raise APIError(ErrorCode.NOT_FOUND, "User not found")
    return user_response(user_to_domain(account))
