"""
FastAPI Dependencies - Authentication, admin gate, rate limiting, usage gate.

NO DICTIONARIES - All dependencies return typed objects.
"""

import asyncio
import math
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar
from uuid import UUID

from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.session import get_db
from app.exceptions import APIError, ErrorCode, StoreUnavailableError
from app.models.domain import RateDecision, UsageDecision
from app.observability import get_logger, metrics
from app.services.anti_fraud import client_ip
from app.services.entitlements import EntitlementManager
from app.services.rate_limiter import get_rate_limiter
from app.services.usage_guard import UsageGuard
from app.services.users import decode_token

logger = get_logger(__name__)

T = TypeVar("T")

# Bearer token scheme, shared by user tokens and the admin secret
bearer_scheme = HTTPBearer(auto_error=False)


# ============================================================================
# Bounded I/O
# ============================================================================


async def bounded(awaitable: Awaitable[T], operation: str) -> T:
    """
    Await with the configured operation timeout.

    A timeout surfaces as StoreUnavailableError, which the app renders as
    500 internal, so callers fail closed instead of hanging.
    """
    try:
        async with asyncio.timeout(settings.operation_timeout_seconds):
            return await awaitable
    except TimeoutError as e:
        metrics.record_error("timeout", operation)
        logger.error(
            "operation_timed_out",
            operation=operation,
            timeout_seconds=settings.operation_timeout_seconds,
        )
        raise StoreUnavailableError(operation, "timed out") from e


# ============================================================================
# User Authentication
# ============================================================================


@dataclass
class UserIdentity:
    """Authenticated caller resolved from a bearer token."""

    user_id: UUID
    email: str


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> UserIdentity:
    """
    Resolve Authorization: Bearer {token} to an existing user.

    Missing, invalid, expired tokens and tokens for deleted users are all 401.
    """
    if credentials is None or not credentials.credentials:
        raise APIError(
            ErrorCode.UNAUTHORIZED,
            "Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = decode_token(credentials.credentials)
    if user_id is None:
        raise APIError(
            ErrorCode.UNAUTHORIZED,
            "Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await bounded(EntitlementManager(db).get_user(user_id), "load_user")
    if user is None:
        logger.warning("token_user_missing", user_id=str(user_id))
        raise APIError(ErrorCode.UNAUTHORIZED, "Unknown user")

    return UserIdentity(user_id=user.id, email=user.email)


# ============================================================================
# Admin Authentication
# ============================================================================


async def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """Authorization: Bearer {ADMIN_SECRET}, compared in constant time."""
    if credentials is None or not credentials.credentials:
        raise APIError(
            ErrorCode.UNAUTHORIZED,
            "Admin secret required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not settings.admin_secret:
        logger.error("admin_secret_not_configured")
        raise APIError(ErrorCode.FORBIDDEN, "Admin access is disabled")

    if not secrets.compare_digest(
        credentials.credentials.encode("utf-8"), settings.admin_secret.encode("utf-8")
    ):
        logger.warning("admin_auth_failed")
        raise APIError(ErrorCode.FORBIDDEN, "Invalid admin secret")


# ============================================================================
# Rate Limiting
# ============================================================================


def _rate_limit_headers(decision: RateDecision) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(decision.reset_at_ms // 1000),
    }


def rate_limit(route_class: str) -> Callable[[Request, Response], Awaitable[None]]:
    """
    Dependency factory: fixed-window limit per client IP for a route class.

    Usage:
        @router.post("/payments", dependencies=[Depends(rate_limit("payments"))])
    """

    async def check_rate_limit(request: Request, response: Response) -> None:
        if not settings.rate_limit_enabled:
            return

        limit = settings.rate_limit_for(route_class)
        key = f"{route_class}:{client_ip(request)}"
        decision = await get_rate_limiter().allow(key, limit, settings.rate_limit_window_ms)
        metrics.record_rate_limit(route_class, decision.allowed)

        headers = _rate_limit_headers(decision)
        if not decision:
            retry_after = max(math.ceil((decision.reset_at_ms - time.time() * 1000) / 1000), 1)
            headers["Retry-After"] = str(retry_after)
            logger.info("rate_limited", route_class=route_class, key=key, count=decision.count)
            raise APIError(
                ErrorCode.RATE_LIMITED,
                "Too many requests",
                extra={"retryAfter": retry_after},
                headers=headers,
            )

        response.headers.update(headers)

    return check_rate_limit


# ============================================================================
# Metered Features
# ============================================================================


def require_usage(feature: str) -> Callable[..., Awaitable[UsageDecision]]:
    """
    Dependency factory for metered feature routes: consumes one credit.

    401 without identity, 403 no_credits (with remaining) when denied.

    Usage:
        @router.post("/trainer/hands")
        async def deal(usage: UsageDecision = Depends(require_usage("trainer"))):
            ...
    """

    async def check_usage(
        user: UserIdentity = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ) -> UsageDecision:
        decision = await bounded(UsageGuard(db).check(user.user_id, feature), "usage_check")
        if not decision.allowed:
            raise APIError(
                ErrorCode.NO_CREDITS,
                "No free credits left. Upgrade to premium for unlimited use.",
                extra={"remaining": 0},
            )
        return decision

    return check_usage
