"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Wire format is camelCase; Python attributes stay snake_case.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class Tier(str, Enum):
    """Access tier of a user account."""

    FREE = "free"
    PREMIUM = "premium"


class PaymentStatus(str, Enum):
    """Payment lifecycle. Transitions only pending -> completed | expired."""

    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class ConfirmationSource(str, Enum):
    """Who moved a payment to completed."""

    MANUAL = "manual"
    WEBHOOK = "webhook"
    ADMIN = "admin"
    SCHEDULER = "scheduler"
    REPAIR = "repair"


class Feature(str, Enum):
    """Metered features sharing the single free-credit counter."""

    TRAINER = "trainer"
    ANALYSIS = "analysis"
    PLAYERS = "players"
    AI = "ai"


class CamelModel(BaseModel):
    """Base model serialising to camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Auth Models
# ============================================================================


class DeviceInfo(CamelModel):
    """Client-reported device traits folded into the registration fingerprint."""

    screen_resolution: str | None = Field(None, max_length=50)
    timezone: str | None = Field(None, max_length=100)
    canvas: str | None = Field(None, max_length=512)
    webgl: str | None = Field(None, max_length=512)


class RegisterRequest(CamelModel):
    """POST /auth/register request body."""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=6, max_length=256)
    username: str | None = Field(None, min_length=2, max_length=50)
    name: str | None = Field(None, max_length=255)
    device_info: DeviceInfo | None = None

    @field_validator("email")
    @classmethod
    def normalise_email(cls, v: str) -> str:
        """Emails are compared case-insensitively."""
        return v.strip().lower()


class LoginRequest(CamelModel):
    """POST /auth/login request body."""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=256)

    @field_validator("email")
    @classmethod
    def normalise_email(cls, v: str) -> str:
        return v.strip().lower()


class UserResponse(CamelModel):
    """Public view of a user account and its entitlement."""

    id: UUID
    email: str
    username: str | None = None
    name: str | None = None
    tier: Tier
    is_premium: bool
    premium_until: datetime | None = None
    free_credits: int


class AuthResponse(CamelModel):
    """Token plus the user it was issued for."""

    token: str
    user: UserResponse


# ============================================================================
# Credit / Usage Models
# ============================================================================


class ConsumeRequest(CamelModel):
    """POST /credits/consume request body."""

    feature: Feature


class ConsumeResponse(CamelModel):
    """Outcome of a credit deduction (remaining is -1 for premium)."""

    allowed: bool
    remaining: int
    is_premium: bool = False


class UsageStatusResponse(CamelModel):
    """GET /usage/status response."""

    is_premium: bool
    free_credits: int
    free_credits_limit: int
    blocked: bool
    premium_until: datetime | None = None


# ============================================================================
# Payment Models
# ============================================================================


class CreatePaymentResponse(CamelModel):
    """POST /payments response."""

    id: UUID
    amount: int
    currency: str
    payment_code: str
    expires_in: int
    status: PaymentStatus


class PaymentResponse(CamelModel):
    """GET /payments/{id} response."""

    id: UUID
    status: PaymentStatus
    amount: int
    created_at: datetime
    expires_at: datetime
    confirmed_at: datetime | None = None


class ConfirmPaymentResponse(PaymentResponse):
    """POST /payments/{id}/confirm response."""

    is_premium: bool
    premium_until: datetime | None = None


class WebhookRequest(CamelModel):
    """POST /payments/webhook body (simulated payment-network callback)."""

    payment_id: UUID
    status: PaymentStatus | None = None


class WebhookResponse(CamelModel):
    """Webhook acknowledgement."""

    ok: bool = True
    payment: PaymentResponse


# ============================================================================
# Admin Models
# ============================================================================


class AdminPaymentItem(PaymentResponse):
    """Payment row as shown to administrators."""

    user_id: UUID
    confirmed_by: str | None = None
    premium_activated_at: datetime | None = None


class AdminPaymentListResponse(CamelModel):
    """GET /admin/payments response."""

    payments: list[AdminPaymentItem]
    total: int


class ForceConfirmRequest(CamelModel):
    """POST /admin/payments/force-confirm body; at least one id is required."""

    payment_id: UUID | None = None
    user_id: UUID | None = None


class ForceConfirmResponse(CamelModel):
    """Result of an administrative confirmation."""

    user_id: UUID
    payment: AdminPaymentItem | None = None
    premium_until: datetime | None = None


class GrantCreditsRequest(CamelModel):
    """POST /admin/users/{id}/credits body."""

    amount: int = Field(..., gt=0, le=10_000)


class GrantCreditsResponse(CamelModel):
    """Free credits after an administrative grant."""

    user_id: UUID
    free_credits: int


class FraudStatsResponse(CamelModel):
    """GET /admin/fraud/stats response."""

    total: int
    last_24h: int = Field(..., alias="last24h")
    unique_ips: int
    unique_fingerprints: int


class FraudClearResponse(CamelModel):
    """DELETE /admin/fraud/records response."""

    email: str
    removed: int


# ============================================================================
# Health Models
# ============================================================================


class AutoConfirmConfig(CamelModel):
    """Auto-confirmation timings exposed for client polling budgets."""

    enabled: bool
    interval_ms: int
    threshold_ms: int


class HealthResponse(CamelModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: datetime
    version: str
    auto_confirm: AutoConfirmConfig
    rate_limit_backend: str
