"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from app.models.api import ConfirmationSource, PaymentStatus, Tier

# Sentinel used on the wire for "unlimited" remaining credits
UNLIMITED = -1


@dataclass(frozen=True)
class UserData:
    """Immutable user account snapshot."""

    user_id: UUID
    email: str
    username: str | None
    display_name: str | None
    tier: Tier
    premium_until: datetime | None
    free_credits: int
    total_uses: int
    created_at: datetime
    is_premium_now: bool


@dataclass(frozen=True)
class EntitlementData:
    """Entitlement derived at a single instant."""

    user_id: UUID
    tier: Tier
    premium_until: datetime | None
    is_premium_now: bool
    free_credits: int


@dataclass(frozen=True)
class DeductResult:
    """Outcome of CreditLedger.deduct - never raised, always returned."""

    allowed: bool
    remaining: int
    is_premium: bool
    reason: str | None = None

    def __post_init__(self) -> None:
        """Validate remaining is either a count or the unlimited sentinel."""
        if self.remaining < UNLIMITED:
            raise ValueError(f"Remaining cannot be below {UNLIMITED}: {self.remaining}")


@dataclass(frozen=True)
class UsageSnapshot:
    """Read-only credit view returned by CreditLedger.peek."""

    found: bool
    allowed: bool
    remaining: int
    is_premium: bool
    limit: int
    premium_until: datetime | None = None


@dataclass(frozen=True)
class PaymentData:
    """Immutable payment request snapshot."""

    payment_id: UUID
    user_id: UUID
    amount_minor: int
    currency: str
    status: PaymentStatus
    payment_code: str
    created_at: datetime
    expires_at: datetime
    confirmed_at: datetime | None
    confirmed_by: ConfirmationSource | None
    premium_activated_at: datetime | None

    def __post_init__(self) -> None:
        """Validate payment constraints."""
        if self.amount_minor <= 0:
            raise ValueError(f"Payment amount must be positive: {self.amount_minor}")
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be after created_at")


@dataclass(frozen=True)
class CreatePaymentResult:
    """Outcome of PaymentGateway.create."""

    payment: PaymentData | None
    reason: str | None = None


@dataclass(frozen=True)
class ConfirmResult:
    """Outcome of PaymentGateway.confirm.

    transitioned is True only for the call that moved pending -> completed.
    """

    payment: PaymentData
    transitioned: bool
    premium_activated: bool = False


@dataclass(frozen=True)
class FraudDecision:
    """Registration admission verdict."""

    allowed: bool
    reason: str | None = None
    rule: str | None = None
    wait_hours: int | None = None


@dataclass(frozen=True)
class FraudStats:
    """Aggregate view over retained fraud records."""

    total: int
    last_24h: int
    unique_ips: int
    unique_fingerprints: int


@dataclass(frozen=True)
class RateDecision:
    """Result of RateLimiter.allow; truthy when the call is permitted."""

    allowed: bool
    count: int
    limit: int
    reset_at_ms: int
    backend: str

    def __bool__(self) -> bool:
        return self.allowed

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)


@dataclass(frozen=True)
class TickResult:
    """Summary of one auto-confirmation scan."""

    scanned: int
    confirmed: int
    skipped: int
    failed: int


@dataclass(frozen=True)
class UsageStatus:
    """Aggregate usage view for GET /usage/status."""

    is_premium: bool
    free_credits: int
    free_credits_limit: int
    blocked: bool
    premium_until: datetime | None


@dataclass(frozen=True)
class RegistrationResult:
    """Outcome of UserService.register; user is None when admission was refused."""

    decision: FraudDecision
    user: UserData | None = None
    token: str | None = None


@dataclass(frozen=True)
class UsageDecision:
    """Whether a metered call may proceed (UsageGuard.check)."""

    allowed: bool
    remaining: int
    is_premium: bool
    found: bool = True
    reason: str | None = None
