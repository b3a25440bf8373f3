"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
Column types are portable so the same schema runs on PostgreSQL and SQLite.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    TypeDecorator,
    Uuid,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """
    Timezone-aware UTC timestamp on every backend.

    SQLite drops tzinfo on the way in; values are normalised to UTC before
    binding and re-tagged as UTC when read back so comparisons against
    datetime.now(UTC) never mix naive and aware values.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class User(Base):
    """
    ORM model for users table.

    Holds identity plus the entitlement fields: the shared free-credit
    counter, the tier and its expiry.
    """

    __tablename__ = "users"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Identity fields
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    username: Mapped[str | None] = mapped_column(String(50), nullable=True, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Entitlement
    free_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    premium_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Analytics only
    total_uses: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("free_credits >= 0", name="ck_users_free_credits_non_negative"),
        CheckConstraint("total_uses >= 0", name="ck_users_total_uses_non_negative"),
        CheckConstraint("tier IN ('free', 'premium')", name="ck_users_tier"),
        Index("idx_users_tier_premium_until", "tier", "premium_until"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<User(id={self.id}, email={self.email}, tier={self.tier}, "
            f"free_credits={self.free_credits})>"
        )


class Payment(Base):
    """
    ORM model for payments table.

    One row per PIX payment request. Status only moves forward.
    """

    __tablename__ = "payments"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Owner
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Amount
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    payment_code: Mapped[str] = mapped_column(String(512), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    confirmed_by: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Set once the entitlement side effect has run for this payment
    premium_activated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_payments_amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'expired')", name="ck_payments_status"
        ),
        Index("idx_payments_status_created_at", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Payment(id={self.id}, user_id={self.user_id}, status={self.status}, "
            f"amount={self.amount_minor})>"
        )


class FraudRecord(Base):
    """
    ORM model for fraud_records table.

    Append-only registration trail, pruned after the retention window.
    """

    __tablename__ = "fraud_records"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    ip: Mapped[str] = mapped_column(String(64), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_fraud_records_ip_created_at", "ip", "created_at"),
        Index("idx_fraud_records_fingerprint", "fingerprint"),
        Index("idx_fraud_records_email", "email"),
        Index("idx_fraud_records_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<FraudRecord(ip={self.ip}, email={self.email}, created_at={self.created_at})>"
