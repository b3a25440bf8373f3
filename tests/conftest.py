"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- A real SQLite database per test (aiosqlite), so conditional UPDATEs keep
  their atomic semantics under concurrency
- Session factories and pre-built users/payments
- API test client with the database dependency overridden
- Bearer-token helpers for users and the admin secret
"""

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import UUID, uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

# Set required environment variables BEFORE importing app modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-jwt-signing-min-32-chars")
os.environ.setdefault("ADMIN_SECRET", "test-admin-secret")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("PIX_AUTO_CONFIRM_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "console")

from app.db.models import Base, Payment, User
from app.db.session import get_db
from app.main import app
from app.services.pix import build_br_code, txid_for
from app.services.rate_limiter import RateLimiter, set_rate_limiter
from app.services.users import issue_token

ADMIN_SECRET = os.environ["ADMIN_SECRET"]


def utc_now() -> datetime:
    return datetime.now(UTC)


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "entitlements.db"


@pytest.fixture
async def engine(db_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with the schema created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as s:
        yield s


# ============================================================================
# Data Fixtures
# ============================================================================


MakeUser = Callable[..., Awaitable[User]]
MakePayment = Callable[..., Awaitable[Payment]]


@pytest.fixture
def make_user(session_factory: async_sessionmaker[AsyncSession]) -> MakeUser:
    """Factory inserting a user in its own session."""

    async def _make(
        email: str | None = None,
        free_credits: int = 7,
        tier: str = "free",
        premium_until: datetime | None = None,
        username: str | None = None,
    ) -> User:
        now = utc_now()
        user = User(
            id=uuid4(),
            email=email or f"player-{uuid4().hex[:8]}@example.com",
            username=username,
            free_credits=free_credits,
            tier=tier,
            premium_until=premium_until,
            total_uses=0,
            created_at=now,
            updated_at=now,
        )
        async with session_factory() as s:
            s.add(user)
            await s.commit()
        return user

    return _make


@pytest.fixture
def make_payment(session_factory: async_sessionmaker[AsyncSession]) -> MakePayment:
    """Factory inserting a payment row directly (any status, any age)."""

    async def _make(
        user_id: UUID,
        status: str = "pending",
        created_at: datetime | None = None,
        expires_in: timedelta = timedelta(minutes=30),
        confirmed_at: datetime | None = None,
        confirmed_by: str | None = None,
        premium_activated_at: datetime | None = None,
        amount_minor: int = 590,
    ) -> Payment:
        created_at = created_at or utc_now()
        payment_id = uuid4()
        payment = Payment(
            id=payment_id,
            user_id=user_id,
            amount_minor=amount_minor,
            currency="BRL",
            status=status,
            payment_code=build_br_code(
                pix_key="ae927522-3cf8-44b1-9e65-1797ca2ce670",
                amount_minor=amount_minor,
                merchant_name="POKERWIZARD",
                merchant_city="SAO PAULO",
                txid=txid_for(payment_id),
            ),
            created_at=created_at,
            expires_at=created_at + expires_in,
            confirmed_at=confirmed_at,
            confirmed_by=confirmed_by,
            premium_activated_at=premium_activated_at,
        )
        async with session_factory() as s:
            s.add(payment)
            await s.commit()
        return payment

    return _make


@pytest.fixture
def load_user(session_factory: async_sessionmaker[AsyncSession]) -> Callable[[UUID], Awaitable[User | None]]:
    """Fresh read of a user, bypassing any test session state."""

    async def _load(user_id: UUID) -> User | None:
        async with session_factory() as s:
            return await s.get(User, user_id)

    return _load


@pytest.fixture
def load_payment(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[UUID], Awaitable[Payment | None]]:
    async def _load(payment_id: UUID) -> Payment | None:
        async with session_factory() as s:
            return await s.get(Payment, payment_id)

    return _load


# ============================================================================
# API Client Fixtures
# ============================================================================


@pytest.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, wired to the per-test database."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_db] = override_get_db
    set_rate_limiter(RateLimiter())

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    set_rate_limiter(None)


@pytest.fixture
def auth_headers() -> Callable[[UUID], dict[str, str]]:
    """Build an Authorization header carrying a fresh token for a user."""

    def _headers(user_id: UUID) -> dict[str, str]:
        return {"Authorization": f"Bearer {issue_token(user_id)}"}

    return _headers


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_SECRET}"}


@pytest.fixture
def behind_proxy(monkeypatch: pytest.MonkeyPatch) -> None:
    """Trust X-Forwarded-For, as when deployed behind a reverse proxy."""
    from app.config import settings

    monkeypatch.setattr(settings, "trust_forwarded_for", True)
