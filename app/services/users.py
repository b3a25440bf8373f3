"""
User Service - Registration, password login and bearer tokens.

Only the identity boundary the entitlement core needs: who is calling.
Registration is gated by AntiFraudGuard and seeds the free-credit counter.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import User
from app.exceptions import EmailAlreadyRegisteredError
from app.models.api import Tier
from app.models.domain import FraudDecision, RegistrationResult, UserData
from app.observability import get_logger, metrics
from app.services.anti_fraud import AntiFraudGuard
from app.services.entitlements import user_to_domain

logger = get_logger(__name__)

JWT_ALGORITHM = "HS256"
RULE_USERNAME_TAKEN = "username_taken"

_password_hasher = PasswordHasher()


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def issue_token(user_id: UUID, now: datetime | None = None) -> str:
    """Signed HS256 token whose subject is the user id."""
    now = now or _utc_now()
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + timedelta(hours=settings.jwt_expire_hours),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> UUID | None:
    """User id carried by a valid token, or None."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.warning("jwt_token_expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning("jwt_token_invalid", error=str(e))
        return None

    subject = payload.get("sub")
    if not isinstance(subject, str):
        return None
    try:
        return UUID(subject)
    except ValueError:
        logger.warning("jwt_token_bad_subject")
        return None


class UserService:
    """Account creation and credential checks."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.fraud_guard = AntiFraudGuard(session)

    async def get_by_email(self, email: str) -> User | None:
        stmt = select(User).where(User.email == email.strip().lower())
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def register(
        self,
        email: str,
        password: str,
        ip: str,
        fingerprint: str,
        username: str | None = None,
        display_name: str | None = None,
    ) -> RegistrationResult:
        """
        Create an account with the configured free credits.

        Refusals come back as a FraudDecision. A concurrent registration of
        the same e-mail that slips past the admission check surfaces as
        EmailAlreadyRegisteredError from the unique constraint.
        """
        email = email.strip().lower()

        decision = await self.fraud_guard.can_register(ip, fingerprint, email)
        if not decision.allowed:
            metrics.registrations_total.labels(outcome=decision.rule or "blocked").inc()
            logger.info("registration_blocked", email=email, ip=ip, rule=decision.rule)
            return RegistrationResult(decision=decision)

        if username and await self._username_taken(username):
            metrics.registrations_total.labels(outcome=RULE_USERNAME_TAKEN).inc()
            return RegistrationResult(
                decision=FraudDecision(
                    allowed=False,
                    reason="Username already taken.",
                    rule=RULE_USERNAME_TAKEN,
                )
            )

        now = _utc_now()
        user = User(
            email=email,
            username=username,
            display_name=display_name,
            password_hash=_password_hasher.hash(password),
            free_credits=settings.free_credits_per_account,
            tier=Tier.FREE.value,
            total_uses=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(user)
        try:
            await self.session.flush()
            await self.fraud_guard.register(ip, fingerprint, email, now=now, commit=False)
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            logger.warning("registration_conflict", email=email, error=str(e.orig))
            raise EmailAlreadyRegisteredError(email) from e

        metrics.registrations_total.labels(outcome="created").inc()
        logger.info(
            "user_registered",
            user_id=str(user.id),
            free_credits=user.free_credits,
        )
        user_data = user_to_domain(user, now)
        return RegistrationResult(
            decision=decision,
            user=user_data,
            token=issue_token(user.id, now),
        )

    async def authenticate(self, email: str, password: str) -> UserData | None:
        """Verify e-mail + password. None on any mismatch."""
        user = await self.get_by_email(email)
        if user is None or not user.password_hash:
            return None

        try:
            _password_hasher.verify(user.password_hash, password)
        except VerifyMismatchError:
            logger.info("login_password_mismatch", user_id=str(user.id))
            return None
        except (InvalidHashError, VerificationError):
            logger.warning("login_hash_invalid", user_id=str(user.id))
            return None

        if _password_hasher.check_needs_rehash(user.password_hash):
            user.password_hash = _password_hasher.hash(password)
            await self.session.commit()

        return user_to_domain(user)

    async def _username_taken(self, username: str) -> bool:
        hit = await self.session.scalar(select(User.id).where(User.username == username).limit(1))
        return hit is not None
