"""
Anti-Fraud Guard - Registration admission for duplicate-account detection.

Records are only consulted when a new account is created; they never feed
entitlement decisions. Rules are evaluated in order and the first violation
wins.
"""

import hashlib
import json
import math
import re
from datetime import UTC, datetime, timedelta

from fastapi import Request
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import FraudRecord, User
from app.models.api import DeviceInfo
from app.models.domain import FraudDecision, FraudStats
from app.observability import get_logger

logger = get_logger(__name__)

DISPOSABLE_EMAIL_DOMAINS = frozenset(
    {
        "tempmail.com",
        "guerrillamail.com",
        "10minutemail.com",
        "throwaway.email",
        "mailinator.com",
        "trashmail.com",
        "fakeinbox.com",
        "yopmail.com",
        "getnada.com",
        "temp-mail.org",
        "maildrop.cc",
        "sharklasers.com",
        "guerrillamail.info",
        "guerrillamail.biz",
        "guerrillamail.de",
        "spam4.me",
        "grr.la",
        "guerrillamail.net",
        "guerrillamail.org",
        "mailnesia.com",
        "mintemail.com",
        "mytemp.email",
        "mohmal.com",
        "emailondeck.com",
    }
)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Rule identifiers, also used as the registrations_total outcome label
RULE_INVALID_EMAIL = "invalid_email"
RULE_DISPOSABLE_EMAIL = "disposable_email"
RULE_EMAIL_TAKEN = "email_taken"
RULE_IP_COOLDOWN = "ip_cooldown"
RULE_DEVICE_LIMIT = "device_limit"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email))


def is_disposable_email(email: str) -> bool:
    """True for throwaway providers, including their subdomains."""
    _, _, domain = email.rpartition("@")
    domain = domain.lower()
    if not domain:
        return False
    return any(domain == d or domain.endswith("." + d) for d in DISPOSABLE_EMAIL_DOMAINS)


def fingerprint_from_headers(
    user_agent: str | None,
    accept_language: str | None,
    device_info: DeviceInfo | None = None,
) -> str:
    """
    SHA-256 hex over the canonical JSON of the device traits.

    Key order and compact separators are fixed so the same device always
    hashes to the same value.
    """
    info = device_info or DeviceInfo()
    data = {
        "userAgent": user_agent or "",
        "acceptLanguage": accept_language or "",
        "screenResolution": info.screen_resolution or "",
        "timezone": info.timezone or "",
        "canvas": info.canvas or "",
        "webgl": info.webgl or "",
    }
    canonical = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def client_ip(request: Request) -> str:
    """Caller IP, honouring X-Forwarded-For then X-Real-IP behind a proxy."""
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class AntiFraudGuard:
    """Duplicate-account heuristics over IP, device fingerprint and e-mail."""

    def __init__(
        self,
        session: AsyncSession,
        ip_cooldown_hours: int | None = None,
        max_accounts_per_fingerprint: int | None = None,
        retention_days: int | None = None,
    ) -> None:
        self.session = session
        self.ip_cooldown = timedelta(
            hours=ip_cooldown_hours
            if ip_cooldown_hours is not None
            else settings.fraud_ip_cooldown_hours
        )
        self.max_accounts_per_fingerprint = (
            max_accounts_per_fingerprint
            if max_accounts_per_fingerprint is not None
            else settings.fraud_max_accounts_per_fingerprint
        )
        self.retention = timedelta(
            days=retention_days if retention_days is not None else settings.fraud_retention_days
        )

    async def can_register(
        self,
        ip: str,
        fingerprint: str,
        email: str,
        now: datetime | None = None,
    ) -> FraudDecision:
        """Admission check. Does not write anything."""
        now = now or _utc_now()
        email = email.strip().lower()

        if not is_valid_email(email):
            return FraudDecision(
                allowed=False,
                reason="Invalid e-mail address.",
                rule=RULE_INVALID_EMAIL,
            )

        if settings.fraud_block_disposable_emails and is_disposable_email(email):
            return FraudDecision(
                allowed=False,
                reason="Temporary e-mail providers are not allowed. Use a permanent address.",
                rule=RULE_DISPOSABLE_EMAIL,
            )

        if await self._email_known(email):
            return FraudDecision(
                allowed=False,
                reason="This e-mail is already registered. Log in instead.",
                rule=RULE_EMAIL_TAKEN,
            )

        last_from_ip = await self._latest_from_ip(ip)
        if last_from_ip is not None:
            elapsed = now - last_from_ip
            if elapsed < self.ip_cooldown:
                wait_hours = math.ceil((self.ip_cooldown - elapsed).total_seconds() / 3600)
                return FraudDecision(
                    allowed=False,
                    reason=f"An account was created from this address recently. Try again in {wait_hours}h.",
                    rule=RULE_IP_COOLDOWN,
                    wait_hours=wait_hours,
                )

        fingerprint_count = await self._count_fingerprint(fingerprint)
        if fingerprint_count >= self.max_accounts_per_fingerprint:
            return FraudDecision(
                allowed=False,
                reason="Account limit reached for this device. Log in to your existing account.",
                rule=RULE_DEVICE_LIMIT,
            )

        return FraudDecision(allowed=True)

    async def register(
        self,
        ip: str,
        fingerprint: str,
        email: str,
        now: datetime | None = None,
        commit: bool = True,
    ) -> None:
        """Append a record, then prune records past retention."""
        now = now or _utc_now()
        self.session.add(
            FraudRecord(ip=ip, fingerprint=fingerprint, email=email.strip().lower(), created_at=now)
        )
        await self.session.flush()
        await self._delete_older_than(now - self.retention)
        if commit:
            await self.session.commit()

    async def prune(self, now: datetime | None = None) -> int:
        """Maintenance pass: delete records past retention. Returns the count."""
        now = now or _utc_now()
        removed = await self._delete_older_than(now - self.retention)
        await self.session.commit()
        if removed:
            logger.info("fraud_records_pruned", count=removed)
        return removed

    async def clear(self, email: str) -> int:
        """Administrative removal of an e-mail's records."""
        stmt = delete(FraudRecord).where(FraudRecord.email == email.strip().lower())
        result = await self.session.execute(stmt)
        await self.session.commit()
        removed = int(result.rowcount or 0)  # type: ignore[attr-defined]
        logger.info("fraud_records_cleared", email=email, count=removed)
        return removed

    async def stats(self, now: datetime | None = None) -> FraudStats:
        now = now or _utc_now()
        total = await self.session.scalar(select(func.count()).select_from(FraudRecord))
        last_24h = await self.session.scalar(
            select(func.count())
            .select_from(FraudRecord)
            .where(FraudRecord.created_at > now - timedelta(hours=24))
        )
        unique_ips = await self.session.scalar(select(func.count(func.distinct(FraudRecord.ip))))
        unique_fingerprints = await self.session.scalar(
            select(func.count(func.distinct(FraudRecord.fingerprint)))
        )
        return FraudStats(
            total=int(total or 0),
            last_24h=int(last_24h or 0),
            unique_ips=int(unique_ips or 0),
            unique_fingerprints=int(unique_fingerprints or 0),
        )

    async def _email_known(self, email: str) -> bool:
        user_hit = await self.session.scalar(select(User.id).where(User.email == email).limit(1))
        if user_hit is not None:
            return True
        record_hit = await self.session.scalar(
            select(FraudRecord.id).where(FraudRecord.email == email).limit(1)
        )
        return record_hit is not None

    async def _latest_from_ip(self, ip: str) -> datetime | None:
        return await self.session.scalar(
            select(func.max(FraudRecord.created_at)).where(FraudRecord.ip == ip)
        )

    async def _count_fingerprint(self, fingerprint: str) -> int:
        count = await self.session.scalar(
            select(func.count())
            .select_from(FraudRecord)
            .where(FraudRecord.fingerprint == fingerprint)
        )
        return int(count or 0)

    async def _delete_older_than(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(FraudRecord).where(FraudRecord.created_at < cutoff)
        )
        return int(result.rowcount or 0)  # type: ignore[attr-defined]
