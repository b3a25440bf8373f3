"""
Tests for AntiFraudGuard and its helpers.
"""

import hashlib
import json
from datetime import UTC, datetime, timedelta

import pytest
from starlette.requests import Request

from app.models.api import DeviceInfo
from app.services.anti_fraud import (
    RULE_DEVICE_LIMIT,
    RULE_DISPOSABLE_EMAIL,
    RULE_EMAIL_TAKEN,
    RULE_INVALID_EMAIL,
    RULE_IP_COOLDOWN,
    AntiFraudGuard,
    client_ip,
    fingerprint_from_headers,
    is_disposable_email,
    is_valid_email,
)

FP = "f" * 64


def utc_now() -> datetime:
    return datetime.now(UTC)


def make_request(headers: dict[str, str] | None = None, host: str | None = "10.0.0.9") -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/auth/register",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": (host, 50000) if host else None,
    }
    return Request(scope)


class TestEmailHelpers:
    @pytest.mark.parametrize("email", ["ana@example.com", "a.b+c@sub.example.com.br"])
    def test_valid(self, email):
        assert is_valid_email(email)

    @pytest.mark.parametrize("email", ["", "no-at-sign", "a@b", "a b@example.com", "@example.com"])
    def test_invalid(self, email):
        assert not is_valid_email(email)

    @pytest.mark.parametrize(
        "email", ["x@mailinator.com", "x@YOPMAIL.COM", "x@inbox.guerrillamail.com"]
    )
    def test_disposable(self, email):
        assert is_disposable_email(email)

    @pytest.mark.parametrize("email", ["x@gmail.com", "x@notmailinator.com", "no-domain@"])
    def test_not_disposable(self, email):
        assert not is_disposable_email(email)


class TestFingerprint:
    def test_deterministic(self):
        info = DeviceInfo(screen_resolution="1920x1080", timezone="America/Sao_Paulo")

        first = fingerprint_from_headers("Mozilla/5.0", "pt-BR", info)
        second = fingerprint_from_headers("Mozilla/5.0", "pt-BR", info)

        assert first == second
        assert len(first) == 64

    def test_canonical_json(self):
        expected = hashlib.sha256(
            json.dumps(
                {
                    "userAgent": "UA",
                    "acceptLanguage": "pt-BR",
                    "screenResolution": "",
                    "timezone": "",
                    "canvas": "",
                    "webgl": "",
                },
                separators=(",", ":"),
            ).encode()
        ).hexdigest()

        assert fingerprint_from_headers("UA", "pt-BR") == expected

    def test_missing_headers_hash_as_empty(self):
        assert fingerprint_from_headers(None, None) == fingerprint_from_headers("", "")

    def test_device_traits_change_hash(self):
        base = fingerprint_from_headers("UA", "pt-BR")

        assert fingerprint_from_headers("UA", "pt-BR", DeviceInfo(canvas="abc")) != base
        assert fingerprint_from_headers("UA", "en-US") != base


class TestClientIp:
    @pytest.mark.usefixtures("behind_proxy")
    def test_forwarded_for_first_entry(self):
        request = make_request({"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})

        assert client_ip(request) == "203.0.113.5"

    @pytest.mark.usefixtures("behind_proxy")
    def test_real_ip(self):
        assert client_ip(make_request({"X-Real-IP": " 198.51.100.7 "})) == "198.51.100.7"

    def test_socket_peer(self):
        assert client_ip(make_request()) == "10.0.0.9"

    def test_unknown_without_peer(self):
        assert client_ip(make_request(host=None)) == "unknown"

    def test_forwarded_ignored_by_default(self):
        request = make_request({"X-Forwarded-For": "203.0.113.5", "X-Real-IP": "198.51.100.7"})

        assert client_ip(request) == "10.0.0.9"


class TestCanRegister:
    """Rules are evaluated in order; the first violation wins."""

    async def test_clean_registration_allowed(self, session):
        decision = await AntiFraudGuard(session).can_register("1.1.1.1", FP, "new@example.com")

        assert decision.allowed is True
        assert decision.rule is None

    async def test_invalid_email_first(self, session):
        await AntiFraudGuard(session).register("1.1.1.1", FP, "old@example.com")

        # Would also trip the IP cooldown; the e-mail rule is reported
        decision = await AntiFraudGuard(session).can_register("1.1.1.1", FP, "not-an-email")

        assert decision.rule == RULE_INVALID_EMAIL

    async def test_disposable_email(self, session):
        decision = await AntiFraudGuard(session).can_register("1.1.1.1", FP, "x@mailinator.com")

        assert decision.allowed is False
        assert decision.rule == RULE_DISPOSABLE_EMAIL

    async def test_disposable_allowed_when_disabled(self, session, monkeypatch):
        from app.config import settings

        monkeypatch.setattr(settings, "fraud_block_disposable_emails", False)

        decision = await AntiFraudGuard(session).can_register("1.1.1.1", FP, "x@mailinator.com")

        assert decision.allowed is True

    async def test_email_taken_by_user(self, session, make_user):
        await make_user(email="taken@example.com")

        decision = await AntiFraudGuard(session).can_register("2.2.2.2", FP, "Taken@Example.com")

        assert decision.rule == RULE_EMAIL_TAKEN

    async def test_email_taken_by_record(self, session):
        guard = AntiFraudGuard(session)
        await guard.register("3.3.3.3", "a" * 64, "seen@example.com", now=utc_now() - timedelta(days=2))

        decision = await guard.can_register("4.4.4.4", FP, "seen@example.com")

        assert decision.rule == RULE_EMAIL_TAKEN

    async def test_ip_cooldown_with_wait_hours(self, session):
        guard = AntiFraudGuard(session, ip_cooldown_hours=24)
        now = utc_now()
        await guard.register("5.5.5.5", "b" * 64, "first@example.com", now=now - timedelta(hours=1))

        decision = await guard.can_register("5.5.5.5", FP, "second@example.com", now=now)

        assert decision.allowed is False
        assert decision.rule == RULE_IP_COOLDOWN
        assert decision.wait_hours == 23

    async def test_wait_hours_rounds_up(self, session):
        guard = AntiFraudGuard(session, ip_cooldown_hours=24)
        now = utc_now()
        await guard.register(
            "5.5.5.5", "b" * 64, "first@example.com", now=now - timedelta(hours=23, minutes=59)
        )

        decision = await guard.can_register("5.5.5.5", FP, "second@example.com", now=now)

        assert decision.wait_hours == 1

    async def test_ip_cooldown_elapsed(self, session):
        guard = AntiFraudGuard(session, ip_cooldown_hours=24)
        now = utc_now()
        await guard.register("6.6.6.6", "c" * 64, "first@example.com", now=now - timedelta(hours=25))

        decision = await guard.can_register("6.6.6.6", FP, "second@example.com", now=now)

        assert decision.allowed is True

    async def test_device_limit(self, session):
        guard = AntiFraudGuard(session, ip_cooldown_hours=1, max_accounts_per_fingerprint=2)
        old = utc_now() - timedelta(days=1)
        await guard.register("7.7.7.1", FP, "one@example.com", now=old)
        await guard.register("7.7.7.2", FP, "two@example.com", now=old)

        decision = await guard.can_register("7.7.7.3", FP, "three@example.com")

        assert decision.allowed is False
        assert decision.rule == RULE_DEVICE_LIMIT

    async def test_device_below_limit(self, session):
        guard = AntiFraudGuard(session, ip_cooldown_hours=1, max_accounts_per_fingerprint=2)
        await guard.register("8.8.8.1", FP, "one@example.com", now=utc_now() - timedelta(days=1))

        decision = await guard.can_register("8.8.8.2", FP, "two@example.com")

        assert decision.allowed is True

    async def test_can_register_writes_nothing(self, session):
        guard = AntiFraudGuard(session)

        await guard.can_register("9.9.9.9", FP, "look@example.com")

        assert (await guard.stats()).total == 0


class TestRecords:
    async def test_register_prunes_past_retention(self, session):
        guard = AntiFraudGuard(session, retention_days=30)
        now = utc_now()
        await guard.register("1.0.0.1", FP, "ancient@example.com", now=now - timedelta(days=31))

        await guard.register("1.0.0.2", FP, "fresh@example.com", now=now)

        assert (await guard.stats(now=now)).total == 1

    async def test_prune(self, session):
        guard = AntiFraudGuard(session, retention_days=30)
        now = utc_now()
        await guard.register("1.0.0.1", FP, "old@example.com", now=now - timedelta(days=40))
        await guard.register("1.0.0.2", FP, "mid@example.com", now=now - timedelta(days=20))

        assert await guard.prune(now=now) == 1
        assert await guard.prune(now=now + timedelta(days=15)) == 1
        assert (await guard.stats()).total == 0

    async def test_clear(self, session):
        guard = AntiFraudGuard(session)
        await guard.register("1.0.0.1", FP, "clear@example.com")

        removed = await guard.clear("CLEAR@example.com")

        assert removed == 1
        assert (await guard.can_register("1.0.0.9", "d" * 64, "clear@example.com")).allowed

    async def test_stats(self, session):
        guard = AntiFraudGuard(session)
        now = utc_now()
        await guard.register("1.0.0.1", "a" * 64, "a@example.com", now=now - timedelta(days=2))
        await guard.register("1.0.0.1", "b" * 64, "b@example.com", now=now - timedelta(hours=1))
        await guard.register("1.0.0.2", "b" * 64, "c@example.com", now=now)

        stats = await guard.stats(now=now)

        assert stats.total == 3
        assert stats.last_24h == 2
        assert stats.unique_ips == 2
        assert stats.unique_fingerprints == 2
