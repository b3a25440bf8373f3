"""
Tests for EntitlementManager and the premium derivation.
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from app.models.api import Tier
from app.services.entitlements import EntitlementManager, is_premium_active, user_to_domain


def utc_now() -> datetime:
    return datetime.now(UTC)


class TestIsPremiumActive:
    """Premium is derived from tier + premium_until at a given instant."""

    def test_free_tier_never_premium(self):
        assert not is_premium_active("free", utc_now() + timedelta(days=1))

    def test_premium_in_future(self):
        assert is_premium_active("premium", utc_now() + timedelta(days=1))

    def test_premium_in_past(self):
        assert not is_premium_active("premium", utc_now() - timedelta(seconds=1))

    def test_premium_without_expiry(self):
        assert not is_premium_active("premium", None)

    def test_boundary_is_exclusive(self):
        """At exactly premium_until the user is already free."""
        now = utc_now()

        assert not is_premium_active("premium", now, now)
        assert is_premium_active("premium", now, now - timedelta(microseconds=1))


class TestGetEntitlement:
    async def test_free_user(self, session, make_user):
        user = await make_user(free_credits=3)

        ent = await EntitlementManager(session).get_entitlement(user.id)

        assert ent.tier == Tier.FREE
        assert ent.is_premium_now is False
        assert ent.free_credits == 3

    async def test_active_premium(self, session, make_user):
        until = utc_now() + timedelta(days=2)
        user = await make_user(tier="premium", premium_until=until)

        ent = await EntitlementManager(session).get_entitlement(user.id)

        assert ent.tier == Tier.PREMIUM
        assert ent.is_premium_now is True
        assert ent.premium_until == until

    async def test_lapsed_premium_reads_free_without_rewrite(self, session, make_user, load_user):
        """Expiry is lazy: the stored tier is left as-is."""
        user = await make_user(tier="premium", premium_until=utc_now() - timedelta(hours=1))

        ent = await EntitlementManager(session).get_entitlement(user.id)

        assert ent.is_premium_now is False
        assert (await load_user(user.id)).tier == "premium"

    async def test_evaluated_at_given_instant(self, session, make_user):
        until = utc_now() + timedelta(days=1)
        user = await make_user(tier="premium", premium_until=until)

        later = await EntitlementManager(session).get_entitlement(
            user.id, now=until + timedelta(seconds=1)
        )

        assert later.is_premium_now is False

    async def test_unknown_user(self, session):
        assert await EntitlementManager(session).get_entitlement(uuid4()) is None


class TestActivatePremium:
    async def test_sets_tier_and_expiry(self, session, make_user, load_user):
        user = await make_user(free_credits=2)
        now = utc_now()

        data = await EntitlementManager(session).activate_premium(user.id, 30, now=now)

        assert data.tier == Tier.PREMIUM
        assert data.is_premium_now is True
        assert data.premium_until == now + timedelta(days=30)
        stored = await load_user(user.id)
        assert stored.tier == "premium"
        # Counter is kept, just not consulted
        assert stored.free_credits == 2

    async def test_overwrites_rather_than_stacks(self, session, make_user):
        user = await make_user()
        manager = EntitlementManager(session)
        now = utc_now()

        await manager.activate_premium(user.id, 30, now=now)
        again = await manager.activate_premium(user.id, 30, now=now)

        assert again.premium_until == now + timedelta(days=30)

    async def test_reactivation_after_lapse(self, session, make_user):
        user = await make_user(tier="premium", premium_until=utc_now() - timedelta(days=3))
        now = utc_now()

        data = await EntitlementManager(session).activate_premium(user.id, 30, now=now)

        assert data.is_premium_now is True
        assert data.premium_until == now + timedelta(days=30)

    async def test_unknown_user(self, session):
        assert await EntitlementManager(session).activate_premium(uuid4(), 30) is None

    @pytest.mark.parametrize("days", [0, -1])
    async def test_rejects_non_positive_days(self, session, make_user, days):
        user = await make_user()

        with pytest.raises(ValueError, match="positive"):
            await EntitlementManager(session).activate_premium(user.id, days)


class TestUserToDomain:
    async def test_maps_fields(self, session, make_user):
        user = await make_user(email="ana@example.com", username="ana", free_credits=4)
        stored = await EntitlementManager(session).get_user(user.id)

        data = user_to_domain(stored)

        assert data.user_id == user.id
        assert data.email == "ana@example.com"
        assert data.username == "ana"
        assert data.free_credits == 4
        assert data.tier == Tier.FREE
        assert data.is_premium_now is False
