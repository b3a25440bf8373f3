"""
Tests for the /admin endpoints and the admin secret gate.
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from app.config import settings


def utc_now() -> datetime:
    return datetime.now(UTC)


class TestAdminAuth:
    async def test_missing_secret_is_401(self, client):
        response = await client.get("/admin/payments")

        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    async def test_wrong_secret_is_403(self, client):
        response = await client.get(
            "/admin/payments", headers={"Authorization": "Bearer not-the-secret"}
        )

        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    async def test_user_token_is_not_admin(self, client, make_user, auth_headers):
        user = await make_user()

        response = await client.get("/admin/payments", headers=auth_headers(user.id))

        assert response.status_code == 403

    async def test_unconfigured_secret_disables_admin(self, client, admin_headers, monkeypatch):
        monkeypatch.setattr(settings, "admin_secret", "")

        response = await client.get("/admin/payments", headers=admin_headers)

        assert response.status_code == 403


class TestListPayments:
    async def test_lists_with_total(self, client, admin_headers, make_user, make_payment):
        user = await make_user()
        payment = await make_payment(user.id)
        await make_payment(user.id, status="expired")

        response = await client.get(
            "/admin/payments", params={"status": "pending"}, headers=admin_headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        item = body["payments"][0]
        assert item["id"] == str(payment.id)
        assert item["userId"] == str(user.id)
        assert item["status"] == "pending"

    async def test_bad_status_is_400(self, client, admin_headers):
        response = await client.get(
            "/admin/payments", params={"status": "refunded"}, headers=admin_headers
        )

        assert response.status_code == 400


class TestForceConfirm:
    async def test_by_payment_id(self, client, admin_headers, make_user, make_payment, load_user):
        user = await make_user()
        payment = await make_payment(user.id)

        response = await client.post(
            "/admin/payments/force-confirm",
            json={"paymentId": str(payment.id)},
            headers=admin_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["payment"]["status"] == "completed"
        assert body["payment"]["confirmedBy"] == "admin"
        assert body["premiumUntil"] is not None
        assert (await load_user(user.id)).tier == "premium"

    async def test_by_user_id_confirms_latest_pending(
        self, client, admin_headers, make_user, make_payment, load_payment
    ):
        user = await make_user()
        base = utc_now() - timedelta(minutes=5)
        older = await make_payment(user.id, created_at=base)
        latest = await make_payment(user.id, created_at=base + timedelta(minutes=1))

        response = await client.post(
            "/admin/payments/force-confirm",
            json={"userId": str(user.id)},
            headers=admin_headers,
        )

        assert response.json()["payment"]["id"] == str(latest.id)
        assert (await load_payment(older.id)).status == "pending"

    async def test_by_user_id_without_payment_grants_premium(
        self, client, admin_headers, make_user, load_user
    ):
        user = await make_user()

        response = await client.post(
            "/admin/payments/force-confirm",
            json={"userId": str(user.id)},
            headers=admin_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["payment"] is None
        assert body["premiumUntil"] is not None
        assert (await load_user(user.id)).tier == "premium"

    async def test_requires_an_id(self, client, admin_headers):
        response = await client.post(
            "/admin/payments/force-confirm", json={}, headers=admin_headers
        )

        assert response.status_code == 400

    async def test_unknown_payment_is_404(self, client, admin_headers):
        response = await client.post(
            "/admin/payments/force-confirm",
            json={"paymentId": str(uuid4())},
            headers=admin_headers,
        )

        assert response.status_code == 404

    async def test_unknown_user_is_404(self, client, admin_headers):
        response = await client.post(
            "/admin/payments/force-confirm",
            json={"userId": str(uuid4())},
            headers=admin_headers,
        )

        assert response.status_code == 404

    async def test_expired_payment_is_400(self, client, admin_headers, make_user, make_payment):
        user = await make_user()
        payment = await make_payment(user.id, status="expired")

        response = await client.post(
            "/admin/payments/force-confirm",
            json={"paymentId": str(payment.id)},
            headers=admin_headers,
        )

        assert response.status_code == 400


class TestGrantCredits:
    async def test_grant(self, client, admin_headers, make_user):
        user = await make_user(free_credits=0)

        response = await client.post(
            f"/admin/users/{user.id}/credits", json={"amount": 3}, headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json() == {"userId": str(user.id), "freeCredits": 3}

    @pytest.mark.parametrize("amount", [0, -1, 10_001])
    async def test_out_of_range_is_400(self, client, admin_headers, make_user, amount):
        user = await make_user()

        response = await client.post(
            f"/admin/users/{user.id}/credits", json={"amount": amount}, headers=admin_headers
        )

        assert response.status_code == 400

    async def test_unknown_user_is_404(self, client, admin_headers):
        response = await client.post(
            f"/admin/users/{uuid4()}/credits", json={"amount": 1}, headers=admin_headers
        )

        assert response.status_code == 404


class TestFraudRecords:
    async def test_stats_and_clear(self, client, admin_headers):
        await client.post(
            "/auth/register",
            json={"email": "fraud@example.com", "password": "hunter22"},
        )

        stats = await client.get("/admin/fraud/stats", headers=admin_headers)
        cleared = await client.delete(
            "/admin/fraud/records", params={"email": "Fraud@Example.com"}, headers=admin_headers
        )

        assert stats.status_code == 200
        assert stats.json() == {"total": 1, "last24h": 1, "uniqueIps": 1, "uniqueFingerprints": 1}
        assert cleared.json() == {"email": "fraud@example.com", "removed": 1}
