"""
Tests for AutoConfirmationScheduler.

Ticks are driven directly with an explicit `now`; the APScheduler wiring is
checked separately with start()/shutdown().
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

from app.models.api import ConfirmationSource, Tier
from app.services.payments import PaymentGateway
from app.services.scheduler import (
    AUTO_CONFIRM_JOB_ID,
    MAINTENANCE_JOB_ID,
    AutoConfirmationScheduler,
)

THRESHOLD_MS = 10_000


def utc_now() -> datetime:
    return datetime.now(UTC)


def make_scheduler(session_factory, enabled: bool = True) -> AutoConfirmationScheduler:
    return AutoConfirmationScheduler(
        session_factory, interval_ms=1000, threshold_ms=THRESHOLD_MS, enabled=enabled
    )


class TestTick:
    """One auto-confirmation scan."""

    async def test_confirms_payment_older_than_threshold(
        self, session_factory, make_user, make_payment, load_payment, load_user
    ):
        user = await make_user(free_credits=0)
        now = utc_now()
        payment = await make_payment(user.id, created_at=now - timedelta(seconds=11))

        result = await make_scheduler(session_factory).tick(now=now)

        assert result.scanned == 1
        assert result.confirmed == 1
        assert result.failed == 0
        stored = await load_payment(payment.id)
        assert stored.status == "completed"
        assert stored.confirmed_by == ConfirmationSource.SCHEDULER.value
        assert stored.premium_activated_at is not None
        account = await load_user(user.id)
        assert account.tier == Tier.PREMIUM.value
        assert account.premium_until == now + timedelta(days=30)

    async def test_young_payment_untouched(self, session_factory, make_user, make_payment, load_payment):
        user = await make_user()
        now = utc_now()
        payment = await make_payment(user.id, created_at=now - timedelta(seconds=5))

        result = await make_scheduler(session_factory).tick(now=now)

        assert result.scanned == 0
        assert (await load_payment(payment.id)).status == "pending"

    async def test_expired_payment_never_confirmed(
        self, session_factory, make_user, make_payment, load_payment
    ):
        user = await make_user()
        now = utc_now()
        overdue = await make_payment(
            user.id, created_at=now - timedelta(hours=1), expires_in=timedelta(minutes=30)
        )
        terminal = await make_payment(
            user.id, status="expired", created_at=now - timedelta(minutes=1)
        )

        result = await make_scheduler(session_factory).tick(now=now)

        assert result.scanned == 0
        assert (await load_payment(overdue.id)).status == "pending"
        assert (await load_payment(terminal.id)).status == "expired"

    async def test_claimed_payment_skipped(self, session_factory, make_user, make_payment, load_payment):
        """A payment held by an in-flight tick is not processed twice."""
        user = await make_user()
        now = utc_now()
        payment = await make_payment(user.id, created_at=now - timedelta(minutes=1))
        scheduler = make_scheduler(session_factory)
        scheduler._claimed.add(payment.id)

        result = await scheduler.tick(now=now)

        assert result.scanned == 1
        assert result.skipped == 1
        assert result.confirmed == 0
        assert (await load_payment(payment.id)).status == "pending"

    async def test_already_confirmed_between_scan_and_confirm(
        self, session_factory, make_user, make_payment
    ):
        """A payment confirmed by another path counts as skipped."""
        user = await make_user()
        now = utc_now()
        await make_payment(user.id, created_at=now - timedelta(minutes=1))

        original = PaymentGateway.confirm_and_activate

        async def confirm_first(self, payment_id, source, now=None):
            await original(self, payment_id, ConfirmationSource.WEBHOOK, now=now)
            return await original(self, payment_id, source, now=now)

        with patch.object(PaymentGateway, "confirm_and_activate", confirm_first):
            result = await make_scheduler(session_factory).tick(now=now)

        assert result.confirmed == 0
        assert result.skipped == 1
        assert result.failed == 0

    async def test_failure_does_not_stop_the_batch(
        self, session_factory, make_user, make_payment, load_payment
    ):
        user_a = await make_user()
        user_b = await make_user()
        now = utc_now()
        broken = await make_payment(user_a.id, created_at=now - timedelta(minutes=2))
        healthy = await make_payment(user_b.id, created_at=now - timedelta(minutes=1))

        original = PaymentGateway.confirm_and_activate

        async def flaky(self, payment_id, source, now=None):
            if payment_id == broken.id:
                raise RuntimeError("store hiccup")
            return await original(self, payment_id, source, now=now)

        scheduler = make_scheduler(session_factory)
        with patch.object(PaymentGateway, "confirm_and_activate", flaky):
            result = await scheduler.tick(now=now)

        assert result.scanned == 2
        assert result.failed == 1
        assert result.confirmed == 1
        assert (await load_payment(broken.id)).status == "pending"
        assert (await load_payment(healthy.id)).status == "completed"
        # Claims are released so the next tick retries
        assert scheduler._claimed == set()

    async def test_second_tick_is_a_noop(self, session_factory, make_user, make_payment):
        user = await make_user()
        now = utc_now()
        await make_payment(user.id, created_at=now - timedelta(minutes=1))
        scheduler = make_scheduler(session_factory)

        first = await scheduler.tick(now=now)
        second = await scheduler.tick(now=now + timedelta(seconds=1))

        assert first.confirmed == 1
        assert second.scanned == 0


class TestRunTick:
    async def test_swallows_tick_errors(self, session_factory):
        def broken_factory():
            raise RuntimeError("database unreachable")

        scheduler = AutoConfirmationScheduler(broken_factory, enabled=True)

        # Must not raise
        await scheduler.run_tick()

    async def test_runs_tick(self, session_factory, make_user, make_payment, load_payment):
        user = await make_user()
        payment = await make_payment(user.id, created_at=utc_now() - timedelta(minutes=1))

        await make_scheduler(session_factory).run_tick()

        assert (await load_payment(payment.id)).status == "completed"


class TestMaintenance:
    async def test_expires_overdue_payments(self, session_factory, make_user, make_payment, load_payment):
        user = await make_user()
        payment = await make_payment(user.id, created_at=utc_now() - timedelta(hours=2))

        await make_scheduler(session_factory).run_maintenance()

        assert (await load_payment(payment.id)).status == "expired"

    async def test_swallows_errors(self):
        def broken_factory():
            raise RuntimeError("database unreachable")

        await AutoConfirmationScheduler(broken_factory).run_maintenance()


class TestLifecycle:
    async def test_start_registers_jobs(self, session_factory):
        scheduler = make_scheduler(session_factory)

        scheduler.start()
        try:
            assert scheduler.running
            assert scheduler._scheduler.get_job(AUTO_CONFIRM_JOB_ID) is not None
            assert scheduler._scheduler.get_job(MAINTENANCE_JOB_ID) is not None
        finally:
            scheduler.shutdown()

        assert not scheduler.running

    async def test_disabled_skips_auto_confirm_job(self, session_factory):
        scheduler = make_scheduler(session_factory, enabled=False)

        scheduler.start()
        try:
            assert scheduler._scheduler.get_job(AUTO_CONFIRM_JOB_ID) is None
            assert scheduler._scheduler.get_job(MAINTENANCE_JOB_ID) is not None
        finally:
            scheduler.shutdown()

    async def test_shutdown_without_start(self, session_factory):
        make_scheduler(session_factory).shutdown()

    async def test_start_twice_is_noop(self, session_factory):
        scheduler = make_scheduler(session_factory)

        scheduler.start()
        first = scheduler._scheduler
        scheduler.start()
        try:
            assert scheduler._scheduler is first
        finally:
            scheduler.shutdown()
