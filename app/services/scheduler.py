"""
Auto-Confirmation Scheduler - Promotes stale pending payments.

Stands in for the payment-network webhook: every interval it confirms
pending payments older than the threshold and grants premium. Clients poll
GET /payments/{id} and see completion within threshold + interval.

Overlap safety is layered:
  1. APScheduler runs at most one tick at a time (max_instances=1).
  2. Payments claimed by an in-flight tick are skipped.
  3. confirm_and_activate is itself idempotent.
"""

import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import UUID

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import Payment
from app.models.api import ConfirmationSource, PaymentStatus
from app.models.domain import TickResult
from app.observability import get_logger, metrics
from app.observability.tracing import add_span_attributes, get_tracer, set_span_error
from app.services.anti_fraud import AntiFraudGuard
from app.services.payments import PaymentGateway

logger = get_logger(__name__)
tracer = get_tracer(__name__)

AUTO_CONFIRM_JOB_ID = "pix_auto_confirm"
MAINTENANCE_JOB_ID = "entitlements_maintenance"
MAINTENANCE_INTERVAL_SECONDS = 300

SessionFactory = Callable[[], AsyncSession]


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class AutoConfirmationScheduler:
    """Recurring timer driving auto-confirmation and store maintenance."""

    def __init__(
        self,
        session_factory: SessionFactory,
        interval_ms: int | None = None,
        threshold_ms: int | None = None,
        enabled: bool | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.interval_ms = (
            interval_ms if interval_ms is not None else settings.pix_auto_confirm_interval_ms
        )
        self.threshold_ms = (
            threshold_ms if threshold_ms is not None else settings.pix_auto_confirm_threshold_ms
        )
        self.enabled = enabled if enabled is not None else settings.pix_auto_confirm_enabled
        self._claimed: set[UUID] = set()
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def tick(self, now: datetime | None = None) -> TickResult:
        """
        One scan: confirm every unclaimed pending payment older than the threshold.

        Per-payment failures are counted and logged; the remaining payments
        in the batch are still processed.
        """
        now = now or _utc_now()
        cutoff = now - timedelta(milliseconds=self.threshold_ms)

        async with self.session_factory() as session:
            stmt = (
                select(Payment.id)
                .where(
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.created_at <= cutoff,
                    Payment.expires_at > now,
                )
                .order_by(Payment.created_at)
            )
            due = list((await session.execute(stmt)).scalars().all())

        candidates = [payment_id for payment_id in due if payment_id not in self._claimed]
        skipped = len(due) - len(candidates)
        confirmed = 0
        failed = 0

        self._claimed.update(candidates)
        try:
            with tracer.start_as_current_span("auto_confirm_tick") as span:
                for payment_id in candidates:
                    try:
                        async with self.session_factory() as session:
                            gateway = PaymentGateway(session)
                            result = await gateway.confirm_and_activate(
                                payment_id, ConfirmationSource.SCHEDULER, now=now
                            )
                    except Exception as e:
                        failed += 1
                        set_span_error(span, e)
                        logger.exception("auto_confirm_payment_failed", payment_id=str(payment_id))
                        continue

                    if result is not None and result.transitioned:
                        confirmed += 1
                    else:
                        skipped += 1

                add_span_attributes(
                    span, scanned=len(due), confirmed=confirmed, skipped=skipped, failed=failed
                )
        finally:
            self._claimed.difference_update(candidates)

        if confirmed or failed:
            logger.info(
                "auto_confirm_tick",
                scanned=len(due),
                confirmed=confirmed,
                skipped=skipped,
                failed=failed,
            )
        return TickResult(scanned=len(due), confirmed=confirmed, skipped=skipped, failed=failed)

    async def run_tick(self) -> None:
        """Job entry point. A failing tick is logged and retried next interval."""
        start = time.perf_counter()
        try:
            result = await self.tick()
        except Exception:
            metrics.record_tick("failed", time.perf_counter() - start)
            logger.exception("auto_confirm_tick_failed")
            return

        outcome = "partial" if result.failed else "ok"
        metrics.record_tick(outcome, time.perf_counter() - start)

    async def run_maintenance(self) -> None:
        """Expire overdue payments and prune fraud records past retention."""
        try:
            async with self.session_factory() as session:
                expired = await PaymentGateway(session).expire_overdue()
                pruned = await AntiFraudGuard(session).prune()
        except Exception:
            logger.exception("maintenance_failed")
            return

        if expired or pruned:
            logger.info("maintenance_completed", payments_expired=expired, fraud_records_pruned=pruned)

    def start(self) -> None:
        """Register jobs and start the scheduler on the running event loop."""
        if self.running:
            return

        scheduler = AsyncIOScheduler(timezone=UTC)

        if self.enabled:
            scheduler.add_job(
                self.run_tick,
                IntervalTrigger(seconds=self.interval_ms / 1000),
                id=AUTO_CONFIRM_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

        scheduler.add_job(
            self.run_maintenance,
            IntervalTrigger(seconds=MAINTENANCE_INTERVAL_SECONDS),
            id=MAINTENANCE_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "auto_confirm_scheduler_started",
            enabled=self.enabled,
            interval_ms=self.interval_ms,
            threshold_ms=self.threshold_ms,
        )

    def shutdown(self) -> None:
        """Stop the scheduler without waiting for an in-flight tick."""
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("auto_confirm_scheduler_stopped")
