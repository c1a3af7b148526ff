"""Billing cycle scheduler: rolls periods over and settles cancellations."""

from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from talentgate.core.config import Settings, get_settings
from talentgate.core.logging import LoggerMixin
from talentgate.core.metrics import track_billing_action, track_billing_cycle_time
from talentgate.entitlements.holder import Holder
from talentgate.entitlements.ledger import UsageLedger
from talentgate.entitlements.models import Plan, Subscription, SubscriptionStatus
from talentgate.entitlements.periods import ensure_utc, next_period, utcnow
from talentgate.entitlements.schemas import BillingCycleSummary


class BillingCycleScheduler(LoggerMixin):
    """Advance elapsed subscriptions into their next billing period.

    Every transition is a conditional UPDATE keyed on the state the run
    observed, so two overlapping runs cannot both apply it: the loser sees
    zero affected rows and counts the subscription as skipped.
    """

    def __init__(self, db: AsyncSession, *, settings: Settings | None = None) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.ledger = UsageLedger(db)

    async def run(self, now: datetime | None = None) -> BillingCycleSummary:
        """Process every subscription due at ``now``.

        Args:
            now: Reference time, defaults to the current UTC time

        Returns:
            Per-outcome subscription counts; a subscription that fails is
            counted and logged without stopping the run
        """
        now = now or utcnow()
        summary = BillingCycleSummary()

        with track_billing_cycle_time():
            result = await self.db.execute(
                select(
                    Subscription.id,
                    Subscription.holder_type,
                    Subscription.holder_id,
                    Subscription.current_period_start,
                    Subscription.current_period_end,
                    Subscription.scheduled_cancellation_date,
                    Plan.interval,
                )
                .join(Plan, Plan.id == Subscription.plan_id)
                .where(
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    Subscription.current_period_end < now,
                )
                .order_by(Subscription.current_period_end),
            )
            for row in result.all():
                try:
                    async with self.db.begin_nested():
                        outcome = await self._process(row, now)
                except (ValueError, SQLAlchemyError) as e:
                    summary.failed += 1
                    self.logger.error(
                        "subscription_rollover_failed",
                        subscription_id=str(row.id),
                        holder=f"{row.holder_type.value}:{row.holder_id}",
                        error=str(e),
                    )
                    continue
                setattr(summary, outcome, getattr(summary, outcome) + 1)

            summary.expired_past_due = await self._expire_past_due(now)

        track_billing_action("rolled_over", summary.rolled_over)
        track_billing_action("canceled", summary.canceled)
        track_billing_action("expired_past_due", summary.expired_past_due)
        track_billing_action("skipped", summary.skipped)
        track_billing_action("failed", summary.failed)
        self.logger.info("billing_cycle_completed", **summary.model_dump())
        return summary

    async def trigger_reset(self) -> BillingCycleSummary:
        """Run the cycle immediately, outside the beat schedule."""
        self.logger.info("billing_cycle_triggered")
        return await self.run()

    async def _process(self, row, now: datetime) -> str:
        cancel_at = row.scheduled_cancellation_date
        if cancel_at is not None and ensure_utc(cancel_at) <= now:
            return "canceled" if await self._cancel(row, now) else "skipped"
        return "rolled_over" if await self._roll_over(row, now) else "skipped"

    async def _cancel(self, row, now: datetime) -> bool:
        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == row.id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.current_period_end == row.current_period_end,
            )
            .values(status=SubscriptionStatus.CANCELED, canceled_at=now)
            .execution_options(synchronize_session=False),
        )
        if not result.rowcount:
            return False

        self.logger.info(
            "subscription_canceled_at_period_end",
            subscription_id=str(row.id),
            holder=f"{row.holder_type.value}:{row.holder_id}",
        )
        return True

    async def _roll_over(self, row, now: datetime) -> bool:
        old_start = row.current_period_start
        new_start, new_end = next_period(row.current_period_end, row.interval, now)

        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == row.id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.current_period_end == row.current_period_end,
            )
            .values(current_period_start=new_start, current_period_end=new_end)
            .returning(Subscription.id)
            .execution_options(synchronize_session=False),
        )
        if result.scalar_one_or_none() is None:
            self.logger.debug("subscription_rollover_skipped", subscription_id=str(row.id))
            return False

        holder = Holder(type=row.holder_type, id=row.holder_id)
        reset = await self.ledger.roll_over(holder, old_start, new_start, now)
        self.logger.info(
            "subscription_rolled_over",
            subscription_id=str(row.id),
            holder=str(holder),
            period_start=new_start.isoformat(),
            period_end=new_end.isoformat(),
            ledger_rows_reset=reset,
        )
        return True

    async def _expire_past_due(self, now: datetime) -> int:
        """Cancel past-due subscriptions whose grace window has elapsed."""
        deadline = now - timedelta(days=self.settings.past_due_grace_days)
        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.PAST_DUE,
                Subscription.past_due_at.is_not(None),
                Subscription.past_due_at <= deadline,
            )
            .values(status=SubscriptionStatus.CANCELED, canceled_at=now)
            .returning(Subscription.id)
            .execution_options(synchronize_session=False),
        )
        expired = list(result.scalars().all())
        for subscription_id in expired:
            self.logger.info("subscription_past_due_expired", subscription_id=str(subscription_id))
        return len(expired)
