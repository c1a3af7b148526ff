"""Tests for the billing cycle scheduler."""

from datetime import timedelta
from types import SimpleNamespace

import structlog
from prometheus_client import REGISTRY
from sqlalchemy.ext.asyncio import AsyncSession

from talentgate.core.config import get_settings
from talentgate.entitlements.catalog import PlanCatalog
from talentgate.entitlements.enforcer import QuotaEnforcer
from talentgate.entitlements.holder import Holder
from talentgate.entitlements.models import PlanInterval, SubscriptionStatus
from talentgate.entitlements.periods import ensure_utc, utcnow
from talentgate.entitlements.scheduler import BillingCycleScheduler
from talentgate.entitlements.subscriptions import SubscriptionService
from tests.conftest import PAID_ORG_PLAN


async def _elapsed_subscription(db: AsyncSession, holder: Holder, days_ago: int = 40):
    """Subscribe ``holder`` to the paid plan with a period that started ``days_ago``."""
    return await SubscriptionService(db).subscribe(
        holder,
        PAID_ORG_PLAN,
        now=utcnow() - timedelta(days=days_ago),
    )


class TestRollover:
    async def test_elapsed_period_rolls_over_and_resets_usage(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        """Usage from the old period is gone once the next period starts."""
        subscription = await _elapsed_subscription(db_session, org)
        old_start = ensure_utc(subscription.current_period_start)
        old_end = ensure_utc(subscription.current_period_end)
        enforcer = QuotaEnforcer(db_session)

        in_old_period = old_start + timedelta(days=1)
        await enforcer.consume(org, "job_posts", 48, now=in_old_period)
        await enforcer.consume(org, "candidates", 120, now=in_old_period)
        denied = await enforcer.check_allowed(org, "job_posts", 5, now=in_old_period)
        assert denied.ok is False

        summary = await BillingCycleScheduler(db_session).run()

        assert summary.rolled_over == 1
        assert summary.skipped == 0
        refreshed = await SubscriptionService(db_session).get(subscription.id)
        assert ensure_utc(refreshed.current_period_start) == old_end
        assert ensure_utc(refreshed.current_period_end) > utcnow()

        assert (await enforcer.check_allowed(org, "job_posts", 50)).ok is True
        snapshot = await enforcer.get_entitlements(org)
        assert all(f.consumed == 0 for f in snapshot.features)
        assert all(f.overage == 0 for f in snapshot.features)
        assert snapshot.period_start == old_end

    async def test_second_run_is_a_no_op(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        await _elapsed_subscription(db_session, org)
        scheduler = BillingCycleScheduler(db_session)

        first = await scheduler.run()
        second = await scheduler.run()

        assert first.rolled_over == 1
        assert second.model_dump() == {
            "rolled_over": 0,
            "canceled": 0,
            "expired_past_due": 0,
            "skipped": 0,
            "failed": 0,
        }

    async def test_failing_subscription_does_not_block_the_run(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
        user: Holder,
    ) -> None:
        """A subscription too far behind to roll over is counted as failed."""
        stuck = await SubscriptionService(db_session).subscribe(
            user,
            PAID_ORG_PLAN,
            now=utcnow() - timedelta(days=365 * 120),
        )
        healthy = await _elapsed_subscription(db_session, org)
        stuck_end = ensure_utc(stuck.current_period_end)

        with structlog.testing.capture_logs() as logs:
            summary = await BillingCycleScheduler(db_session).run()

        assert summary.rolled_over == 1
        assert summary.failed == 1
        service = SubscriptionService(db_session)
        assert ensure_utc((await service.get(healthy.id)).current_period_end) > utcnow()
        assert ensure_utc((await service.get(stuck.id)).current_period_end) == stuck_end
        failures = [e for e in logs if e["event"] == "subscription_rollover_failed"]
        assert [e["subscription_id"] for e in failures] == [str(stuck.id)]

    async def test_stale_observation_is_skipped(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        """A run that lost the race to another run applies nothing."""
        subscription = await _elapsed_subscription(db_session, org)
        stale_row = SimpleNamespace(
            id=subscription.id,
            holder_type=subscription.holder_type,
            holder_id=subscription.holder_id,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            scheduled_cancellation_date=None,
            interval=PlanInterval.MONTHLY,
        )
        scheduler = BillingCycleScheduler(db_session)
        await scheduler.run()

        assert await scheduler._roll_over(stale_row, utcnow()) is False

    async def test_current_periods_are_untouched(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        subscription = await SubscriptionService(db_session).subscribe(org, PAID_ORG_PLAN)

        summary = await BillingCycleScheduler(db_session).run()

        assert summary.rolled_over == 0
        refreshed = await SubscriptionService(db_session).get(subscription.id)
        assert refreshed.current_period_start == subscription.current_period_start

    async def test_run_records_metrics(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        before = REGISTRY.get_sample_value(
            "talentgate_billing_cycle_actions_total", {"action": "rolled_over"}
        ) or 0.0
        await _elapsed_subscription(db_session, org)

        await BillingCycleScheduler(db_session).trigger_reset()

        after = REGISTRY.get_sample_value(
            "talentgate_billing_cycle_actions_total", {"action": "rolled_over"}
        )
        assert after - before == 1


class TestCancellation:
    async def test_scheduled_cancellation_applies_at_period_end(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        subscription = await _elapsed_subscription(db_session, org)
        service = SubscriptionService(db_session)
        await service.cancel(subscription.id)

        summary = await BillingCycleScheduler(db_session).run()

        assert summary.canceled == 1
        assert summary.rolled_over == 0
        canceled = await service.get(subscription.id)
        assert canceled.status == SubscriptionStatus.CANCELED
        assert canceled.canceled_at is not None

        context = await QuotaEnforcer(db_session).resolver.resolve_billing_context(org)
        assert context.is_fallback is True

    async def test_future_cancellation_still_rolls_over(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        subscription = await _elapsed_subscription(db_session, org)
        await SubscriptionService(db_session).cancel(
            subscription.id,
            cancel_at=utcnow() + timedelta(days=3),
        )

        summary = await BillingCycleScheduler(db_session).run()

        assert summary.rolled_over == 1
        assert summary.canceled == 0

    async def test_past_due_expires_after_grace(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
        user: Holder,
    ) -> None:
        grace = get_settings().past_due_grace_days
        service = SubscriptionService(db_session)
        expired = await service.subscribe(org, PAID_ORG_PLAN)
        in_grace = await service.subscribe(user, PAID_ORG_PLAN)
        await service.mark_past_due(expired.id, now=utcnow() - timedelta(days=grace + 1))
        await service.mark_past_due(in_grace.id, now=utcnow() - timedelta(days=1))

        summary = await BillingCycleScheduler(db_session).run()

        assert summary.expired_past_due == 1
        assert (await service.get(expired.id)).status == SubscriptionStatus.CANCELED
        assert (await service.get(in_grace.id)).status == SubscriptionStatus.PAST_DUE
