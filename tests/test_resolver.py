"""Tests for subscription resolution."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from talentgate.core.config import get_settings
from talentgate.core.exceptions import HolderNotFoundError
from talentgate.entitlements.catalog import PlanCatalog
from talentgate.entitlements.holder import Holder
from talentgate.entitlements.models import HolderType, Subscription, SubscriptionStatus
from talentgate.entitlements.periods import utcnow
from talentgate.entitlements.resolver import SubscriptionResolver
from talentgate.entitlements.subscriptions import SubscriptionService
from tests.conftest import FREE_ORG_PLAN, FREE_USER_PLAN, PAID_ORG_PLAN


class StaticDirectory:
    def __init__(self, *known: Holder) -> None:
        self.known = set(known)

    async def exists(self, holder: Holder) -> bool:
        return holder in self.known


class TestSubscriptionResolver:
    async def test_free_plan_per_holder_type(self, db_session: AsyncSession) -> None:
        resolver = SubscriptionResolver(db_session)
        assert resolver.free_plan_id(HolderType.ORG) == FREE_ORG_PLAN
        assert resolver.free_plan_id(HolderType.USER) == FREE_USER_PLAN

    async def test_fallback_context(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        user: Holder,
    ) -> None:
        now = datetime(2026, 2, 14, 9, 0, tzinfo=UTC)
        context = await SubscriptionResolver(db_session).resolve_billing_context(user, now)

        assert context.plan_id == FREE_USER_PLAN
        assert context.is_fallback is True
        assert context.period_start == datetime(2026, 2, 1, tzinfo=UTC)
        assert context.period_end == datetime(2026, 3, 1, tzinfo=UTC)

    async def test_subscription_context(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        subscription = await SubscriptionService(db_session).subscribe(org, PAID_ORG_PLAN)
        context = await SubscriptionResolver(db_session).resolve_billing_context(org)

        assert context.plan_id == PAID_ORG_PLAN
        assert context.subscription_id == subscription.id
        assert context.period_start.tzinfo is not None
        assert context.period_end - context.period_start >= timedelta(days=28)

    async def test_elapsed_or_inactive_subscriptions_are_ignored(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        now = utcnow()
        db_session.add_all(
            [
                Subscription(
                    holder_type=org.type,
                    holder_id=org.id,
                    plan_id=PAID_ORG_PLAN,
                    status=SubscriptionStatus.ACTIVE,
                    current_period_start=now - timedelta(days=60),
                    current_period_end=now - timedelta(days=30),
                ),
                Subscription(
                    holder_type=org.type,
                    holder_id=org.id,
                    plan_id=PAID_ORG_PLAN,
                    status=SubscriptionStatus.PAST_DUE,
                    current_period_start=now - timedelta(days=5),
                    current_period_end=now + timedelta(days=25),
                ),
            ],
        )
        await db_session.flush()

        resolver = SubscriptionResolver(db_session)
        assert await resolver.resolve_active_subscription(org, now) is None
        context = await resolver.resolve_billing_context(org, now)
        assert context.plan_id == FREE_ORG_PLAN

    async def test_newer_canceled_subscription_does_not_shadow_active(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        now = utcnow()
        active = Subscription(
            holder_type=org.type,
            holder_id=org.id,
            plan_id=FREE_ORG_PLAN,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=now - timedelta(days=20),
            current_period_end=now + timedelta(days=300),
        )
        canceled = Subscription(
            holder_type=org.type,
            holder_id=org.id,
            plan_id=PAID_ORG_PLAN,
            status=SubscriptionStatus.CANCELED,
            current_period_start=now - timedelta(days=2),
            current_period_end=now + timedelta(days=28),
            canceled_at=now,
        )
        db_session.add_all([active, canceled])
        await db_session.flush()

        found = await SubscriptionResolver(db_session).resolve_active_subscription(org, now)
        assert found.id == active.id

    async def test_missing_free_plan(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        settings = get_settings().model_copy(update={"free_plan_org": "recruiter-free-v2"})
        context = await SubscriptionResolver(db_session, settings=settings).resolve_billing_context(org)

        assert context.plan_id is None
        assert context.is_fallback is True

    async def test_directory_rejects_unknown_holder(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
        user: Holder,
    ) -> None:
        resolver = SubscriptionResolver(db_session, directory=StaticDirectory(user))

        context = await resolver.resolve_billing_context(user)
        assert context.plan_id == FREE_USER_PLAN

        with pytest.raises(HolderNotFoundError) as exc_info:
            await resolver.resolve_billing_context(org)
        assert exc_info.value.details == {"holder_type": "org", "holder_id": "org-42"}
        assert exc_info.value.http_status == 404
