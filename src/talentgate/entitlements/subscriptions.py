"""Subscription administration: subscribe, change plan, cancel, dunning."""

from datetime import datetime
from uuid import UUID

from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from talentgate.core.exceptions import InvalidSubscriptionError, SubscriptionNotFoundError
from talentgate.core.logging import LoggerMixin
from talentgate.entitlements.catalog import PlanCatalog
from talentgate.entitlements.holder import Holder
from talentgate.entitlements.ledger import UsageLedger
from talentgate.entitlements.models import Subscription, SubscriptionStatus
from talentgate.entitlements.periods import ensure_utc, interval_delta, utcnow
from talentgate.entitlements.resolver import SubscriptionResolver

# Free-tier subscriptions are provisioned for a year at a time
FREE_TIER_TERM = relativedelta(years=1)

_ALLOWED_TRANSITIONS: dict[SubscriptionStatus, set[SubscriptionStatus]] = {
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED},
    SubscriptionStatus.PAST_DUE: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED},
    SubscriptionStatus.CANCELED: set(),
}

# Statuses that still hold the holder's single subscription slot
_LIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)


class SubscriptionService(LoggerMixin):
    """Service for managing holder subscriptions."""

    def __init__(self, db: AsyncSession) -> None:
        """Initialize subscription service.

        Args:
            db: Database session
        """
        self.db = db
        self.catalog = PlanCatalog(db)
        self.resolver = SubscriptionResolver(db)
        self.ledger = UsageLedger(db, resolver=self.resolver, catalog=self.catalog)

    async def get(self, subscription_id: UUID) -> Subscription:
        """Get a subscription by ID.

        Raises:
            SubscriptionNotFoundError: If subscription not found
        """
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .execution_options(populate_existing=True),
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found",
                details={"subscription_id": str(subscription_id)},
            )
        return subscription

    async def list_for_holder(self, holder: Holder) -> list[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.holder_type == holder.type,
                Subscription.holder_id == holder.id,
            )
            .order_by(Subscription.current_period_start.desc())
            .execution_options(populate_existing=True),
        )
        return list(result.scalars().all())

    async def get_live_subscription(
        self,
        holder: Holder,
        *,
        statuses: tuple[SubscriptionStatus, ...] = _LIVE_STATUSES,
        exclude_id: UUID | None = None,
    ) -> Subscription | None:
        """Find the holder's newest active or past-due subscription.

        Unlike the resolver this ignores period bounds: an active
        subscription the scheduler has not rolled over yet, or one in its
        payment grace window, still occupies the holder's slot.
        """
        query = select(Subscription).where(
            Subscription.holder_type == holder.type,
            Subscription.holder_id == holder.id,
            Subscription.status.in_(statuses),
        )
        if exclude_id is not None:
            query = query.where(Subscription.id != exclude_id)
        result = await self.db.execute(
            query.order_by(Subscription.current_period_start.desc())
            .limit(1)
            .execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def subscribe(
        self,
        holder: Holder,
        plan_id: str,
        *,
        external_ref: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """Start a subscription for a holder with no live subscription.

        Raises:
            PlanNotFoundError: If plan not found
            InvalidSubscriptionError: If the holder already has a live subscription
        """
        now = now or utcnow()
        plan = await self.catalog.require_plan(plan_id)

        existing = await self.get_live_subscription(holder)
        if existing is not None:
            raise InvalidSubscriptionError(
                f"Holder already has a {existing.status.value} subscription. Change its plan instead.",
                details={"holder": str(holder), "subscription_id": str(existing.id)},
            )

        term = FREE_TIER_TERM if plan.price_cents == 0 else interval_delta(plan.interval)
        subscription = Subscription(
            holder_type=holder.type,
            holder_id=holder.id,
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=now,
            current_period_end=now + term,
            external_ref=external_ref,
        )
        self.db.add(subscription)
        await self.db.flush()
        await self.db.refresh(subscription)

        self.logger.info(
            "holder_subscribed",
            holder=str(holder),
            subscription_id=str(subscription.id),
            plan_id=plan.id,
        )
        return subscription

    async def provision_free(self, holder: Holder, now: datetime | None = None) -> Subscription:
        """Subscribe a holder to the free plan for its holder type."""
        return await self.subscribe(holder, self.resolver.free_plan_id(holder.type), now=now)

    async def change_plan(
        self,
        subscription_id: UUID,
        plan_id: str,
        *,
        reset_period: bool = False,
        now: datetime | None = None,
    ) -> Subscription:
        """Move a live subscription to another plan.

        Usage already recorded for the period carries over unless
        ``reset_period`` starts a fresh period from ``now``.

        Raises:
            SubscriptionNotFoundError: If subscription not found
            PlanNotFoundError: If plan not found
            InvalidSubscriptionError: If the subscription is canceled
        """
        now = now or utcnow()
        subscription = await self.get(subscription_id)
        plan = await self.catalog.require_plan(plan_id)

        if subscription.status == SubscriptionStatus.CANCELED:
            raise InvalidSubscriptionError(
                "Cannot change the plan of a canceled subscription",
                details={"subscription_id": str(subscription_id)},
            )

        previous_plan_id = subscription.plan_id
        subscription.plan_id = plan.id
        subscription.scheduled_cancellation_date = None

        if reset_period:
            old_start = subscription.current_period_start
            subscription.current_period_start = now
            subscription.current_period_end = now + interval_delta(plan.interval)
            await self.db.flush()
            holder = Holder(type=subscription.holder_type, id=subscription.holder_id)
            await self.ledger.roll_over(holder, old_start, now, now)

        await self.db.flush()
        self.logger.info(
            "subscription_plan_changed",
            subscription_id=str(subscription.id),
            from_plan_id=previous_plan_id,
            to_plan_id=plan.id,
            reset_period=reset_period,
        )
        return subscription

    async def cancel(
        self,
        subscription_id: UUID,
        *,
        immediate: bool = False,
        cancel_at: datetime | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """Cancel a subscription now or schedule it for a later date.

        A scheduled cancellation defaults to the end of the current period
        and is applied by the billing cycle scheduler.

        Raises:
            SubscriptionNotFoundError: If subscription not found
            InvalidSubscriptionError: If already canceled, or if a scheduled
                cancellation is requested for a past-due subscription
        """
        now = now or utcnow()
        subscription = await self.get(subscription_id)

        if immediate:
            self._transition(subscription, SubscriptionStatus.CANCELED)
            subscription.canceled_at = now
        else:
            if subscription.status != SubscriptionStatus.ACTIVE:
                raise InvalidSubscriptionError(
                    f"Cannot schedule cancellation of a {subscription.status.value} subscription",
                    details={"subscription_id": str(subscription_id)},
                )
            subscription.scheduled_cancellation_date = (
                ensure_utc(cancel_at) if cancel_at else ensure_utc(subscription.current_period_end)
            )

        await self.db.flush()
        self.logger.info(
            "subscription_cancel_requested",
            subscription_id=str(subscription.id),
            immediate=immediate,
            scheduled_cancellation_date=(
                subscription.scheduled_cancellation_date.isoformat()
                if subscription.scheduled_cancellation_date
                else None
            ),
        )
        return subscription

    async def mark_past_due(self, subscription_id: UUID, now: datetime | None = None) -> Subscription:
        """Enter the payment grace window after a failed charge."""
        now = now or utcnow()
        subscription = await self.get(subscription_id)
        if subscription.status == SubscriptionStatus.PAST_DUE:
            return subscription

        self._transition(subscription, SubscriptionStatus.PAST_DUE)
        subscription.past_due_at = now
        await self.db.flush()

        self.logger.warning("subscription_past_due", subscription_id=str(subscription.id))
        return subscription

    async def recover(self, subscription_id: UUID, now: datetime | None = None) -> Subscription:
        """Return a past-due subscription to active after a successful charge.

        A recovered subscription whose period elapsed during the grace window
        starts a new period from ``now``.

        Raises:
            InvalidSubscriptionError: If the subscription is canceled, or the
                holder already has another active subscription
        """
        now = now or utcnow()
        subscription = await self.get(subscription_id)
        if subscription.status == SubscriptionStatus.ACTIVE:
            return subscription

        holder = Holder(type=subscription.holder_type, id=subscription.holder_id)
        other = await self.get_live_subscription(
            holder,
            statuses=(SubscriptionStatus.ACTIVE,),
            exclude_id=subscription.id,
        )
        if other is not None:
            raise InvalidSubscriptionError(
                "Holder already has another active subscription",
                details={"subscription_id": str(subscription.id), "active_subscription_id": str(other.id)},
            )

        self._transition(subscription, SubscriptionStatus.ACTIVE)
        subscription.past_due_at = None
        if ensure_utc(subscription.current_period_end) < now:
            plan = await self.catalog.require_plan(subscription.plan_id)
            old_start = subscription.current_period_start
            subscription.current_period_start = now
            subscription.current_period_end = now + interval_delta(plan.interval)
            await self.db.flush()
            await self.ledger.roll_over(holder, old_start, now, now)

        await self.db.flush()
        self.logger.info("subscription_recovered", subscription_id=str(subscription.id))
        return subscription

    @staticmethod
    def _transition(subscription: Subscription, target: SubscriptionStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[subscription.status]:
            raise InvalidSubscriptionError(
                f"Cannot move subscription from {subscription.status.value} to {target.value}",
                details={"subscription_id": str(subscription.id)},
            )
        subscription.status = target
