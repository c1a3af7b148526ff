"""Subscription resolution: which plan and billing period apply to a holder."""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from talentgate.core.config import Settings, get_settings
from talentgate.core.exceptions import HolderNotFoundError
from talentgate.core.logging import LoggerMixin
from talentgate.entitlements.catalog import PlanCatalog
from talentgate.entitlements.holder import Holder, HolderDirectory
from talentgate.entitlements.models import HolderType, Subscription, SubscriptionStatus
from talentgate.entitlements.periods import calendar_month_bounds, ensure_utc, utcnow


@dataclass(frozen=True, slots=True)
class BillingContext:
    """The plan and period the enforcer meters a holder against.

    ``plan_id`` is None only when no subscription is active and the
    configured free plan is missing from the catalog.
    """

    holder: Holder
    plan_id: str | None
    period_start: datetime
    period_end: datetime
    subscription_id: UUID | None = None

    @property
    def is_fallback(self) -> bool:
        return self.subscription_id is None


class SubscriptionResolver(LoggerMixin):
    """Map a holder to its current subscription or to the free-tier plan."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        settings: Settings | None = None,
        directory: HolderDirectory | None = None,
    ) -> None:
        """Initialize subscription resolver.

        Args:
            db: Database session
            settings: Application settings, defaults to the cached instance
            directory: Optional lookup used to reject unknown holders
        """
        self.db = db
        self.settings = settings or get_settings()
        self.directory = directory

    def free_plan_id(self, holder_type: HolderType) -> str:
        if holder_type == HolderType.ORG:
            return self.settings.free_plan_org
        return self.settings.free_plan_user

    async def ensure_known(self, holder: Holder) -> None:
        """Raise HolderNotFoundError when a directory is configured and rejects the holder."""
        if self.directory is not None and not await self.directory.exists(holder):
            raise HolderNotFoundError(holder.type.value, holder.id)

    async def resolve_active_subscription(
        self,
        holder: Holder,
        now: datetime | None = None,
    ) -> Subscription | None:
        """Return the most recent active subscription whose period has not ended.

        Args:
            holder: Subscription owner
            now: Reference time, defaults to the current UTC time

        Returns:
            The subscription, or None when the holder falls back to the free plan
        """
        now = now or utcnow()
        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.holder_type == holder.type,
                Subscription.holder_id == holder.id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.current_period_end >= now,
            )
            .order_by(
                Subscription.current_period_start.desc(),
                Subscription.created_at.desc(),
            )
            .limit(1)
            .execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def resolve_billing_context(
        self,
        holder: Holder,
        now: datetime | None = None,
    ) -> BillingContext:
        """Resolve the plan and period used for checks and consumption.

        Holders without an active subscription are metered against the free
        plan configured for their type over the current UTC calendar month.
        If that plan does not exist the context carries no plan, which the
        enforcer reports as "not in plan" for every feature.
        """
        now = now or utcnow()
        await self.ensure_known(holder)

        subscription = await self.resolve_active_subscription(holder, now)
        if subscription is not None:
            return BillingContext(
                holder=holder,
                plan_id=subscription.plan_id,
                period_start=ensure_utc(subscription.current_period_start),
                period_end=ensure_utc(subscription.current_period_end),
                subscription_id=subscription.id,
            )

        free_plan_id = self.free_plan_id(holder.type)
        plan = await PlanCatalog(self.db).get_plan(free_plan_id)
        if plan is None:
            self.logger.warning(
                "free_plan_missing",
                holder=str(holder),
                plan_id=free_plan_id,
            )

        period_start, period_end = calendar_month_bounds(now)
        return BillingContext(
            holder=holder,
            plan_id=plan.id if plan is not None else None,
            period_start=period_start,
            period_end=period_end,
        )
