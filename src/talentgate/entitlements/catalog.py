"""Feature registry and plan catalog."""

from collections.abc import Sequence

from sqlalchemy import delete, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from talentgate.core.exceptions import (
    FeatureInUseError,
    FeatureNotFoundError,
    PlanInUseError,
    PlanNotFoundError,
    ValidationError,
)
from talentgate.core.logging import LoggerMixin
from talentgate.entitlements.models import (
    Feature,
    FeatureEntitlement,
    FeatureKind,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from talentgate.entitlements.schemas import (
    EntitlementUpsert,
    FeatureCreate,
    FeatureUpdate,
    PlanCreate,
    PlanUpdate,
)


class PlanCatalog(LoggerMixin):
    """Read and administer features, plans and their entitlement lines.

    Reads always refresh from the database so that an entitlement edit made
    through another session is visible to the very next check.
    """

    def __init__(self, db: AsyncSession) -> None:
        """Initialize plan catalog.

        Args:
            db: Database session
        """
        self.db = db

    # ------------------------------------------------------------------
    # Features
    # ------------------------------------------------------------------

    async def get_feature(self, key: str) -> Feature | None:
        result = await self.db.execute(
            select(Feature)
            .where(Feature.key == key)
            .execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def require_feature(self, key: str) -> Feature:
        feature = await self.get_feature(key)
        if feature is None:
            raise FeatureNotFoundError(f"Feature {key} not found", details={"feature_key": key})
        return feature

    async def list_features(self) -> list[Feature]:
        result = await self.db.execute(
            select(Feature).order_by(Feature.key).execution_options(populate_existing=True),
        )
        return list(result.scalars().all())

    async def create_feature(self, data: FeatureCreate) -> Feature:
        """Register a new feature.

        Raises:
            IntegrityError: If a feature with the key already exists
        """
        feature = Feature(**data.model_dump())
        self.db.add(feature)
        await self.db.flush()
        await self.db.refresh(feature)

        self.logger.info("feature_created", feature_key=feature.key, kind=feature.kind.value)
        return feature

    async def update_feature(self, key: str, data: FeatureUpdate) -> Feature:
        feature = await self.require_feature(key)
        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(feature, field, value)
        await self.db.flush()
        await self.db.refresh(feature)

        self.logger.info("feature_updated", feature_key=key)
        return feature

    async def delete_feature(self, key: str) -> None:
        """Delete a feature that no plan references.

        Raises:
            FeatureNotFoundError: If the feature does not exist
            FeatureInUseError: If any entitlement row references it
        """
        feature = await self.require_feature(key)

        referenced = await self.db.scalar(
            select(exists().where(FeatureEntitlement.feature_key == key)),
        )
        if referenced:
            raise FeatureInUseError(
                f"Feature {key} is referenced by plan entitlements",
                details={"feature_key": key},
            )

        await self.db.delete(feature)
        await self.db.flush()
        self.logger.info("feature_deleted", feature_key=key)

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    async def get_plan(self, plan_id: str) -> Plan | None:
        result = await self.db.execute(
            select(Plan).where(Plan.id == plan_id).execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def require_plan(self, plan_id: str) -> Plan:
        plan = await self.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found", details={"plan_id": plan_id})
        return plan

    async def list_plans(self, public_only: bool = False) -> list[Plan]:
        """List plans ordered by product, then price.

        Args:
            public_only: Only return plans offered on the pricing page
        """
        query = select(Plan)
        if public_only:
            query = query.where(Plan.is_public.is_(True))

        result = await self.db.execute(
            query.order_by(Plan.product, Plan.price_cents, Plan.interval, Plan.id)
            .execution_options(populate_existing=True),
        )
        return list(result.scalars().all())

    async def create_plan(self, data: PlanCreate) -> Plan:
        plan = Plan(**data.model_dump())
        self.db.add(plan)
        await self.db.flush()
        await self.db.refresh(plan)

        self.logger.info(
            "plan_created",
            plan_id=plan.id,
            product=plan.product,
            tier=plan.tier,
            interval=plan.interval.value,
        )
        return plan

    async def update_plan(self, plan_id: str, data: PlanUpdate) -> Plan:
        plan = await self.require_plan(plan_id)
        changes = data.model_dump(exclude_unset=True)
        for field, value in changes.items():
            setattr(plan, field, value)
        await self.db.flush()
        await self.db.refresh(plan)

        subscribers = await self.count_live_subscribers(plan_id)
        if subscribers and "price_cents" in changes:
            self.logger.warning(
                "plan_repriced_with_subscribers",
                plan_id=plan_id,
                subscribers=subscribers,
                price_cents=plan.price_cents,
            )
        self.logger.info("plan_updated", plan_id=plan_id, fields=sorted(changes))
        return plan

    async def delete_plan(self, plan_id: str) -> None:
        """Delete a plan nobody references.

        Nothing cascades: entitlement lines must be removed first and the
        plan must never have had a subscription.

        Raises:
            PlanNotFoundError: If the plan does not exist
            PlanInUseError: If a subscription or entitlement row references it
        """
        plan = await self.require_plan(plan_id)

        subscriptions = await self.db.scalar(
            select(func.count()).select_from(Subscription).where(Subscription.plan_id == plan_id),
        )
        entitlements = await self.db.scalar(
            select(func.count())
            .select_from(FeatureEntitlement)
            .where(FeatureEntitlement.plan_id == plan_id),
        )
        if subscriptions or entitlements:
            raise PlanInUseError(
                f"Plan {plan_id} is still referenced",
                details={
                    "plan_id": plan_id,
                    "subscriptions": subscriptions,
                    "entitlements": entitlements,
                },
            )

        await self.db.delete(plan)
        await self.db.flush()
        self.logger.info("plan_deleted", plan_id=plan_id)

    async def count_live_subscribers(self, plan_id: str) -> int:
        """Count active or past-due subscriptions on a plan."""
        count = await self.db.scalar(
            select(func.count())
            .select_from(Subscription)
            .where(
                Subscription.plan_id == plan_id,
                Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE]),
            ),
        )
        return count or 0

    # ------------------------------------------------------------------
    # Entitlements
    # ------------------------------------------------------------------

    async def get_entitlement(self, plan_id: str, feature_key: str) -> FeatureEntitlement | None:
        result = await self.db.execute(
            select(FeatureEntitlement)
            .where(
                FeatureEntitlement.plan_id == plan_id,
                FeatureEntitlement.feature_key == feature_key,
            )
            .execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def list_entitlements(self, plan_id: str) -> list[FeatureEntitlement]:
        result = await self.db.execute(
            select(FeatureEntitlement)
            .where(FeatureEntitlement.plan_id == plan_id)
            .order_by(FeatureEntitlement.feature_key)
            .execution_options(populate_existing=True),
        )
        return list(result.scalars().all())

    async def upsert_entitlement(self, plan_id: str, data: EntitlementUpsert) -> FeatureEntitlement:
        """Create or replace one feature line of a plan.

        The change applies to every holder on the plan from the next check on.

        Raises:
            PlanNotFoundError: If the plan does not exist
            FeatureNotFoundError: If the feature does not exist
            ValidationError: If a cap is set on a boolean feature
        """
        await self.require_plan(plan_id)
        feature = await self.require_feature(data.feature_key)
        self._validate_line(feature, data)

        entitlement = await self.get_entitlement(plan_id, data.feature_key)
        if entitlement is None:
            entitlement = FeatureEntitlement(plan_id=plan_id, feature_key=data.feature_key)
            self.db.add(entitlement)

        entitlement.enabled = data.enabled
        entitlement.monthly_cap = data.monthly_cap
        entitlement.overage_unit_cents = data.overage_unit_cents
        await self.db.flush()

        await self._warn_if_live(plan_id, feature_keys=[data.feature_key])
        self.logger.info(
            "entitlement_upserted",
            plan_id=plan_id,
            feature_key=data.feature_key,
            enabled=data.enabled,
            monthly_cap=data.monthly_cap,
        )
        return entitlement

    async def delete_entitlement(self, plan_id: str, feature_key: str) -> None:
        entitlement = await self.get_entitlement(plan_id, feature_key)
        if entitlement is None:
            raise FeatureNotFoundError(
                f"Plan {plan_id} has no entitlement for {feature_key}",
                details={"plan_id": plan_id, "feature_key": feature_key},
            )
        await self.db.delete(entitlement)
        await self.db.flush()

        await self._warn_if_live(plan_id, feature_keys=[feature_key])
        self.logger.info("entitlement_deleted", plan_id=plan_id, feature_key=feature_key)

    async def replace_entitlements(
        self,
        plan_id: str,
        rows: Sequence[EntitlementUpsert],
    ) -> list[FeatureEntitlement]:
        """Replace every feature line of a plan in one step.

        Lines missing from ``rows`` are removed, which turns those features
        into "not in plan" for current subscribers.
        """
        await self.require_plan(plan_id)
        features = {f.key: f for f in await self.list_features()}
        for row in rows:
            feature = features.get(row.feature_key)
            if feature is None:
                raise FeatureNotFoundError(
                    f"Feature {row.feature_key} not found",
                    details={"feature_key": row.feature_key},
                )
            self._validate_line(feature, row)

        await self.db.execute(
            delete(FeatureEntitlement)
            .where(FeatureEntitlement.plan_id == plan_id)
            .execution_options(synchronize_session="fetch"),
        )
        entitlements = [
            FeatureEntitlement(plan_id=plan_id, **row.model_dump()) for row in rows
        ]
        self.db.add_all(entitlements)
        await self.db.flush()

        await self._warn_if_live(plan_id, feature_keys=[row.feature_key for row in rows])
        self.logger.info("entitlements_replaced", plan_id=plan_id, count=len(entitlements))
        return entitlements

    @staticmethod
    def _validate_line(feature: Feature, data: EntitlementUpsert) -> None:
        if feature.kind == FeatureKind.BOOLEAN and data.monthly_cap is not None:
            raise ValidationError(
                f"Feature {feature.key} is boolean and cannot carry a monthly cap",
                details={"feature_key": feature.key},
            )

    async def _warn_if_live(self, plan_id: str, feature_keys: list[str]) -> None:
        subscribers = await self.count_live_subscribers(plan_id)
        if subscribers:
            self.logger.warning(
                "entitlements_changed_for_live_plan",
                plan_id=plan_id,
                subscribers=subscribers,
                feature_keys=feature_keys,
            )
