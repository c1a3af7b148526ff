"""Quota enforcement: the check-then-act-then-consume protocol.

Callers ask :meth:`QuotaEnforcer.check_allowed` before a billable action and
call :meth:`QuotaEnforcer.consume` only after the action succeeded. Two
concurrent requests can both pass the check for the last unit; the second
consume then records an overshoot instead of undoing the action. Caps are
soft by that margin.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from talentgate.core.exceptions import ErrorCode, FeatureNotAllowedError
from talentgate.core.logging import LoggerMixin
from talentgate.core.metrics import track_entitlement_check, track_usage
from talentgate.entitlements.catalog import PlanCatalog
from talentgate.entitlements.holder import Holder, HolderDirectory
from talentgate.entitlements.ledger import UsageLedger, validate_amount
from talentgate.entitlements.models import FeatureEntitlement, FeatureKind
from talentgate.entitlements.resolver import BillingContext, SubscriptionResolver
from talentgate.entitlements.schemas import CheckResult, UsageSnapshot


class QuotaEnforcer(LoggerMixin):
    """Gate billable actions against a holder's plan and monthly usage."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        directory: HolderDirectory | None = None,
    ) -> None:
        """Initialize quota enforcer.

        Args:
            db: Database session
            directory: Optional holder lookup; unknown holders raise HolderNotFoundError
        """
        self.db = db
        self.catalog = PlanCatalog(db)
        self.resolver = SubscriptionResolver(db, directory=directory)
        self.ledger = UsageLedger(db, resolver=self.resolver, catalog=self.catalog)

    async def _entitlement(
        self,
        context: BillingContext,
        feature_key: str,
    ) -> FeatureEntitlement | None:
        if context.plan_id is None:
            return None
        return await self.catalog.get_entitlement(context.plan_id, feature_key)

    async def check_allowed(
        self,
        holder: Holder,
        feature_key: str,
        amount: int = 1,
        *,
        now: datetime | None = None,
    ) -> CheckResult:
        """Decide whether the holder may consume ``amount`` units of a feature.

        Never writes to the ledger.

        Args:
            holder: Holder performing the action
            feature_key: Feature being used
            amount: Units the action will consume
            now: Reference time, defaults to the current UTC time

        Returns:
            ``CheckResult`` with ``ok`` and, when denied, the reason code

        Raises:
            InvalidAmountError: If amount is not a positive integer
            HolderNotFoundError: If a holder directory rejects the holder
        """
        validate_amount(amount)
        context = await self.resolver.resolve_billing_context(holder, now)
        result = await self._evaluate(context, feature_key, amount)

        outcome = "ok" if result.ok else result.reason.value
        track_entitlement_check(feature_key, outcome)
        if not result.ok:
            self.logger.info(
                "entitlement_denied",
                holder=str(holder),
                feature_key=feature_key,
                amount=amount,
                plan_id=context.plan_id,
                reason=outcome,
            )
        return result

    async def _evaluate(
        self,
        context: BillingContext,
        feature_key: str,
        amount: int,
    ) -> CheckResult:
        entitlement = await self._entitlement(context, feature_key)
        if entitlement is None:
            return CheckResult.deny(ErrorCode.FEATURE_NOT_IN_PLAN)
        if not entitlement.enabled:
            return CheckResult.deny(ErrorCode.FEATURE_DISABLED)

        feature = await self.catalog.get_feature(feature_key)
        if feature is None:
            return CheckResult.deny(ErrorCode.FEATURE_NOT_IN_PLAN)
        if feature.kind == FeatureKind.BOOLEAN or entitlement.monthly_cap is None:
            return CheckResult.allow()

        reading = await self.ledger.read(context.holder, feature_key, context.period_start)
        consumed = reading.consumed if reading else 0
        extra = reading.extra_allowance if reading else 0
        if consumed + amount <= entitlement.monthly_cap + extra:
            return CheckResult.allow()
        return CheckResult.deny(ErrorCode.QUOTA_EXCEEDED)

    async def consume(
        self,
        holder: Holder,
        feature_key: str,
        amount: int = 1,
        *,
        now: datetime | None = None,
    ) -> int:
        """Record ``amount`` units after the gated action has succeeded.

        The increment is applied even if it pushes the holder over its cap;
        in that case an over-cap event is logged and counted. The action is
        never reversed.

        Returns:
            The holder's consumed total for the period after the increment

        Raises:
            InvalidAmountError: If amount is not a positive integer
            SQLAlchemyError: If the ledger write fails
        """
        validate_amount(amount)
        context = await self.resolver.resolve_billing_context(holder, now)
        entitlement = await self._entitlement(context, feature_key)
        feature = await self.catalog.get_feature(feature_key)

        cap = None
        if entitlement is not None and feature is not None and feature.kind == FeatureKind.METERED:
            cap = entitlement.monthly_cap

        try:
            await self.ledger.ensure_entry(holder, feature_key, context.period_start)
            if cap is None:
                consumed = await self.ledger.force_increment(
                    holder, feature_key, context.period_start, amount
                )
                billing = "uncapped"
            else:
                consumed = await self.ledger.try_increment(
                    holder, feature_key, context.period_start, amount, cap
                )
                billing = "within_cap"
                if consumed is None:
                    consumed = await self.ledger.force_increment(
                        holder, feature_key, context.period_start, amount
                    )
                    billing = "over_cap"
        except SQLAlchemyError:
            self.logger.exception(
                "usage_consume_failed",
                holder=str(holder),
                feature_key=feature_key,
                amount=amount,
                plan_id=context.plan_id,
            )
            raise

        track_usage(feature_key, billing, amount)
        if billing == "over_cap":
            self.logger.warning(
                "usage_over_cap",
                holder=str(holder),
                feature_key=feature_key,
                amount=amount,
                consumed=consumed,
                cap=cap,
                plan_id=context.plan_id,
            )
        else:
            self.logger.debug(
                "usage_consumed",
                holder=str(holder),
                feature_key=feature_key,
                amount=amount,
                consumed=consumed,
            )
        if entitlement is None or not entitlement.enabled:
            # Recorded anyway; the caller bypassed the check
            self.logger.warning(
                "usage_consumed_without_entitlement",
                holder=str(holder),
                feature_key=feature_key,
                plan_id=context.plan_id,
            )
        return consumed

    @asynccontextmanager
    async def gate(
        self,
        holder: Holder,
        feature_key: str,
        amount: int = 1,
    ) -> AsyncIterator[CheckResult]:
        """Check on entry, consume after the block completes without raising.

        Usage:
            async with enforcer.gate(holder, "job_posts"):
                await publish_job(...)

        Raises:
            FeatureNotAllowedError: On entry, if the check denies the action
        """
        result = await self.check_allowed(holder, feature_key, amount)
        if not result.ok:
            raise FeatureNotAllowedError(
                feature_key,
                result.reason,
                details={"holder": str(holder), "amount": amount},
            )

        yield result

        try:
            await self.consume(holder, feature_key, amount)
        except SQLAlchemyError:
            # The action already happened; the failure was logged by consume
            self.logger.error(
                "usage_consume_dropped",
                holder=str(holder),
                feature_key=feature_key,
                amount=amount,
            )

    async def get_entitlements(self, holder: Holder) -> UsageSnapshot:
        """Read model of the holder's plan, usage and remaining quota."""
        return await self.ledger.get_usage_snapshot(holder)
