"""Usage ledger: per holder, feature and period consumption counters."""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import Insert as PgInsert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import Insert as SqliteInsert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from talentgate.core.exceptions import InvalidAmountError
from talentgate.core.logging import LoggerMixin
from talentgate.entitlements.catalog import PlanCatalog
from talentgate.entitlements.holder import Holder
from talentgate.entitlements.models import Feature, FeatureEntitlement, FeatureKind, UsageLedgerEntry
from talentgate.entitlements.periods import utcnow
from talentgate.entitlements.resolver import BillingContext, SubscriptionResolver
from talentgate.entitlements.schemas import FeatureUsage, UsageSnapshot

LEDGER_KEY = ("holder_type", "holder_id", "feature_key", "period_start")


@dataclass(frozen=True, slots=True)
class LedgerReading:
    consumed: int
    extra_allowance: int


def validate_amount(amount: object) -> int:
    """Return ``amount`` if it is a positive integer, else raise InvalidAmountError."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
        raise InvalidAmountError(details={"amount": repr(amount)})
    return amount


class UsageLedger(LoggerMixin):
    """Consumption counters and ad-hoc credit grants.

    Rows are created lazily on first use for a period. Every mutation is a
    single SQL statement so concurrent writers are serialized by the
    database; reads select columns rather than entities and never go stale
    through the session identity map.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        resolver: SubscriptionResolver | None = None,
        catalog: PlanCatalog | None = None,
    ) -> None:
        """Initialize usage ledger.

        Args:
            db: Database session
            resolver: Resolver used to find the holder's current period
            catalog: Catalog used to list entitled features
        """
        self.db = db
        self.resolver = resolver or SubscriptionResolver(db)
        self.catalog = catalog or PlanCatalog(db)

    def _insert(self) -> PgInsert | SqliteInsert:
        if self.db.get_bind().dialect.name == "postgresql":
            return pg_insert(UsageLedgerEntry)
        return sqlite_insert(UsageLedgerEntry)

    @staticmethod
    def _key(holder: Holder, feature_key: str, period_start: datetime) -> tuple:
        return (
            UsageLedgerEntry.holder_type == holder.type,
            UsageLedgerEntry.holder_id == holder.id,
            UsageLedgerEntry.feature_key == feature_key,
            UsageLedgerEntry.period_start == period_start,
        )

    # ------------------------------------------------------------------
    # Low-level operations
    # ------------------------------------------------------------------

    async def ensure_entry(self, holder: Holder, feature_key: str, period_start: datetime) -> None:
        """Create the ledger row for a period if it does not exist yet."""
        stmt = (
            self._insert()
            .values(
                holder_type=holder.type,
                holder_id=holder.id,
                feature_key=feature_key,
                period_start=period_start,
                consumed=0,
                extra_allowance=0,
            )
            .on_conflict_do_nothing(index_elements=list(LEDGER_KEY))
        )
        await self.db.execute(stmt)

    async def read(
        self,
        holder: Holder,
        feature_key: str,
        period_start: datetime,
    ) -> LedgerReading | None:
        result = await self.db.execute(
            select(UsageLedgerEntry.consumed, UsageLedgerEntry.extra_allowance).where(
                *self._key(holder, feature_key, period_start),
            ),
        )
        row = result.one_or_none()
        if row is None:
            return None
        return LedgerReading(consumed=row.consumed, extra_allowance=row.extra_allowance)

    async def read_period(self, holder: Holder, period_start: datetime) -> dict[str, LedgerReading]:
        result = await self.db.execute(
            select(
                UsageLedgerEntry.feature_key,
                UsageLedgerEntry.consumed,
                UsageLedgerEntry.extra_allowance,
            ).where(
                UsageLedgerEntry.holder_type == holder.type,
                UsageLedgerEntry.holder_id == holder.id,
                UsageLedgerEntry.period_start == period_start,
            ),
        )
        return {
            row.feature_key: LedgerReading(consumed=row.consumed, extra_allowance=row.extra_allowance)
            for row in result
        }

    async def try_increment(
        self,
        holder: Holder,
        feature_key: str,
        period_start: datetime,
        amount: int,
        cap: int,
    ) -> int | None:
        """Increment only if the result stays within ``cap + extra_allowance``.

        Returns:
            The new consumed value, or None if the increment would exceed the cap
        """
        result = await self.db.execute(
            update(UsageLedgerEntry)
            .where(
                *self._key(holder, feature_key, period_start),
                UsageLedgerEntry.consumed + amount <= cap + UsageLedgerEntry.extra_allowance,
            )
            .values(consumed=UsageLedgerEntry.consumed + amount)
            .returning(UsageLedgerEntry.consumed)
            .execution_options(synchronize_session=False),
        )
        return result.scalar_one_or_none()

    async def force_increment(
        self,
        holder: Holder,
        feature_key: str,
        period_start: datetime,
        amount: int,
    ) -> int:
        """Increment unconditionally. The row must exist."""
        result = await self.db.execute(
            update(UsageLedgerEntry)
            .where(*self._key(holder, feature_key, period_start))
            .values(consumed=UsageLedgerEntry.consumed + amount)
            .returning(UsageLedgerEntry.consumed)
            .execution_options(synchronize_session=False),
        )
        return result.scalar_one()

    async def add_allowance(
        self,
        holder: Holder,
        feature_key: str,
        period_start: datetime,
        amount: int,
    ) -> int:
        await self.ensure_entry(holder, feature_key, period_start)
        result = await self.db.execute(
            update(UsageLedgerEntry)
            .where(*self._key(holder, feature_key, period_start))
            .values(extra_allowance=UsageLedgerEntry.extra_allowance + amount)
            .returning(UsageLedgerEntry.extra_allowance)
            .execution_options(synchronize_session=False),
        )
        return result.scalar_one()

    async def roll_over(
        self,
        holder: Holder,
        old_period_start: datetime,
        new_period_start: datetime,
        now: datetime | None = None,
    ) -> int:
        """Move a holder's counters into a new period and zero them.

        Rows of the elapsed period are re-keyed to ``new_period_start`` with
        consumption and credits cleared; rows older than the new period that
        were not re-keyed are dropped.

        Returns:
            Number of rows reset
        """
        now = now or utcnow()
        holder_filter = (
            UsageLedgerEntry.holder_type == holder.type,
            UsageLedgerEntry.holder_id == holder.id,
        )

        # Rows already created for the new period would collide with the re-key
        await self.db.execute(
            delete(UsageLedgerEntry)
            .where(*holder_filter, UsageLedgerEntry.period_start == new_period_start)
            .execution_options(synchronize_session=False),
        )
        result = await self.db.execute(
            update(UsageLedgerEntry)
            .where(*holder_filter, UsageLedgerEntry.period_start == old_period_start)
            .values(
                period_start=new_period_start,
                consumed=0,
                extra_allowance=0,
                last_reset_at=now,
            )
            .execution_options(synchronize_session=False),
        )
        await self.db.execute(
            delete(UsageLedgerEntry)
            .where(*holder_filter, UsageLedgerEntry.period_start < new_period_start)
            .execution_options(synchronize_session=False),
        )
        return result.rowcount or 0

    async def reset_period(
        self,
        holder: Holder,
        period_start: datetime,
        feature_key: str | None = None,
    ) -> int:
        """Zero consumption for a holder's period without touching credits."""
        conditions = [
            UsageLedgerEntry.holder_type == holder.type,
            UsageLedgerEntry.holder_id == holder.id,
            UsageLedgerEntry.period_start == period_start,
        ]
        if feature_key is not None:
            conditions.append(UsageLedgerEntry.feature_key == feature_key)

        result = await self.db.execute(
            update(UsageLedgerEntry)
            .where(*conditions)
            .values(consumed=0, last_reset_at=utcnow())
            .execution_options(synchronize_session=False),
        )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Holder-level operations
    # ------------------------------------------------------------------

    async def grant_extra_allowance(self, holder: Holder, feature_key: str, amount: int) -> int:
        """Add ad-hoc credits to the holder's current period.

        Credits raise the effective cap until the period rolls over.

        Returns:
            The holder's total extra allowance for the feature this period

        Raises:
            InvalidAmountError: If amount is not a positive integer
            FeatureNotFoundError: If the feature does not exist
        """
        validate_amount(amount)
        await self.catalog.require_feature(feature_key)
        context = await self.resolver.resolve_billing_context(holder)

        total = await self.add_allowance(holder, feature_key, context.period_start, amount)
        self.logger.info(
            "extra_allowance_granted",
            holder=str(holder),
            feature_key=feature_key,
            amount=amount,
            extra_allowance=total,
            period_start=context.period_start.isoformat(),
        )
        return total

    async def reset_usage(self, holder: Holder, feature_key: str | None = None) -> int:
        """Zero the holder's consumption for the current period."""
        context = await self.resolver.resolve_billing_context(holder)
        count = await self.reset_period(holder, context.period_start, feature_key)
        self.logger.info(
            "usage_reset",
            holder=str(holder),
            feature_key=feature_key,
            rows=count,
        )
        return count

    async def get_usage_snapshot(
        self,
        holder: Holder,
        context: BillingContext | None = None,
    ) -> UsageSnapshot:
        """Build the holder's read model for every feature on its plan."""
        context = context or await self.resolver.resolve_billing_context(holder)

        items: list[FeatureUsage] = []
        if context.plan_id is not None:
            features = {f.key: f for f in await self.catalog.list_features()}
            readings = await self.read_period(holder, context.period_start)
            for entitlement in await self.catalog.list_entitlements(context.plan_id):
                feature = features[entitlement.feature_key]
                reading = readings.get(feature.key, LedgerReading(0, 0))
                items.append(_feature_usage(feature, entitlement, reading))

        return UsageSnapshot(
            holder_type=holder.type,
            holder_id=holder.id,
            plan_id=context.plan_id,
            subscription_id=context.subscription_id,
            is_fallback=context.is_fallback,
            period_start=context.period_start,
            period_end=context.period_end,
            features=items,
        )


def _feature_usage(
    feature: Feature,
    entitlement: FeatureEntitlement,
    reading: LedgerReading,
) -> FeatureUsage:
    usage = FeatureUsage(
        feature_key=feature.key,
        feature_name=feature.name,
        kind=feature.kind,
        unit=feature.unit,
        enabled=entitlement.enabled,
        consumed=reading.consumed,
        extra_allowance=reading.extra_allowance,
    )
    if feature.kind == FeatureKind.BOOLEAN or entitlement.monthly_cap is None:
        return usage

    limit = entitlement.monthly_cap + reading.extra_allowance
    usage.cap = entitlement.monthly_cap
    usage.remaining = max(limit - reading.consumed, 0)
    usage.overage = max(reading.consumed - limit, 0)
    return usage
