"""Entitlement, subscription and usage-ledger models."""

import enum
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from talentgate.models.base import Base, TimestampMixin


class FeatureKind(str, enum.Enum):
    """How a feature is gated."""

    BOOLEAN = "boolean"
    METERED = "metered"


class HolderType(str, enum.Enum):
    """Kind of principal that owns a subscription."""

    USER = "user"
    ORG = "org"


class SubscriptionStatus(str, enum.Enum):
    """Subscription status enum."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class PlanInterval(str, enum.Enum):
    """Billing interval enum."""

    MONTHLY = "monthly"
    ANNUAL = "annual"


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    return Enum(enum_cls, values_callable=lambda x: [e.value for e in x])


class Feature(Base, TimestampMixin):
    """A billable capability, either an on/off toggle or a metered quota."""

    __tablename__ = "features"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[FeatureKind] = mapped_column(_enum_column(FeatureKind), nullable=False)
    unit: Mapped[str | None] = mapped_column(String(32), nullable=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    @property
    def is_metered(self) -> bool:
        return self.kind == FeatureKind.METERED


class Plan(Base, TimestampMixin):
    """A purchasable tier of a product, priced per interval.

    Plans are append-only with respect to their subscribers: new pricing
    ships as a new plan id rather than an edit of an existing one.
    """

    __tablename__ = "plans"
    __table_args__ = (
        UniqueConstraint("product", "tier", "interval", "version", name="uq_plans_product_tier"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    product: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    tier: Mapped[str] = mapped_column(String(32), nullable=False)
    interval: Mapped[PlanInterval] = mapped_column(
        _enum_column(PlanInterval),
        default=PlanInterval.MONTHLY,
        nullable=False,
    )
    price_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="ZAR", nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_public: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class FeatureEntitlement(Base, TimestampMixin):
    """What a plan grants for one feature.

    A missing row means the feature cannot be used on the plan at all, which
    is reported differently from a row with ``enabled = False``.
    """

    __tablename__ = "plan_entitlements"

    plan_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("plans.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    feature_key: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("features.key", ondelete="RESTRICT"),
        primary_key=True,
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # NULL on a metered feature means uncapped
    monthly_cap: Mapped[int | None] = mapped_column(Integer, nullable=True)
    overage_unit_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)


class Subscription(Base, TimestampMixin):
    """A holder's subscription to a plan for a billing period."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_holder_status", "holder_type", "holder_id", "status"),
        Index("ix_subscriptions_status_period_end", "status", "current_period_end"),
        Index(
            "uq_subscriptions_holder_active",
            "holder_type",
            "holder_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    holder_type: Mapped[HolderType] = mapped_column(_enum_column(HolderType), nullable=False)
    holder_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plan_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("plans.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus),
        default=SubscriptionStatus.ACTIVE,
        nullable=False,
    )
    current_period_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scheduled_cancellation_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    past_due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    external_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)


class UsageLedgerEntry(Base, TimestampMixin):
    """Consumption counter for one holder, feature and billing period."""

    __tablename__ = "usage_ledger"
    __table_args__ = (
        UniqueConstraint(
            "holder_type",
            "holder_id",
            "feature_key",
            "period_start",
            name="uq_usage_ledger_holder_feature_period",
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    holder_type: Mapped[HolderType] = mapped_column(_enum_column(HolderType), nullable=False)
    holder_id: Mapped[str] = mapped_column(String(64), nullable=False)
    feature_key: Mapped[str] = mapped_column(String(64), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    consumed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    extra_allowance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_reset_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PaymentEvent(Base):
    """An inbound payment-gateway notification, stored once per gateway event id."""

    __tablename__ = "payment_events"
    __table_args__ = (
        UniqueConstraint("gateway", "event_id", name="uq_payment_events_gateway_event"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    gateway: Mapped[str] = mapped_column(String(32), nullable=False)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        default=dict,
        nullable=False,
    )
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
