"""Entitlement engine tables.

Revision ID: 001_entitlements
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_entitlements"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    feature_kind = postgresql.ENUM("boolean", "metered", name="featurekind", create_type=False)
    plan_interval = postgresql.ENUM("monthly", "annual", name="planinterval", create_type=False)
    holder_type = postgresql.ENUM("user", "org", name="holdertype", create_type=False)
    subscription_status = postgresql.ENUM(
        "active", "past_due", "canceled", name="subscriptionstatus", create_type=False
    )
    # holdertype is shared by two tables, so types are created up front
    for enum_type in (feature_kind, plan_interval, holder_type, subscription_status):
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "features",
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("kind", feature_kind, nullable=False),
        sa.Column("unit", sa.String(32), nullable=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("key", name="pk_features"),
    )

    op.create_table(
        "plans",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("product", sa.String(32), nullable=False),
        sa.Column("tier", sa.String(32), nullable=False),
        sa.Column("interval", plan_interval, nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="ZAR"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_plans"),
        sa.UniqueConstraint("product", "tier", "interval", "version", name="uq_plans_product_tier"),
    )
    op.create_index("ix_plans_product", "plans", ["product"])

    op.create_table(
        "plan_entitlements",
        sa.Column("plan_id", sa.String(64), nullable=False),
        sa.Column("feature_key", sa.String(64), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("monthly_cap", sa.Integer(), nullable=True),
        sa.Column("overage_unit_cents", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("plan_id", "feature_key", name="pk_plan_entitlements"),
        sa.ForeignKeyConstraint(
            ["plan_id"],
            ["plans.id"],
            name="fk_plan_entitlements_plan_id_plans",
            ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["feature_key"],
            ["features.key"],
            name="fk_plan_entitlements_feature_key_features",
            ondelete="RESTRICT",
        ),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("holder_type", holder_type, nullable=False),
        sa.Column("holder_id", sa.String(64), nullable=False),
        sa.Column("plan_id", sa.String(64), nullable=False),
        sa.Column("status", subscription_status, nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_cancellation_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("past_due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_ref", sa.String(128), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_subscriptions"),
        sa.ForeignKeyConstraint(
            ["plan_id"],
            ["plans.id"],
            name="fk_subscriptions_plan_id_plans",
            ondelete="RESTRICT",
        ),
    )
    op.create_index("ix_subscriptions_plan_id", "subscriptions", ["plan_id"])
    op.create_index(
        "ix_subscriptions_holder_status",
        "subscriptions",
        ["holder_type", "holder_id", "status"],
    )
    op.create_index(
        "ix_subscriptions_status_period_end",
        "subscriptions",
        ["status", "current_period_end"],
    )
    op.create_index(
        "uq_subscriptions_holder_active",
        "subscriptions",
        ["holder_type", "holder_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "usage_ledger",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("holder_type", holder_type, nullable=False),
        sa.Column("holder_id", sa.String(64), nullable=False),
        sa.Column("feature_key", sa.String(64), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("extra_allowance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_reset_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_usage_ledger"),
        sa.UniqueConstraint(
            "holder_type",
            "holder_id",
            "feature_key",
            "period_start",
            name="uq_usage_ledger_holder_feature_period",
        ),
    )

    op.create_table(
        "payment_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("gateway", sa.String(32), nullable=False),
        sa.Column("event_id", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("failed_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_payment_events"),
        sa.UniqueConstraint("gateway", "event_id", name="uq_payment_events_gateway_event"),
    )
    op.create_index("ix_payment_events_event_type", "payment_events", ["event_type"])


def downgrade() -> None:
    op.drop_index("ix_payment_events_event_type", table_name="payment_events")
    op.drop_table("payment_events")
    op.drop_table("usage_ledger")
    op.drop_index("uq_subscriptions_holder_active", table_name="subscriptions")
    op.drop_index("ix_subscriptions_status_period_end", table_name="subscriptions")
    op.drop_index("ix_subscriptions_holder_status", table_name="subscriptions")
    op.drop_index("ix_subscriptions_plan_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("plan_entitlements")
    op.drop_index("ix_plans_product", table_name="plans")
    op.drop_table("plans")
    op.drop_table("features")

    for enum_name in ("subscriptionstatus", "holdertype", "planinterval", "featurekind"):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
