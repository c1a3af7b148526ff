"""Pydantic schemas for the entitlement engine and its HTTP surface."""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from talentgate.core.exceptions import ErrorCode
from talentgate.entitlements.models import (
    FeatureKind,
    HolderType,
    PlanInterval,
    SubscriptionStatus,
)

KEY_PATTERN = r"^[a-z][a-z0-9_]*$"
PLAN_ID_PATTERN = r"^[a-z0-9][a-z0-9_-]*$"


# ============================================================================
# Features
# ============================================================================


class FeatureBase(BaseModel):
    kind: FeatureKind
    unit: str | None = Field(None, max_length=32)
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(None, max_length=500)


class FeatureCreate(FeatureBase):
    """Schema for registering a feature."""

    key: str = Field(..., min_length=1, max_length=64, pattern=KEY_PATTERN)


class FeatureUpdate(BaseModel):
    """Schema for updating a feature. The key and kind are immutable."""

    unit: str | None = Field(None, max_length=32)
    name: str | None = Field(None, min_length=1, max_length=100)
    description: str | None = Field(None, max_length=500)


class FeatureResponse(FeatureCreate):
    model_config = {"from_attributes": True}


# ============================================================================
# Plans
# ============================================================================


class PlanBase(BaseModel):
    product: str = Field(..., min_length=1, max_length=32)
    tier: str = Field(..., min_length=1, max_length=32)
    interval: PlanInterval = PlanInterval.MONTHLY
    price_cents: int = Field(0, ge=0)
    currency: str = Field("ZAR", min_length=3, max_length=3)
    version: int = Field(1, ge=1)
    is_public: bool = True


class PlanCreate(PlanBase):
    """Schema for creating a plan."""

    id: str = Field(..., min_length=1, max_length=64, pattern=PLAN_ID_PATTERN)


class PlanUpdate(BaseModel):
    """Schema for updating a plan."""

    price_cents: int | None = Field(None, ge=0)
    currency: str | None = Field(None, min_length=3, max_length=3)
    is_public: bool | None = None


class PlanResponse(PlanCreate):
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


# ============================================================================
# Entitlements
# ============================================================================


class EntitlementUpsert(BaseModel):
    """One feature line of a plan."""

    feature_key: str = Field(..., min_length=1, max_length=64)
    enabled: bool = True
    monthly_cap: int | None = Field(None, ge=0)
    overage_unit_cents: int | None = Field(None, ge=0)


class EntitlementResponse(EntitlementUpsert):
    plan_id: str

    model_config = {"from_attributes": True}


class EntitlementReplace(BaseModel):
    """Full set of feature lines for a plan."""

    entitlements: list[EntitlementUpsert]

    @model_validator(mode="after")
    def check_unique_features(self) -> "EntitlementReplace":
        keys = [e.feature_key for e in self.entitlements]
        if len(keys) != len(set(keys)):
            raise ValueError("Duplicate feature_key in entitlements")
        return self


# ============================================================================
# Enforcement and read model
# ============================================================================


class CheckResult(BaseModel):
    """Outcome of an entitlement check. ``reason`` is set only when denied."""

    ok: bool
    reason: ErrorCode | None = None

    @classmethod
    def allow(cls) -> "CheckResult":
        return cls(ok=True)

    @classmethod
    def deny(cls, reason: ErrorCode) -> "CheckResult":
        return cls(ok=False, reason=reason)


class CheckRequest(BaseModel):
    feature_key: str = Field(..., min_length=1, max_length=64)
    amount: int = Field(1, ge=1)


class FeatureUsage(BaseModel):
    """Per-feature line of a holder's usage snapshot.

    ``cap`` and ``remaining`` are None for boolean features and for
    uncapped metered features.
    """

    feature_key: str
    feature_name: str
    kind: FeatureKind
    unit: str | None = None
    enabled: bool
    cap: int | None = None
    consumed: int = 0
    extra_allowance: int = 0
    remaining: int | None = None
    overage: int = 0


class UsageSnapshot(BaseModel):
    holder_type: HolderType
    holder_id: str
    plan_id: str | None
    subscription_id: UUID | None = None
    is_fallback: bool
    period_start: datetime
    period_end: datetime
    features: list[FeatureUsage]


# ============================================================================
# Subscriptions
# ============================================================================


class SubscriptionResponse(BaseModel):
    id: UUID
    holder_type: HolderType
    holder_id: str
    plan_id: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    canceled_at: datetime | None = None
    scheduled_cancellation_date: datetime | None = None
    past_due_at: datetime | None = None
    external_ref: str | None = None

    model_config = {"from_attributes": True}


class SubscriptionCreate(BaseModel):
    holder_type: HolderType
    holder_id: str = Field(..., min_length=1, max_length=64)
    plan_id: str
    external_ref: str | None = Field(None, max_length=128)


class ChangePlanRequest(BaseModel):
    plan_id: str = Field(..., min_length=1, max_length=64)
    reset_period: bool = False


class CancelRequest(BaseModel):
    """Cancel at period end by default; ``immediate`` cancels now."""

    immediate: bool = False
    cancel_at: datetime | None = None


# ============================================================================
# Billing administration
# ============================================================================


class HolderRef(BaseModel):
    holder_type: HolderType
    holder_id: str = Field(..., min_length=1, max_length=64)


class GrantCreditsRequest(HolderRef):
    feature_key: str = Field(..., min_length=1, max_length=64)
    amount: int = Field(..., ge=1)


class LedgerEntryResponse(BaseModel):
    holder_type: HolderType
    holder_id: str
    feature_key: str
    period_start: datetime
    consumed: int
    extra_allowance: int

    model_config = {"from_attributes": True}


class BillingCycleSummary(BaseModel):
    rolled_over: int = 0
    canceled: int = 0
    expired_past_due: int = 0
    skipped: int = 0
    failed: int = 0


class PaymentEventCreate(BaseModel):
    gateway: str = Field(..., min_length=1, max_length=32)
    event_id: str = Field(..., min_length=1, max_length=128)
    event_type: str = Field(..., min_length=1, max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict)


class PaymentEventResponse(PaymentEventCreate):
    id: UUID
    processed: bool
    processed_at: datetime | None = None
    error: str | None = None
    failed_attempts: int = 0
    received_at: datetime

    model_config = {"from_attributes": True}


class PaymentEventIntakeResponse(BaseModel):
    event: PaymentEventResponse
    duplicate: bool
    outcome: Literal["processed", "ignored", "failed", "duplicate"]


class ResetUsageRequest(BaseModel):
    """Reset one holder's current period, or run the billing cycle when no holder is given."""

    holder_type: HolderType | None = None
    holder_id: str | None = Field(None, min_length=1, max_length=64)
    feature_key: str | None = None

    @model_validator(mode="after")
    def check_holder_pair(self) -> "ResetUsageRequest":
        if (self.holder_type is None) != (self.holder_id is None):
            raise ValueError("holder_type and holder_id must be given together")
        if self.feature_key is not None and self.holder_type is None:
            raise ValueError("feature_key requires a holder")
        return self


class ResetUsageResponse(BaseModel):
    rows_reset: int | None = None
    billing_cycle: BillingCycleSummary | None = None


class GrantCreditsResponse(BaseModel):
    feature_key: str
    extra_allowance: int
