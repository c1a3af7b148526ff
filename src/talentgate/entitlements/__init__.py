"""Feature entitlement and usage-metering engine."""

from talentgate.entitlements.catalog import PlanCatalog
from talentgate.entitlements.enforcer import QuotaEnforcer
from talentgate.entitlements.holder import Holder, HolderDirectory
from talentgate.entitlements.ledger import UsageLedger
from talentgate.entitlements.models import (
    Feature,
    FeatureEntitlement,
    FeatureKind,
    HolderType,
    PaymentEvent,
    Plan,
    PlanInterval,
    Subscription,
    SubscriptionStatus,
    UsageLedgerEntry,
)
from talentgate.entitlements.payments import PaymentEventProcessor
from talentgate.entitlements.resolver import BillingContext, SubscriptionResolver
from talentgate.entitlements.scheduler import BillingCycleScheduler
from talentgate.entitlements.schemas import CheckResult, UsageSnapshot
from talentgate.entitlements.subscriptions import SubscriptionService

__all__ = [
    "BillingContext",
    "BillingCycleScheduler",
    "CheckResult",
    "Feature",
    "FeatureEntitlement",
    "FeatureKind",
    "Holder",
    "HolderDirectory",
    "HolderType",
    "PaymentEvent",
    "PaymentEventProcessor",
    "Plan",
    "PlanCatalog",
    "PlanInterval",
    "QuotaEnforcer",
    "Subscription",
    "SubscriptionResolver",
    "SubscriptionService",
    "SubscriptionStatus",
    "UsageLedger",
    "UsageLedgerEntry",
    "UsageSnapshot",
]
