"""Prometheus metrics for the entitlement engine."""

from collections.abc import Iterator
from contextlib import contextmanager
from time import time

from prometheus_client import Counter, Histogram

# Entitlement checks
entitlement_checks_total = Counter(
    "talentgate_entitlement_checks_total",
    "Total number of entitlement checks",
    ["feature", "outcome"],
)

# Usage metering
usage_consumed_units_total = Counter(
    "talentgate_usage_consumed_units_total",
    "Units recorded against the usage ledger",
    ["feature", "billing"],
)

usage_overshoot_total = Counter(
    "talentgate_usage_overshoot_total",
    "Consume calls that pushed a holder past its cap",
    ["feature"],
)

# Billing cycle
billing_cycle_actions_total = Counter(
    "talentgate_billing_cycle_actions_total",
    "Subscription transitions applied by the billing cycle scheduler",
    ["action"],
)

billing_cycle_duration_seconds = Histogram(
    "talentgate_billing_cycle_duration_seconds",
    "Duration of billing cycle scheduler runs in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0),
)


def track_entitlement_check(feature: str, outcome: str) -> None:
    """Track an entitlement check.

    Args:
        feature: Feature key that was checked
        outcome: 'ok' or the denial reason code
    """
    entitlement_checks_total.labels(feature=feature, outcome=outcome).inc()


def track_usage(feature: str, billing: str, amount: int) -> None:
    """Track consumed units.

    Args:
        feature: Feature key that was consumed
        billing: One of 'within_cap', 'over_cap', 'uncapped'
        amount: Units consumed
    """
    usage_consumed_units_total.labels(feature=feature, billing=billing).inc(amount)
    if billing == "over_cap":
        usage_overshoot_total.labels(feature=feature).inc()


def track_billing_action(action: str, count: int = 1) -> None:
    if count:
        billing_cycle_actions_total.labels(action=action).inc(count)


@contextmanager
def track_billing_cycle_time() -> Iterator[None]:
    """Context manager to track scheduler run duration.

    Example:
        with track_billing_cycle_time():
            summary = await scheduler.run()
    """
    start = time()
    try:
        yield
    finally:
        billing_cycle_duration_seconds.observe(time() - start)
