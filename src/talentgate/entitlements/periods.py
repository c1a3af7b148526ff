"""Billing period arithmetic.

All datetimes handled by the engine are timezone-aware UTC. SQLite drops the
offset on the way back from the database, so values read from a row go
through :func:`ensure_utc` before being compared.
"""

from datetime import UTC, datetime

from dateutil.relativedelta import relativedelta

from talentgate.entitlements.models import PlanInterval

# Upper bound on catch-up iterations for a single rollover
MAX_CATCH_UP_INTERVALS = 1200


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def interval_delta(interval: PlanInterval) -> relativedelta:
    if interval == PlanInterval.ANNUAL:
        return relativedelta(years=1)
    return relativedelta(months=1)


def calendar_month_bounds(now: datetime) -> tuple[datetime, datetime]:
    """Return ``[start, end)`` of the UTC calendar month containing ``now``."""
    now = ensure_utc(now)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start, start + relativedelta(months=1)


def next_period(
    period_end: datetime,
    interval: PlanInterval,
    now: datetime,
) -> tuple[datetime, datetime]:
    """Advance an elapsed period by whole intervals until it contains ``now``.

    Every step is measured from the old ``period_end`` rather than chained,
    so a period ending on the 31st does not drift to the 28th after February.

    Args:
        period_end: End of the period that has elapsed
        interval: Plan billing interval
        now: Reference time

    Returns:
        ``(new_start, new_end)`` with ``new_start <= now < new_end`` when at
        least one interval has elapsed
    """
    anchor = ensure_utc(period_end)
    now = ensure_utc(now)
    delta = interval_delta(interval)

    for steps in range(MAX_CATCH_UP_INTERVALS):
        new_start = anchor + delta * steps
        new_end = anchor + delta * (steps + 1)
        if new_end > now:
            return new_start, new_end
    raise ValueError(f"Period ending {anchor.isoformat()} is too far behind {now.isoformat()}")
