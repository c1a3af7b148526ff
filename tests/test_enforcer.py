"""Tests for the quota enforcer check / consume protocol."""

from datetime import UTC, datetime

import pytest
import structlog
from prometheus_client import REGISTRY
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from talentgate.core.exceptions import (
    ErrorCode,
    FeatureNotAllowedError,
    HolderNotFoundError,
    InvalidAmountError,
)
from talentgate.entitlements.catalog import PlanCatalog
from talentgate.entitlements.enforcer import QuotaEnforcer
from talentgate.entitlements.holder import Holder
from talentgate.entitlements.ledger import UsageLedger
from talentgate.entitlements.models import UsageLedgerEntry
from talentgate.entitlements.schemas import EntitlementUpsert
from talentgate.entitlements.subscriptions import SubscriptionService
from tests.conftest import FREE_ORG_PLAN, PAID_ORG_PLAN


def _sample(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


async def _consumed(db: AsyncSession, holder: Holder, feature_key: str) -> int:
    total = await db.scalar(
        select(func.coalesce(func.sum(UsageLedgerEntry.consumed), 0)).where(
            UsageLedgerEntry.holder_type == holder.type,
            UsageLedgerEntry.holder_id == holder.id,
            UsageLedgerEntry.feature_key == feature_key,
        ),
    )
    return int(total)


class TestCheckAllowed:
    """Tests for QuotaEnforcer.check_allowed."""

    async def test_quota_with_extra_allowance(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        """Org on the free plan: 5 of 10 used, 6 more denied until credits are granted."""
        enforcer = QuotaEnforcer(db_session)

        first = await enforcer.check_allowed(org, "ai_screenings", 5)
        assert first.ok is True
        assert first.reason is None
        await enforcer.consume(org, "ai_screenings", 5)

        denied = await enforcer.check_allowed(org, "ai_screenings", 6)
        assert denied.ok is False
        assert denied.reason == ErrorCode.QUOTA_EXCEEDED

        await UsageLedger(db_session).grant_extra_allowance(org, "ai_screenings", 5)

        allowed = await enforcer.check_allowed(org, "ai_screenings", 6)
        assert allowed.ok is True

    async def test_exact_cap_is_allowed(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        enforcer = QuotaEnforcer(db_session)
        assert (await enforcer.check_allowed(org, "ai_screenings", 10)).ok is True
        assert (await enforcer.check_allowed(org, "ai_screenings", 11)).ok is False

    async def test_feature_missing_from_plan(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        enforcer = QuotaEnforcer(db_session)

        result = await enforcer.check_allowed(org, "corporate_clients", 1)
        assert result.ok is False
        assert result.reason == ErrorCode.FEATURE_NOT_IN_PLAN

        # Registered feature without an entitlement row on the free plan
        result = await enforcer.check_allowed(org, "candidates", 1)
        assert result.reason == ErrorCode.FEATURE_NOT_IN_PLAN

    async def test_disabled_feature(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        result = await QuotaEnforcer(db_session).check_allowed(org, "jobdesc_ai")
        assert result.ok is False
        assert result.reason == ErrorCode.FEATURE_DISABLED

    async def test_disabling_entitlement_applies_immediately(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        """Every holder on the plan sees the edit on the next check."""
        other = Holder.org("org-99")
        enforcer = QuotaEnforcer(db_session)
        assert (await enforcer.check_allowed(org, "job_posts")).ok is True
        assert (await enforcer.check_allowed(other, "job_posts")).ok is True

        await catalog.upsert_entitlement(
            FREE_ORG_PLAN,
            EntitlementUpsert(feature_key="job_posts", enabled=False, monthly_cap=2),
        )

        for holder in (org, other):
            result = await enforcer.check_allowed(holder, "job_posts")
            assert result.reason == ErrorCode.FEATURE_DISABLED

    async def test_boolean_feature_skips_ledger(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        result = await QuotaEnforcer(db_session).check_allowed(org, "fraud_ai", 1000)
        assert result.ok is True

    async def test_uncapped_metered_feature(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        await SubscriptionService(db_session).subscribe(org, PAID_ORG_PLAN)
        enforcer = QuotaEnforcer(db_session)

        assert (await enforcer.check_allowed(org, "ai_screenings", 1_000_000)).ok is True
        await enforcer.consume(org, "ai_screenings", 500)
        assert (await enforcer.check_allowed(org, "ai_screenings", 1_000_000)).ok is True

    async def test_check_never_writes(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        enforcer = QuotaEnforcer(db_session)
        for _ in range(3):
            await enforcer.check_allowed(org, "job_posts", 1)

        rows = await db_session.scalar(select(func.count()).select_from(UsageLedgerEntry))
        assert rows == 0

    async def test_missing_free_plan_denies_everything(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        enforcer = QuotaEnforcer(db_session)
        enforcer.resolver.settings = enforcer.resolver.settings.model_copy(
            update={"free_plan_org": "no-such-plan"},
        )

        result = await enforcer.check_allowed(org, "fraud_ai")
        assert result.ok is False
        assert result.reason == ErrorCode.FEATURE_NOT_IN_PLAN

    @pytest.mark.parametrize("amount", [0, -1, 1.5, True, "3"])
    async def test_invalid_amount(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
        amount: object,
    ) -> None:
        with pytest.raises(InvalidAmountError):
            await QuotaEnforcer(db_session).check_allowed(org, "job_posts", amount)  # type: ignore[arg-type]

    async def test_unknown_holder_with_directory(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        class Directory:
            async def exists(self, holder: Holder) -> bool:
                return holder.id == "known"

        enforcer = QuotaEnforcer(db_session, directory=Directory())
        assert (await enforcer.check_allowed(Holder.org("known"), "fraud_ai")).ok is True

        with pytest.raises(HolderNotFoundError) as exc_info:
            await enforcer.check_allowed(org, "fraud_ai")
        assert exc_info.value.error_code == ErrorCode.HOLDER_NOT_FOUND

    async def test_counts_checks_by_outcome(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        before = _sample(
            "talentgate_entitlement_checks_total",
            feature="jobdesc_ai",
            outcome="FEATURE_DISABLED",
        )
        await QuotaEnforcer(db_session).check_allowed(org, "jobdesc_ai")
        after = _sample(
            "talentgate_entitlement_checks_total",
            feature="jobdesc_ai",
            outcome="FEATURE_DISABLED",
        )
        assert after - before == 1


class TestConsume:
    """Tests for QuotaEnforcer.consume."""

    async def test_consume_creates_row_lazily(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        enforcer = QuotaEnforcer(db_session)
        assert await enforcer.consume(org, "job_posts") == 1
        assert await enforcer.consume(org, "job_posts") == 2
        assert await _consumed(db_session, org, "job_posts") == 2

    async def test_overshoot_after_concurrent_checks(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        """Five checks pass before any consume lands; cap 2 ends at 5 with 3 flagged."""
        enforcer = QuotaEnforcer(db_session)
        overshoot_before = _sample("talentgate_usage_overshoot_total", feature="job_posts")

        checks = [await enforcer.check_allowed(org, "job_posts", 1) for _ in range(5)]
        assert all(check.ok for check in checks)

        for _ in range(5):
            await enforcer.consume(org, "job_posts", 1)

        assert await _consumed(db_session, org, "job_posts") == 5
        overshoot_after = _sample("talentgate_usage_overshoot_total", feature="job_posts")
        assert overshoot_after - overshoot_before == 3

    async def test_over_cap_consume_is_still_recorded(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        enforcer = QuotaEnforcer(db_session)
        await enforcer.consume(org, "ai_screenings", 9)
        assert await enforcer.consume(org, "ai_screenings", 4) == 13

        snapshot = await enforcer.get_entitlements(org)
        line = next(f for f in snapshot.features if f.feature_key == "ai_screenings")
        assert line.consumed == 13
        assert line.remaining == 0
        assert line.overage == 3

    async def test_extra_allowance_raises_conditional_limit(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        enforcer = QuotaEnforcer(db_session)
        await UsageLedger(db_session).grant_extra_allowance(org, "job_posts", 3)

        before = _sample("talentgate_usage_overshoot_total", feature="job_posts")
        for _ in range(5):
            await enforcer.consume(org, "job_posts")
        after = _sample("talentgate_usage_overshoot_total", feature="job_posts")

        assert after == before
        assert (await enforcer.check_allowed(org, "job_posts")).reason == ErrorCode.QUOTA_EXCEEDED

    async def test_boolean_consume_increments_unconditionally(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        enforcer = QuotaEnforcer(db_session)
        await enforcer.consume(org, "fraud_ai", 3)
        await enforcer.consume(org, "fraud_ai", 4)
        assert await _consumed(db_session, org, "fraud_ai") == 7

    async def test_consume_uses_subscription_period(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        subscription = await SubscriptionService(db_session).subscribe(org, PAID_ORG_PLAN)
        await QuotaEnforcer(db_session).consume(org, "job_posts", 2)

        period_start = await db_session.scalar(
            select(UsageLedgerEntry.period_start).where(UsageLedgerEntry.holder_id == org.id),
        )
        assert period_start.replace(tzinfo=UTC) == subscription.current_period_start.replace(tzinfo=UTC)

    async def test_fallback_period_is_calendar_month(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        now = datetime(2026, 3, 17, 15, 30, tzinfo=UTC)
        await QuotaEnforcer(db_session).consume(org, "job_posts", now=now)

        period_start = await db_session.scalar(select(UsageLedgerEntry.period_start))
        assert period_start.replace(tzinfo=UTC) == datetime(2026, 3, 1, tzinfo=UTC)


class TestGate:
    """Tests for the gate context manager."""

    async def test_gate_consumes_after_success(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        enforcer = QuotaEnforcer(db_session)
        async with enforcer.gate(org, "job_posts") as result:
            assert result.ok is True
        assert await _consumed(db_session, org, "job_posts") == 1

    async def test_gate_denial_raises(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        enforcer = QuotaEnforcer(db_session)
        action_ran = False

        with pytest.raises(FeatureNotAllowedError) as exc_info:
            async with enforcer.gate(org, "jobdesc_ai"):
                action_ran = True

        assert action_ran is False
        assert exc_info.value.reason == ErrorCode.FEATURE_DISABLED
        assert exc_info.value.http_status == 402

    async def test_failed_action_is_not_consumed(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        enforcer = QuotaEnforcer(db_session)

        with pytest.raises(RuntimeError):
            async with enforcer.gate(org, "job_posts"):
                raise RuntimeError("publish failed")

        assert await _consumed(db_session, org, "job_posts") == 0


class TestAuditEvents:
    async def test_over_cap_consume_is_logged(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        enforcer = QuotaEnforcer(db_session)
        await enforcer.consume(org, "job_posts", 2)

        with structlog.testing.capture_logs() as logs:
            await enforcer.consume(org, "job_posts", 1)

        over_cap = [entry for entry in logs if entry["event"] == "usage_over_cap"]
        assert len(over_cap) == 1
        assert over_cap[0]["log_level"] == "warning"
        assert over_cap[0]["holder"] == "org:org-42"
        assert over_cap[0]["consumed"] == 3
        assert over_cap[0]["cap"] == 2

    async def test_denial_is_logged(
        self,
        db_session: AsyncSession,
        catalog: PlanCatalog,
        org: Holder,
    ) -> None:
        with structlog.testing.capture_logs() as logs:
            await QuotaEnforcer(db_session).check_allowed(org, "corporate_clients")

        denied = [entry for entry in logs if entry["event"] == "entitlement_denied"]
        assert denied[0]["reason"] == "FEATURE_NOT_IN_PLAN"
