"""Default feature catalog and plan grid of the recruiting platform.

Run with ``talentgate-seed`` (or ``python -m talentgate.entitlements.seed``)
against the configured database. Seeding is idempotent: features and plans
are upserted by key and id, entitlement lines by ``(plan, feature)``.
"""

import asyncio
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from talentgate.core.config import get_settings
from talentgate.core.database import get_session_context
from talentgate.core.logging import configure_logging, get_logger
from talentgate.entitlements.catalog import PlanCatalog
from talentgate.entitlements.models import Feature, FeatureKind, Plan, PlanInterval
from talentgate.entitlements.schemas import EntitlementUpsert

logger = get_logger(__name__)

BOOLEAN = FeatureKind.BOOLEAN
METERED = FeatureKind.METERED


@dataclass(frozen=True)
class FeatureSeed:
    key: str
    name: str
    description: str
    kind: FeatureKind
    unit: str | None = None


FEATURES: list[FeatureSeed] = [
    # Organization features (recruiters and corporates)
    FeatureSeed("job_posts", "Job Posts", "Number of active job postings per month", METERED, "posts"),
    FeatureSeed("candidates", "Candidates", "Candidate profiles and applications managed per month", METERED, "candidates"),
    FeatureSeed("ai_screenings", "AI Screenings", "Automated AI screening runs per month", METERED, "runs"),
    FeatureSeed("fraud_ai", "Fraud & Spam AI", "Automated fraud and spam detection for applications", BOOLEAN),
    FeatureSeed("competency_tests", "Competency Tests (AI)", "AI-generated tests issued per month", METERED, "tests"),
    FeatureSeed("interview_agent", "Interview Agent (AI)", "Structured AI interview sessions per month", METERED, "interviews"),
    FeatureSeed("jobdesc_ai", "Job Description Agent", "Generate and refine job descriptions with AI", BOOLEAN),
    FeatureSeed("whatsapp_apply_org", "WhatsApp Apply (Org)", "WhatsApp-first application channel", BOOLEAN),
    # Individual features
    FeatureSeed("browse_jobs", "Browse Jobs", "Search and browse all public jobs", BOOLEAN),
    FeatureSeed("cv_builder", "Build CV", "Create branded CVs in the builder", METERED, "CVs"),
    FeatureSeed("cv_upload_ai", "Upload CV (AI Parse)", "AI-powered CV parsing uploads", METERED, "uploads"),
    FeatureSeed("match_agent", "Job Match Agent", "AI matches a profile to relevant jobs", BOOLEAN),
    FeatureSeed("whatsapp_apply_user", "WhatsApp Apply", "Apply to jobs through WhatsApp", BOOLEAN),
    FeatureSeed("ai_interview_coach", "AI Interview Coach", "Practice interviews with an AI coach", BOOLEAN),
    FeatureSeed("cv_review_ai", "Review my CV (AI)", "Automated AI review suggestions for CVs", BOOLEAN),
    FeatureSeed("career_visualizer", "Career Path Visualizer", "AI career roadmap visualization", BOOLEAN),
]

# Monthly prices in ZAR cents; annual plans charge ten months
PRICES: dict[tuple[str, str], int] = {
    ("individual", "free"): 0,
    ("individual", "standard"): 9900,
    ("individual", "premium"): 29900,
    ("recruiter", "free"): 0,
    ("recruiter", "standard"): 79900,
    ("recruiter", "premium"): 199900,
    ("corporate", "free"): 0,
    ("corporate", "standard"): 79900,
    ("corporate", "premium"): 199900,
}

ANNUAL_MONTHS_CHARGED = 10

# A line is either a cap (None = uncapped) for metered features or an
# enabled flag for boolean ones. False on a metered feature disables it.
Line = int | bool | None

ORG_KEYS = (
    "job_posts",
    "candidates",
    "ai_screenings",
    "fraud_ai",
    "competency_tests",
    "interview_agent",
    "jobdesc_ai",
    "whatsapp_apply_org",
)
INDIVIDUAL_KEYS = (
    "browse_jobs",
    "cv_builder",
    "cv_upload_ai",
    "match_agent",
    "whatsapp_apply_user",
    "ai_interview_coach",
    "cv_review_ai",
    "career_visualizer",
)

ENTITLEMENTS: dict[tuple[str, str], tuple[Line, ...]] = {
    ("recruiter", "free"): (2, 10, 50, True, 10, 10, False, True),
    ("recruiter", "standard"): (50, 100, None, True, None, None, True, True),
    ("recruiter", "premium"): (None, None, None, True, None, None, True, True),
    ("corporate", "free"): (1, 5, 5, True, 2, 2, False, True),
    ("corporate", "standard"): (5, 50, None, True, None, None, True, True),
    ("corporate", "premium"): (None, None, None, True, None, None, True, True),
    ("individual", "free"): (True, 1, False, False, False, False, False, False),
    ("individual", "standard"): (True, None, 10, True, True, True, False, False),
    ("individual", "premium"): (True, None, None, True, True, True, True, True),
}


def plan_id_for(product: str, tier: str, interval: PlanInterval) -> str:
    return f"{product}-{tier}-{interval.value}"


def _entitlement_line(feature: FeatureSeed, line: Line) -> EntitlementUpsert:
    if line is False or line is True:
        return EntitlementUpsert(feature_key=feature.key, enabled=line)
    if feature.kind == BOOLEAN:
        raise ValueError(f"Boolean feature {feature.key} cannot carry a cap")
    return EntitlementUpsert(feature_key=feature.key, enabled=True, monthly_cap=line)


async def seed_default_catalog(session: AsyncSession) -> dict[str, int]:
    """Upsert the default features, plans and entitlements.

    Returns:
        Counts of features, plans and entitlement lines written
    """
    catalog = PlanCatalog(session)
    features = {f.key: f for f in FEATURES}

    for spec in FEATURES:
        feature = await catalog.get_feature(spec.key)
        if feature is None:
            session.add(
                Feature(
                    key=spec.key,
                    kind=spec.kind,
                    unit=spec.unit,
                    name=spec.name,
                    description=spec.description,
                ),
            )
        else:
            feature.name = spec.name
            feature.description = spec.description
            feature.unit = spec.unit
    await session.flush()

    plans_written = 0
    lines_written = 0
    for (product, tier), monthly in PRICES.items():
        keys = INDIVIDUAL_KEYS if product == "individual" else ORG_KEYS
        lines = [
            _entitlement_line(features[key], line)
            for key, line in zip(keys, ENTITLEMENTS[(product, tier)], strict=True)
        ]

        for interval in PlanInterval:
            price = monthly if interval == PlanInterval.MONTHLY else monthly * ANNUAL_MONTHS_CHARGED
            plan_id = plan_id_for(product, tier, interval)
            plan = await catalog.get_plan(plan_id)
            if plan is None:
                session.add(
                    Plan(
                        id=plan_id,
                        product=product,
                        tier=tier,
                        interval=interval,
                        price_cents=price,
                        currency="ZAR",
                        version=1,
                        is_public=True,
                    ),
                )
                await session.flush()
            else:
                plan.price_cents = price
            plans_written += 1

            for line in lines:
                await catalog.upsert_entitlement(plan_id, line)
                lines_written += 1

    await session.flush()
    logger.info(
        "catalog_seeded",
        features=len(FEATURES),
        plans=plans_written,
        entitlements=lines_written,
    )
    return {"features": len(FEATURES), "plans": plans_written, "entitlements": lines_written}


async def _seed() -> None:
    async with get_session_context() as session:
        await seed_default_catalog(session)


def main() -> None:
    settings = get_settings()
    configure_logging(json_logs=settings.is_production, log_level="DEBUG" if settings.debug else "INFO")
    asyncio.run(_seed())


if __name__ == "__main__":
    main()
