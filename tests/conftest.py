"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from talentgate.api.dependencies.database import get_db
from talentgate.api.main import app
from talentgate.core.config import get_settings
from talentgate.entitlements import models  # noqa: F401
from talentgate.entitlements.catalog import PlanCatalog
from talentgate.entitlements.holder import Holder
from talentgate.entitlements.models import FeatureKind
from talentgate.entitlements.schemas import EntitlementUpsert, FeatureCreate, PlanCreate
from talentgate.models.base import Base

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

FREE_ORG_PLAN = "recruiter-free-monthly"
PAID_ORG_PLAN = "recruiter-standard-monthly"
FREE_USER_PLAN = "individual-free-monthly"


def use_explicit_transactions(engine: AsyncEngine, begin: str = "BEGIN") -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest inside a real transaction.

    ``BEGIN IMMEDIATE`` takes the write lock up front, which makes concurrent
    sessions on a file database queue on the busy timeout instead of failing
    to upgrade a shared lock.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection: Any, _record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn: Any) -> None:
        conn.exec_driver_sql(begin)


async def build_catalog(session: AsyncSession) -> PlanCatalog:
    """Create free and paid recruiter plans plus an empty individual plan."""
    catalog = PlanCatalog(session)

    for key, kind, unit in [
        ("job_posts", FeatureKind.METERED, "posts"),
        ("ai_screenings", FeatureKind.METERED, "runs"),
        ("candidates", FeatureKind.METERED, "candidates"),
        ("fraud_ai", FeatureKind.BOOLEAN, None),
        ("jobdesc_ai", FeatureKind.BOOLEAN, None),
    ]:
        await catalog.create_feature(
            FeatureCreate(key=key, kind=kind, unit=unit, name=key.replace("_", " ").title()),
        )

    await catalog.create_plan(PlanCreate(id=FREE_ORG_PLAN, product="recruiter", tier="free"))
    await catalog.create_plan(
        PlanCreate(id=PAID_ORG_PLAN, product="recruiter", tier="standard", price_cents=79900),
    )
    await catalog.create_plan(PlanCreate(id=FREE_USER_PLAN, product="individual", tier="free"))

    await catalog.replace_entitlements(
        FREE_ORG_PLAN,
        [
            EntitlementUpsert(feature_key="job_posts", monthly_cap=2),
            EntitlementUpsert(feature_key="ai_screenings", monthly_cap=10),
            EntitlementUpsert(feature_key="fraud_ai", enabled=True),
            EntitlementUpsert(feature_key="jobdesc_ai", enabled=False),
        ],
    )
    await catalog.replace_entitlements(
        PAID_ORG_PLAN,
        [
            EntitlementUpsert(feature_key="job_posts", monthly_cap=50),
            EntitlementUpsert(feature_key="ai_screenings", monthly_cap=None),
            EntitlementUpsert(feature_key="candidates", monthly_cap=100, overage_unit_cents=500),
            EntitlementUpsert(feature_key="fraud_ai", enabled=True),
            EntitlementUpsert(feature_key="jobdesc_ai", enabled=True),
        ],
    )
    return catalog


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create an in-memory database with every table."""
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    use_explicit_transactions(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Create a session that is rolled back after each test."""
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def catalog(db_session: AsyncSession) -> PlanCatalog:
    return await build_catalog(db_session)


@pytest.fixture
def org() -> Holder:
    return Holder.org("org-42")


@pytest.fixture
def user() -> Holder:
    return Holder.user("user-7")


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": get_settings().admin_api_token}


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the test session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
