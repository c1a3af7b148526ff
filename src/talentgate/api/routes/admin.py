"""Administrative routes: catalog, subscriptions and billing operations.

Mounted behind :func:`talentgate.api.dependencies.admin.require_admin`.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from talentgate.api.dependencies.database import get_db
from talentgate.entitlements.catalog import PlanCatalog
from talentgate.entitlements.holder import Holder
from talentgate.entitlements.ledger import UsageLedger
from talentgate.entitlements.payments import PaymentEventProcessor
from talentgate.entitlements.scheduler import BillingCycleScheduler
from talentgate.entitlements.schemas import (
    CancelRequest,
    ChangePlanRequest,
    EntitlementReplace,
    EntitlementResponse,
    EntitlementUpsert,
    FeatureCreate,
    FeatureResponse,
    FeatureUpdate,
    GrantCreditsRequest,
    GrantCreditsResponse,
    PaymentEventCreate,
    PaymentEventIntakeResponse,
    PaymentEventResponse,
    PlanCreate,
    PlanResponse,
    PlanUpdate,
    ResetUsageRequest,
    ResetUsageResponse,
    SubscriptionCreate,
    SubscriptionResponse,
)
from talentgate.entitlements.subscriptions import SubscriptionService

router = APIRouter()

DbSession = Annotated[AsyncSession, Depends(get_db)]


async def get_catalog(db: DbSession) -> PlanCatalog:
    return PlanCatalog(db)


async def get_subscription_service(db: DbSession) -> SubscriptionService:
    return SubscriptionService(db)


Catalog = Annotated[PlanCatalog, Depends(get_catalog)]
Subscriptions = Annotated[SubscriptionService, Depends(get_subscription_service)]


# ============================================================================
# Features
# ============================================================================


@router.get("/features", response_model=list[FeatureResponse])
async def list_features(catalog: Catalog) -> list[FeatureResponse]:
    return [FeatureResponse.model_validate(f) for f in await catalog.list_features()]


@router.post("/features", response_model=FeatureResponse, status_code=status.HTTP_201_CREATED)
async def create_feature(data: FeatureCreate, catalog: Catalog) -> FeatureResponse:
    return FeatureResponse.model_validate(await catalog.create_feature(data))


@router.patch("/features/{key}", response_model=FeatureResponse)
async def update_feature(key: str, data: FeatureUpdate, catalog: Catalog) -> FeatureResponse:
    return FeatureResponse.model_validate(await catalog.update_feature(key, data))


@router.delete("/features/{key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_feature(key: str, catalog: Catalog) -> Response:
    await catalog.delete_feature(key)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Plans and entitlements
# ============================================================================


@router.get("/plans", response_model=list[PlanResponse])
async def list_plans(catalog: Catalog, public_only: bool = False) -> list[PlanResponse]:
    return [PlanResponse.model_validate(p) for p in await catalog.list_plans(public_only)]


@router.post("/plans", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(data: PlanCreate, catalog: Catalog) -> PlanResponse:
    return PlanResponse.model_validate(await catalog.create_plan(data))


@router.get("/plans/{plan_id}", response_model=PlanResponse)
async def get_plan(plan_id: str, catalog: Catalog) -> PlanResponse:
    return PlanResponse.model_validate(await catalog.require_plan(plan_id))


@router.patch("/plans/{plan_id}", response_model=PlanResponse)
async def update_plan(plan_id: str, data: PlanUpdate, catalog: Catalog) -> PlanResponse:
    return PlanResponse.model_validate(await catalog.update_plan(plan_id, data))


@router.delete("/plans/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_plan(plan_id: str, catalog: Catalog) -> Response:
    """Delete an unreferenced plan. Returns 409 PLAN_IN_USE otherwise."""
    await catalog.delete_plan(plan_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/plans/{plan_id}/entitlements", response_model=list[EntitlementResponse])
async def list_entitlements(plan_id: str, catalog: Catalog) -> list[EntitlementResponse]:
    await catalog.require_plan(plan_id)
    return [EntitlementResponse.model_validate(e) for e in await catalog.list_entitlements(plan_id)]


@router.put("/plans/{plan_id}/entitlements", response_model=list[EntitlementResponse])
async def replace_entitlements(
    plan_id: str,
    data: EntitlementReplace,
    catalog: Catalog,
) -> list[EntitlementResponse]:
    """Replace every entitlement line of a plan. Takes effect immediately."""
    rows = await catalog.replace_entitlements(plan_id, data.entitlements)
    return [EntitlementResponse.model_validate(e) for e in rows]


@router.put("/plans/{plan_id}/entitlements/{feature_key}", response_model=EntitlementResponse)
async def upsert_entitlement(
    plan_id: str,
    feature_key: str,
    data: EntitlementUpsert,
    catalog: Catalog,
) -> EntitlementResponse:
    line = data.model_copy(update={"feature_key": feature_key})
    return EntitlementResponse.model_validate(await catalog.upsert_entitlement(plan_id, line))


@router.delete("/plans/{plan_id}/entitlements/{feature_key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_entitlement(plan_id: str, feature_key: str, catalog: Catalog) -> Response:
    await catalog.delete_entitlement(plan_id, feature_key)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Subscriptions
# ============================================================================


@router.post("/subscriptions", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(data: SubscriptionCreate, service: Subscriptions) -> SubscriptionResponse:
    holder = Holder.parse(data.holder_type, data.holder_id)
    subscription = await service.subscribe(holder, data.plan_id, external_ref=data.external_ref)
    return SubscriptionResponse.model_validate(subscription)


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(subscription_id: UUID, service: Subscriptions) -> SubscriptionResponse:
    return SubscriptionResponse.model_validate(await service.get(subscription_id))


@router.post("/subscriptions/{subscription_id}/change-plan", response_model=SubscriptionResponse)
async def change_plan(
    subscription_id: UUID,
    data: ChangePlanRequest,
    service: Subscriptions,
) -> SubscriptionResponse:
    subscription = await service.change_plan(
        subscription_id,
        data.plan_id,
        reset_period=data.reset_period,
    )
    return SubscriptionResponse.model_validate(subscription)


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: UUID,
    data: CancelRequest,
    service: Subscriptions,
) -> SubscriptionResponse:
    """Schedule cancellation at period end, or cancel now with ``immediate``."""
    subscription = await service.cancel(
        subscription_id,
        immediate=data.immediate,
        cancel_at=data.cancel_at,
    )
    return SubscriptionResponse.model_validate(subscription)


# ============================================================================
# Billing operations
# ============================================================================


@router.post("/billing/grant-credits", response_model=GrantCreditsResponse)
async def grant_credits(data: GrantCreditsRequest, db: DbSession) -> GrantCreditsResponse:
    """Add ad-hoc allowance for the holder's current period."""
    holder = Holder.parse(data.holder_type, data.holder_id)
    total = await UsageLedger(db).grant_extra_allowance(holder, data.feature_key, data.amount)
    return GrantCreditsResponse(feature_key=data.feature_key, extra_allowance=total)


@router.post("/billing/reset-usage", response_model=ResetUsageResponse)
async def reset_usage(data: ResetUsageRequest, db: DbSession) -> ResetUsageResponse:
    """Zero one holder's usage, or trigger the billing cycle for everyone."""
    if data.holder_type is None:
        summary = await BillingCycleScheduler(db).trigger_reset()
        return ResetUsageResponse(billing_cycle=summary)

    holder = Holder.parse(data.holder_type, data.holder_id)
    rows = await UsageLedger(db).reset_usage(holder, data.feature_key)
    return ResetUsageResponse(rows_reset=rows)


@router.post("/billing/events", response_model=PaymentEventIntakeResponse)
async def ingest_payment_event(data: PaymentEventCreate, db: DbSession) -> PaymentEventIntakeResponse:
    """Record a verified gateway notification and apply it."""
    event, duplicate, outcome = await PaymentEventProcessor(db).ingest(data)
    return PaymentEventIntakeResponse(
        event=PaymentEventResponse.model_validate(event),
        duplicate=duplicate,
        outcome=outcome,
    )


@router.get("/billing/events", response_model=list[PaymentEventResponse])
async def list_payment_events(
    db: DbSession,
    unprocessed_only: bool = False,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> list[PaymentEventResponse]:
    events = await PaymentEventProcessor(db).list_events(unprocessed_only, limit)
    return [PaymentEventResponse.model_validate(e) for e in events]
