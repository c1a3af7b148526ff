"""Holder-facing entitlement routes: read model and pre-flight checks."""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from talentgate.api.dependencies.database import get_db
from talentgate.entitlements.enforcer import QuotaEnforcer
from talentgate.entitlements.holder import Holder
from talentgate.entitlements.schemas import CheckRequest, CheckResult, UsageSnapshot

router = APIRouter()


async def get_enforcer(db: Annotated[AsyncSession, Depends(get_db)]) -> QuotaEnforcer:
    """Dependency to get the quota enforcer."""
    return QuotaEnforcer(db)


@router.get("/{holder_type}/{holder_id}", response_model=UsageSnapshot)
async def get_entitlements(
    holder_type: str,
    holder_id: str,
    enforcer: Annotated[QuotaEnforcer, Depends(get_enforcer)],
) -> UsageSnapshot:
    """Get the holder's plan, usage and remaining quota for every feature."""
    return await enforcer.get_entitlements(Holder.parse(holder_type, holder_id))


@router.post("/{holder_type}/{holder_id}/check", response_model=CheckResult)
async def check_entitlement(
    holder_type: str,
    holder_id: str,
    request: CheckRequest,
    enforcer: Annotated[QuotaEnforcer, Depends(get_enforcer)],
) -> CheckResult:
    """Ask whether the holder may consume ``amount`` units of a feature.

    Denials are returned with status 200 and ``ok = false``; this endpoint
    does not record usage.
    """
    holder = Holder.parse(holder_type, holder_id)
    return await enforcer.check_allowed(holder, request.feature_key, request.amount)
