from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from shiftcall.apps.api.deps import get_db, get_ledger
from shiftcall.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from shiftcall.apps.api.response import SuccessEnvelope, success_response
from shiftcall.services.credits.ledger import CreditLedger


router = APIRouter(prefix="/organizations", tags=["credits"], responses=DEFAULT_ERROR_RESPONSES)


class CreditBalanceResponse(BaseModel):
    organization_id: str
    available: int
    trial: int
    subscription: int
    bundle: int
    # Unused credits on expired grants; shown for support, never spendable.
    expired: int


@router.get("/{organization_id}/credits", response_model=SuccessEnvelope[CreditBalanceResponse])
async def credit_balance(
    request: Request,
    organization_id: str,
    db: AsyncSession = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
) -> dict:
    breakdown = await ledger.credit_breakdown(session=db, organization_id=organization_id)
    data = CreditBalanceResponse(
        organization_id=organization_id,
        available=breakdown.total_available,
        trial=breakdown.trial,
        subscription=breakdown.subscription,
        bundle=breakdown.bundle,
        expired=breakdown.expired,
    )
    return success_response(request=request, data=data)
