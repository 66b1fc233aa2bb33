from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from shiftcall.apps.api.deps import get_db, get_orchestrator
from shiftcall.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from shiftcall.apps.api.response import SuccessEnvelope, success_response
from shiftcall.domain.states import AvailabilityStatus, Channel
from shiftcall.services.delivery.orchestrator import DeliveryOrchestrator


router = APIRouter(prefix="/responses", tags=["responses"], responses=DEFAULT_ERROR_RESPONSES)


class ContactResponseRequest(BaseModel):
    organization_id: str
    contact_id: str
    job_id: str
    response: AvailabilityStatus
    channel: Channel = Channel.SMS
    campaign_id: str | None = None


class ContactResponseAck(BaseModel):
    recorded: bool


@router.post("", response_model=SuccessEnvelope[ContactResponseAck], status_code=201)
async def record_contact_response(
    request: Request,
    payload: ContactResponseRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> dict:
    await orchestrator.record_response(
        session=db,
        organization_id=payload.organization_id,
        contact_id=payload.contact_id,
        job_id=payload.job_id,
        response=payload.response,
        channel=payload.channel,
        campaign_id=payload.campaign_id,
    )
    return success_response(request=request, data=ContactResponseAck(recorded=True))
