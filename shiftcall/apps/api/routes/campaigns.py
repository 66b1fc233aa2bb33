from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from shiftcall.apps.api.deps import get_db, get_dispatcher, get_time_provider
from shiftcall.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from shiftcall.apps.api.response import SuccessEnvelope, success_response
from shiftcall.core.clock import TimeProvider
from shiftcall.domain.contacts import ContactProfile, JobProfile
from shiftcall.domain.models import Delivery, DeliveryCampaign
from shiftcall.services.delivery.batcher import PriorityBatcher
from shiftcall.services.delivery.campaigns import cancel_campaign, create_campaign, get_campaign, list_deliveries
from shiftcall.services.delivery.dispatch import CampaignDispatcher


router = APIRouter(prefix="/campaigns", tags=["campaigns"], responses=DEFAULT_ERROR_RESPONSES)


class CampaignCreateRequest(BaseModel):
    organization_id: str
    job: JobProfile
    contacts: list[ContactProfile] = Field(min_length=1)
    template_id: str | None = None
    message_template: str | None = None
    custom_message: str | None = None
    org_tier: str | None = None
    dispatch_mode: Literal["queue", "inline"] | None = None


class SendOutcomeResponse(BaseModel):
    contact_id: str
    delivery_id: str | None
    status: str | None
    error_code: str | None


class CampaignDispatchResponse(BaseModel):
    campaign_id: str
    mode: str
    batches: int
    contacts: int
    queued_batches: int
    outcomes: list[SendOutcomeResponse]


class CampaignCancelRequest(BaseModel):
    abort_undelivered: bool = False


class CampaignResponse(BaseModel):
    id: str
    organization_id: str
    job_id: str
    status: str
    abort_undelivered: bool
    cancelled_at: str | None


class DeliveryResponse(BaseModel):
    id: str
    contact_id: str
    channel: str
    status: str
    notification_id: str
    priority: int | None
    priority_reason: str | None
    batch_id: str | None
    batch_position: int | None
    delivery_attempt: int
    cost_credits: int
    failure_reason: str | None
    fallback_due_at: str | None
    sent_at: str | None
    delivered_at: str | None
    failed_at: str | None


def _iso(value) -> str | None:  # noqa: ANN001
    return value.isoformat() if value else None


def _campaign_payload(campaign: DeliveryCampaign) -> CampaignResponse:
    return CampaignResponse(
        id=campaign.id,
        organization_id=campaign.organization_id,
        job_id=campaign.job_id,
        status=campaign.status,
        abort_undelivered=campaign.abort_undelivered,
        cancelled_at=_iso(campaign.cancelled_at),
    )


def _delivery_payload(delivery: Delivery) -> DeliveryResponse:
    return DeliveryResponse(
        id=delivery.id,
        contact_id=delivery.contact_id,
        channel=delivery.channel,
        status=delivery.status,
        notification_id=delivery.notification_id,
        priority=delivery.priority,
        priority_reason=delivery.priority_reason,
        batch_id=delivery.batch_id,
        batch_position=delivery.batch_position,
        delivery_attempt=delivery.delivery_attempt,
        cost_credits=delivery.cost_credits,
        failure_reason=delivery.failure_reason,
        fallback_due_at=_iso(delivery.fallback_due_at),
        sent_at=_iso(delivery.sent_at),
        delivered_at=_iso(delivery.delivered_at),
        failed_at=_iso(delivery.failed_at),
    )


@router.post("", response_model=SuccessEnvelope[CampaignDispatchResponse], status_code=201)
async def create_and_dispatch(
    request: Request,
    payload: CampaignCreateRequest,
    db: AsyncSession = Depends(get_db),
    dispatcher: CampaignDispatcher = Depends(get_dispatcher),
    time_provider: TimeProvider = Depends(get_time_provider),
) -> dict:
    # Rank before persisting so a confirmed recipient rejects the request without leaving an empty campaign.
    PriorityBatcher(time_provider=time_provider).rank(
        campaign_id="preflight", candidates=payload.contacts, job=payload.job
    )
    campaign = await create_campaign(
        session=db,
        organization_id=payload.organization_id,
        job_id=payload.job.id,
        template_id=payload.template_id,
        message_template=payload.message_template,
        custom_message=payload.custom_message,
        org_tier=payload.org_tier,
        now=time_provider(),
    )
    result = await dispatcher.start_campaign(
        campaign_id=campaign.id,
        job=payload.job,
        candidates=payload.contacts,
        mode=payload.dispatch_mode,
    )
    data = CampaignDispatchResponse(
        campaign_id=result.campaign_id,
        mode=result.mode,
        batches=result.batches,
        contacts=result.contacts,
        queued_batches=result.queued_batches,
        outcomes=[
            SendOutcomeResponse(
                contact_id=outcome.contact_id,
                delivery_id=outcome.delivery_id,
                status=outcome.status,
                error_code=outcome.error_code,
            )
            for outcome in result.outcomes
        ],
    )
    return success_response(request=request, data=data)


@router.post("/{campaign_id}/cancel", response_model=SuccessEnvelope[CampaignResponse])
async def cancel(
    request: Request,
    campaign_id: str,
    payload: CampaignCancelRequest,
    db: AsyncSession = Depends(get_db),
    time_provider: TimeProvider = Depends(get_time_provider),
) -> dict:
    campaign = await cancel_campaign(
        session=db,
        campaign_id=campaign_id,
        abort_undelivered=payload.abort_undelivered,
        now=time_provider(),
    )
    return success_response(request=request, data=_campaign_payload(campaign))


@router.get("/{campaign_id}/deliveries", response_model=SuccessEnvelope[list[DeliveryResponse]])
async def deliveries(
    request: Request,
    campaign_id: str,
    db: AsyncSession = Depends(get_db),
) -> dict:
    await get_campaign(db, campaign_id)
    rows = await list_deliveries(db, campaign_id)
    return success_response(request=request, data=[_delivery_payload(row) for row in rows])
