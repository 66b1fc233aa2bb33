from __future__ import annotations

from datetime import datetime
import logging
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shiftcall.core.clock import utc_now
from shiftcall.core.errors import CampaignNotFoundError
from shiftcall.domain.models import Delivery, DeliveryCampaign
from shiftcall.domain.states import CampaignStatus


logger = logging.getLogger(__name__)


async def create_campaign(
    *,
    session: AsyncSession,
    organization_id: str,
    job_id: str,
    template_id: str | None = None,
    message_template: str | None = None,
    custom_message: str | None = None,
    org_tier: str | None = None,
    campaign_id: str | None = None,
    now: datetime | None = None,
) -> DeliveryCampaign:
    campaign = DeliveryCampaign(
        id=campaign_id or f"camp_{uuid4().hex}",
        organization_id=organization_id,
        job_id=job_id,
        template_id=template_id,
        message_template=message_template,
        custom_message=custom_message,
        org_tier=org_tier,
        status=CampaignStatus.ACTIVE.value,
        abort_undelivered=False,
        created_at=now or utc_now(),
    )
    session.add(campaign)
    await session.commit()
    logger.info(
        "campaign_created campaign_id=%s organization_id=%s job_id=%s",
        campaign.id,
        organization_id,
        job_id,
    )
    return campaign


async def get_campaign(session: AsyncSession, campaign_id: str) -> DeliveryCampaign:
    campaign = await session.get(DeliveryCampaign, campaign_id, populate_existing=True)
    if campaign is None:
        raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
    return campaign


async def cancel_campaign(
    *,
    session: AsyncSession,
    campaign_id: str,
    abort_undelivered: bool = False,
    now: datetime | None = None,
) -> DeliveryCampaign:
    # Cancelling twice is allowed; a later request may still ask to abort undelivered escalations.
    campaign = await get_campaign(session, campaign_id)
    if campaign.status != CampaignStatus.CANCELLED.value:
        campaign.status = CampaignStatus.CANCELLED.value
        campaign.cancelled_at = now or utc_now()
    if abort_undelivered:
        campaign.abort_undelivered = True
    await session.commit()
    logger.info(
        "campaign_cancelled campaign_id=%s abort_undelivered=%s",
        campaign_id,
        campaign.abort_undelivered,
    )
    return campaign


async def list_deliveries(session: AsyncSession, campaign_id: str) -> list[Delivery]:
    result = await session.execute(
        select(Delivery)
        .where(Delivery.campaign_id == campaign_id)
        .order_by(Delivery.created_at.asc(), Delivery.contact_id.asc())
    )
    return list(result.scalars().all())
