from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from shiftcall.core.errors import (
    CampaignCancelledError,
    CampaignNotFoundError,
    NoContactableChannel,
    RecipientAlreadyConfirmed,
    RecipientOptedOut,
)
from shiftcall.domain.models import CreditTransaction, Delivery, MessageLogEvent
from shiftcall.domain.states import AvailabilityStatus, Channel
from shiftcall.services.delivery.campaigns import cancel_campaign
from shiftcall.services.delivery.orchestrator import DeliveryOrchestrator
from shiftcall.services.event_log import list_timeline
from shiftcall.tests.utils.factories import make_contact, make_job, seed_campaign, seed_credits


@pytest.fixture
def orchestrator(channels, ledger, settings, clock) -> DeliveryOrchestrator:
    return DeliveryOrchestrator(channels=channels, ledger=ledger, settings=settings, time_provider=clock)


async def _timeline_types(session, contact_id: str) -> list[str]:
    return [event.event_type for event in await list_timeline(session, contact_id=contact_id, job_id="job-1")]


async def _count(session, model) -> int:
    return int((await session.execute(select(func.count()).select_from(model))).scalar_one())


@pytest.mark.asyncio
async def test_push_sent_then_confirmed_never_touches_sms(session, orchestrator, push, sms, clock) -> None:
    campaign = await seed_campaign(session, now=clock.now)
    delivery = await orchestrator.send(
        session=session,
        contact=make_contact("c-1"),
        job=make_job(),
        campaign_id=campaign.id,
        priority=80,
        priority_reason="status_free",
        batch_id="batch-a",
        batch_position=0,
    )

    assert delivery.status == "push_sent"
    assert delivery.channel == Channel.PUSH.value
    assert delivery.delivery_attempt == 1
    assert delivery.fallback_due_at == clock.now + timedelta(seconds=30)
    assert push.sent[0]["payload"].notification_id == delivery.notification_id
    assert push.sent[0]["payload"].data["campaignId"] == campaign.id

    confirmed = await orchestrator.confirm_delivery(
        session=session, notification_id=delivery.notification_id, status="delivered"
    )
    assert confirmed.status == "push_delivered"
    assert confirmed.fallback_processed is True

    duplicate = await orchestrator.confirm_delivery(
        session=session, notification_id=delivery.notification_id, status="delivered"
    )
    assert duplicate.status == "push_delivered"

    assert await _timeline_types(session, "c-1") == [
        "push_attempted",
        "push_sent",
        "sms_fallback_scheduled",
        "push_delivered",
    ]
    timeline = await list_timeline(session, contact_id="c-1", job_id="job-1")
    assert {event.batch_id for event in timeline} == {"batch-a"}
    assert {event.priority for event in timeline} == {80}
    assert sms.sent == []
    assert await _count(session, CreditTransaction) == 0


@pytest.mark.asyncio
async def test_rejected_push_escalates_to_sms_immediately(session, orchestrator, push, sms, ledger, clock) -> None:
    push.accept = False
    await seed_credits(session, ledger, credits=2)
    campaign = await seed_campaign(session, now=clock.now)

    delivery = await orchestrator.send(
        session=session, contact=make_contact("c-1"), job=make_job(), campaign_id=campaign.id
    )

    assert delivery.status == "sms_sent"
    assert delivery.channel == Channel.SMS.value
    assert delivery.delivery_attempt == 2
    assert delivery.cost_credits == 1
    assert delivery.sms_sid == "SMfake000001"
    assert delivery.fallback_processed is True
    assert sms.sent == [{"phone": "+15550102000", "body": delivery.message_body}]
    assert await ledger.available_credits(session=session, organization_id="org-1") == 1
    assert await _timeline_types(session, "c-1") == [
        "push_attempted",
        "push_failed",
        "sms_fallback_triggered",
        "sms_attempted",
        "sms_sent",
    ]
    timeline = await list_timeline(session, contact_id="c-1", job_id="job-1")
    assert timeline[1].reason == "PushRejected"
    assert timeline[-1].twilio_sid == "SMfake000001"
    assert timeline[-1].cost_credits == 1


@pytest.mark.asyncio
async def test_push_timeout_counts_as_failure(session, orchestrator, push, sms, ledger, clock) -> None:
    push.delay_seconds = 2.0
    await seed_credits(session, ledger, credits=1)
    campaign = await seed_campaign(session, now=clock.now)

    delivery = await orchestrator.send(
        session=session, contact=make_contact("c-1"), job=make_job(), campaign_id=campaign.id
    )

    assert delivery.status == "sms_sent"
    timeline = await list_timeline(session, contact_id="c-1", job_id="job-1")
    assert timeline[1].event_type == "push_failed"
    assert timeline[1].reason == "PushTimeout"
    assert len(sms.sent) == 1


@pytest.mark.asyncio
async def test_contact_without_device_token_goes_straight_to_sms(session, orchestrator, push, sms, ledger, clock) -> None:
    await seed_credits(session, ledger, credits=1)
    campaign = await seed_campaign(session, now=clock.now)

    delivery = await orchestrator.send(
        session=session, contact=make_contact("c-1", device_token=None), job=make_job(), campaign_id=campaign.id
    )

    assert delivery.status == "sms_sent"
    assert push.sent == []
    assert await _timeline_types(session, "c-1") == [
        "push_failed",
        "sms_fallback_triggered",
        "sms_attempted",
        "sms_sent",
    ]


@pytest.mark.asyncio
async def test_failed_push_without_phone_fails_terminally(session, orchestrator, push, sms, ledger, clock) -> None:
    push.accept = False
    await seed_credits(session, ledger, credits=1)
    campaign = await seed_campaign(session, now=clock.now)

    delivery = await orchestrator.send(
        session=session, contact=make_contact("c-1", phone=None), job=make_job(), campaign_id=campaign.id
    )

    assert delivery.status == "failed"
    assert delivery.failure_reason == "NoPhoneNumber"
    assert sms.sent == []
    assert await ledger.available_credits(session=session, organization_id="org-1") == 1
    timeline = await list_timeline(session, contact_id="c-1", job_id="job-1")
    assert (timeline[-1].event_type, timeline[-1].status, timeline[-1].reason) == (
        "sms_failed",
        "skipped",
        "NoPhoneNumber",
    )


@pytest.mark.asyncio
async def test_escalation_without_credits_fails_without_sending(session, orchestrator, push, sms, clock) -> None:
    push.accept = False
    campaign = await seed_campaign(session, now=clock.now)

    delivery = await orchestrator.send(
        session=session, contact=make_contact("c-1"), job=make_job(), campaign_id=campaign.id
    )

    assert delivery.status == "failed"
    assert delivery.failure_reason == "InsufficientCredits"
    assert delivery.cost_credits == 0
    assert sms.sent == []
    assert await _count(session, CreditTransaction) == 0


@pytest.mark.asyncio
async def test_sms_send_failure_refunds_credit(session, orchestrator, push, sms, ledger, clock) -> None:
    push.accept = False
    sms.raise_error = "carrier unavailable"
    await seed_credits(session, ledger, credits=1)
    campaign = await seed_campaign(session, now=clock.now)

    delivery = await orchestrator.send(
        session=session, contact=make_contact("c-1"), job=make_job(), campaign_id=campaign.id
    )

    assert delivery.status == "sms_failed"
    assert delivery.failure_reason == "SmsSendFailed"
    assert delivery.cost_credits == 0
    assert await ledger.available_credits(session=session, organization_id="org-1") == 1
    kinds = sorted(row.kind for row in (await session.execute(select(CreditTransaction))).scalars())
    assert kinds == ["consume", "refund"]
    timeline = await list_timeline(session, contact_id="c-1", job_id="job-1")
    assert timeline[-1].event_type == "sms_failed"
    assert timeline[-1].metadata_json == {"refunded": True}


@pytest.mark.asyncio
async def test_portal_only_contact_gets_portal_message(session, orchestrator, push, sms, portal, clock) -> None:
    campaign = await seed_campaign(session, now=clock.now)

    delivery = await orchestrator.send(
        session=session,
        contact=make_contact("c-1", device_token=None, phone=None, has_login=True),
        job=make_job(),
        campaign_id=campaign.id,
    )

    assert delivery.status == "portal_message_created"
    assert delivery.channel == Channel.PORTAL.value
    assert portal.created[0]["contact_id"] == "c-1"
    assert push.sent == [] and sms.sent == []
    assert await _timeline_types(session, "c-1") == ["portal_message_created"]


@pytest.mark.asyncio
async def test_portal_failure_marks_delivery_failed(session, orchestrator, portal, clock) -> None:
    portal.raise_error = "portal down"
    campaign = await seed_campaign(session, now=clock.now)

    delivery = await orchestrator.send(
        session=session,
        contact=make_contact("c-1", device_token=None, phone=None, has_login=True),
        job=make_job(),
        campaign_id=campaign.id,
    )

    assert delivery.status == "failed"
    assert delivery.failure_reason == "PortalUnavailable"
    events = (
        await session.execute(select(MessageLogEvent).where(MessageLogEvent.delivery_id == delivery.id))
    ).scalars().all()
    assert [(event.event_type, event.status, event.reason) for event in events] == [
        ("portal_message_created", "failed", "PortalUnavailable")
    ]


@pytest.mark.asyncio
async def test_rejected_recipients_leave_no_trace(session, orchestrator, push, clock) -> None:
    campaign = await seed_campaign(session, now=clock.now)
    job = make_job()

    with pytest.raises(RecipientOptedOut):
        await orchestrator.send(
            session=session, contact=make_contact("c-1", is_opted_out=True), job=job, campaign_id=campaign.id
        )
    with pytest.raises(RecipientAlreadyConfirmed):
        await orchestrator.send(
            session=session,
            contact=make_contact("c-2", availability_status=AvailabilityStatus.CONFIRMED),
            job=job,
            campaign_id=campaign.id,
        )
    with pytest.raises(NoContactableChannel):
        await orchestrator.send(
            session=session,
            contact=make_contact("c-3", device_token=None, phone=None, has_login=False),
            job=job,
            campaign_id=campaign.id,
        )

    assert push.sent == []
    assert await _count(session, Delivery) == 0
    assert await _count(session, MessageLogEvent) == 0


@pytest.mark.asyncio
async def test_send_requires_active_campaign(session, orchestrator, clock) -> None:
    with pytest.raises(CampaignNotFoundError):
        await orchestrator.send(
            session=session, contact=make_contact("c-1"), job=make_job(), campaign_id="camp_missing"
        )

    campaign = await seed_campaign(session, now=clock.now)
    await cancel_campaign(session=session, campaign_id=campaign.id, now=clock.now)
    with pytest.raises(CampaignCancelledError):
        await orchestrator.send(
            session=session, contact=make_contact("c-1"), job=make_job(), campaign_id=campaign.id
        )


@pytest.mark.asyncio
async def test_repeated_send_returns_existing_delivery(session, orchestrator, push, clock) -> None:
    campaign = await seed_campaign(session, now=clock.now)
    contact = make_contact("c-1")

    first = await orchestrator.send(session=session, contact=contact, job=make_job(), campaign_id=campaign.id)
    second = await orchestrator.send(session=session, contact=contact, job=make_job(), campaign_id=campaign.id)

    assert second.id == first.id
    assert len(push.sent) == 1
    assert await _count(session, Delivery) == 1


@pytest.mark.asyncio
async def test_late_push_receipt_after_escalation_is_ignored(session, orchestrator, sms, ledger, clock) -> None:
    await seed_credits(session, ledger, credits=1)
    campaign = await seed_campaign(session, now=clock.now)
    delivery = await orchestrator.send(
        session=session, contact=make_contact("c-1"), job=make_job(), campaign_id=campaign.id
    )
    clock.advance(31)
    escalated = await orchestrator.escalate(session=session, delivery_id=delivery.id)
    assert escalated.status == "sms_sent"

    late = await orchestrator.confirm_delivery(
        session=session, notification_id=delivery.notification_id, status="delivered"
    )

    assert late.status == "sms_sent"
    timeline = await list_timeline(session, contact_id="c-1", job_id="job-1")
    assert (timeline[-1].event_type, timeline[-1].status, timeline[-1].reason) == (
        "push_delivered",
        "ignored",
        "ReceiptAfterEscalation",
    )
    assert len(sms.sent) == 1


@pytest.mark.asyncio
async def test_escalation_claim_only_succeeds_once(session, orchestrator, sms, ledger, clock) -> None:
    await seed_credits(session, ledger, credits=5)
    campaign = await seed_campaign(session, now=clock.now)
    delivery = await orchestrator.send(
        session=session, contact=make_contact("c-1"), job=make_job(), campaign_id=campaign.id
    )
    clock.advance(31)

    first = await orchestrator.escalate(session=session, delivery_id=delivery.id)
    second = await orchestrator.escalate(session=session, delivery_id=delivery.id)

    assert first.status == "sms_sent"
    assert second is None
    assert len(sms.sent) == 1
    assert await ledger.available_credits(session=session, organization_id="org-1") == 4


@pytest.mark.asyncio
async def test_sms_receipts_complete_the_delivery(session, orchestrator, push, ledger, clock) -> None:
    push.accept = False
    await seed_credits(session, ledger, credits=1)
    campaign = await seed_campaign(session, now=clock.now)
    delivery = await orchestrator.send(
        session=session, contact=make_contact("c-1"), job=make_job(), campaign_id=campaign.id
    )

    assert await orchestrator.confirm_sms_delivery(session=session, sms_sid="SMunknown", status="delivered") is None
    delivered = await orchestrator.confirm_sms_delivery(
        session=session, sms_sid=delivery.sms_sid, status="delivered"
    )
    assert delivered.status == "sms_delivered"
    assert (await _timeline_types(session, "c-1"))[-1] == "sms_delivered"


@pytest.mark.asyncio
async def test_record_response_links_delivery(session, orchestrator, clock) -> None:
    campaign = await seed_campaign(session, now=clock.now)
    delivery = await orchestrator.send(
        session=session, contact=make_contact("c-1"), job=make_job(), campaign_id=campaign.id
    )

    await orchestrator.record_response(
        session=session,
        organization_id="org-1",
        contact_id="c-1",
        job_id="job-1",
        response="confirmed",
        campaign_id=campaign.id,
    )

    timeline = await list_timeline(session, contact_id="c-1", job_id="job-1")
    assert timeline[-1].event_type == "response_received"
    assert timeline[-1].status == "confirmed"
    assert timeline[-1].delivery_id == delivery.id
