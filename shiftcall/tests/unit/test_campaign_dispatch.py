from __future__ import annotations

import pytest
from sqlalchemy import select

from shiftcall.core.errors import CampaignCancelledError, RecipientAlreadyConfirmed
from shiftcall.domain.models import Delivery
from shiftcall.domain.states import AvailabilityStatus
from shiftcall.services.delivery import dispatch as dispatch_module
from shiftcall.services.delivery.batcher import PriorityBatcher, batch_id_for
from shiftcall.services.delivery.campaigns import cancel_campaign, list_deliveries
from shiftcall.services.delivery.dispatch import CampaignDispatcher, batch_from_payload, batch_to_payload
from shiftcall.tests.utils.factories import make_contact, make_job, seed_campaign
from shiftcall.workers.delivery_worker import send_campaign_batch


def _dispatcher(session_factory, channels, ledger, settings, clock) -> CampaignDispatcher:
    return CampaignDispatcher(
        session_factory=session_factory,
        channels=channels,
        ledger=ledger,
        settings=settings,
        time_provider=clock,
    )


@pytest.mark.asyncio
async def test_inline_dispatch_sends_every_batch(session_factory, channels, ledger, settings, clock, push) -> None:
    async with session_factory() as session:
        campaign = await seed_campaign(session, now=clock.now)
    contacts = [make_contact(f"c-{index}") for index in range(3)] + [make_contact("c-out", is_opted_out=True)]

    result = await _dispatcher(session_factory, channels, ledger, settings, clock).start_campaign(
        campaign_id=campaign.id, job=make_job(), candidates=contacts
    )

    assert (result.mode, result.batches, result.contacts, result.queued_batches) == ("inline", 2, 3, 0)
    assert {outcome.status for outcome in result.outcomes} == {"push_sent"}
    assert len(push.sent) == 3
    async with session_factory() as session:
        deliveries = await list_deliveries(session, campaign.id)
    placement = {row.contact_id: (row.batch_id, row.batch_position) for row in deliveries}
    assert placement == {
        "c-0": (batch_id_for(campaign.id, 0), 0),
        "c-1": (batch_id_for(campaign.id, 0), 1),
        "c-2": (batch_id_for(campaign.id, 1), 0),
    }


@pytest.mark.asyncio
async def test_tier_override_controls_batch_size(session_factory, channels, ledger, settings, clock) -> None:
    tiered = settings.model_copy(update={"batch_size_by_tier_json": '{"enterprise": 10}'})
    async with session_factory() as session:
        campaign = await seed_campaign(session, now=clock.now, org_tier="enterprise")

    result = await _dispatcher(session_factory, channels, ledger, tiered, clock).start_campaign(
        campaign_id=campaign.id, job=make_job(), candidates=[make_contact(f"c-{index}") for index in range(4)]
    )

    assert result.batches == 1


@pytest.mark.asyncio
async def test_dispatch_rejects_confirmed_and_cancelled(session_factory, channels, ledger, settings, clock) -> None:
    dispatcher = _dispatcher(session_factory, channels, ledger, settings, clock)
    async with session_factory() as session:
        campaign = await seed_campaign(session, now=clock.now)

    with pytest.raises(RecipientAlreadyConfirmed):
        await dispatcher.start_campaign(
            campaign_id=campaign.id,
            job=make_job(),
            candidates=[make_contact("c-1", availability_status=AvailabilityStatus.CONFIRMED)],
        )

    async with session_factory() as session:
        await cancel_campaign(session=session, campaign_id=campaign.id, now=clock.now)
    with pytest.raises(CampaignCancelledError):
        await dispatcher.start_campaign(campaign_id=campaign.id, job=make_job(), candidates=[make_contact("c-1")])

    async with session_factory() as session:
        assert (await session.execute(select(Delivery))).scalars().all() == []


@pytest.mark.asyncio
async def test_queue_mode_defers_batches_by_interval(
    session_factory, channels, ledger, settings, clock, push, monkeypatch
) -> None:
    queued: list[tuple[str, int]] = []

    async def _fake_enqueue(*, job, batch, defer_seconds: int = 0) -> bool:
        queued.append((batch.batch_id, defer_seconds))
        return True

    monkeypatch.setattr(dispatch_module, "enqueue_campaign_batch", _fake_enqueue)
    spaced = settings.model_copy(update={"batch_interval_seconds": 120})
    async with session_factory() as session:
        campaign = await seed_campaign(session, now=clock.now)

    result = await _dispatcher(session_factory, channels, ledger, spaced, clock).start_campaign(
        campaign_id=campaign.id,
        job=make_job(),
        candidates=[make_contact(f"c-{index}") for index in range(3)],
        mode="queue",
    )

    assert result.queued_batches == 2
    assert result.outcomes == ()
    assert queued == [(batch_id_for(campaign.id, 0), 0), (batch_id_for(campaign.id, 1), 120)]
    assert push.sent == []


@pytest.mark.asyncio
async def test_queue_outage_falls_back_to_inline(
    session_factory, channels, ledger, settings, clock, push, monkeypatch
) -> None:
    async def _unavailable(*, job, batch, defer_seconds: int = 0) -> bool:
        return False

    monkeypatch.setattr(dispatch_module, "enqueue_campaign_batch", _unavailable)
    async with session_factory() as session:
        campaign = await seed_campaign(session, now=clock.now)

    result = await _dispatcher(session_factory, channels, ledger, settings, clock).start_campaign(
        campaign_id=campaign.id, job=make_job(), candidates=[make_contact("c-1")], mode="queue"
    )

    assert result.queued_batches == 0
    assert len(result.outcomes) == 1
    assert len(push.sent) == 1


@pytest.mark.asyncio
async def test_worker_replay_of_a_batch_does_not_resend(
    session_factory, channels, ledger, settings, clock, push
) -> None:
    dispatcher = _dispatcher(session_factory, channels, ledger, settings, clock)
    async with session_factory() as session:
        campaign = await seed_campaign(session, now=clock.now)
    batcher = PriorityBatcher(time_provider=clock)
    ranked = batcher.rank(
        campaign_id=campaign.id, candidates=[make_contact("c-1"), make_contact("c-2")], job=make_job()
    )
    (batch,) = batcher.slice(ranked, campaign_id=campaign.id, batch_size=5)
    payload = batch_to_payload(batch)
    restored = batch_from_payload(payload)
    assert restored.batch_id == batch.batch_id
    assert [(member.contact.id, member.batch_position) for member in restored.members] == [("c-1", 0), ("c-2", 1)]

    ctx = {"dispatcher": dispatcher}
    job_payload = make_job().model_dump(mode="json")
    first = await send_campaign_batch(ctx, job_payload, payload)
    replay = await send_campaign_batch(ctx, job_payload, payload)

    assert first == {"sent": 2, "rejected": 0}
    assert replay == {"sent": 2, "rejected": 0}
    assert len(push.sent) == 2
