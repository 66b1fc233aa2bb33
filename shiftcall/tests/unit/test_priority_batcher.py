from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from shiftcall.core.errors import RecipientAlreadyConfirmed
from shiftcall.domain.contacts import SkillRequirement
from shiftcall.domain.models import MessageLogEvent
from shiftcall.domain.states import AvailabilityStatus, ContactStatus
from shiftcall.services.delivery.batcher import (
    PriorityBatcher,
    batch_id_for,
    parse_blackout_range,
    score_contact,
)
from shiftcall.services.event_log import list_batch_events
from shiftcall.tests.utils.factories import make_contact, make_job


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def test_score_components_and_reason() -> None:
    job = make_job()
    free_never = make_contact("a", status=ContactStatus.FREE)
    off_recent = make_contact("b", status=ContactStatus.OFF_SHIFT, last_response_at=NOW - timedelta(days=2))
    on_stale = make_contact("c", status=ContactStatus.ON_JOB, last_response_at=NOW - timedelta(days=200))

    assert score_contact(free_never, job, NOW).score == 80
    assert score_contact(free_never, job, NOW).reason == "status_free"
    assert score_contact(off_recent, job, NOW).score == 75
    assert score_contact(off_recent, job, NOW).reason == "open_requirements"
    assert score_contact(on_stale, job, NOW).score == 43


def test_skill_match_scoring() -> None:
    job = make_job(required_skills=["forklift"], required_qualifications=["First Aid"])
    full = make_contact("a", status=ContactStatus.OFF_SHIFT, skills=["Forklift"], qualifications=["first aid"])
    none = make_contact("b", status=ContactStatus.FREE)

    full_score = score_contact(full, job, NOW)
    assert full_score.score == 55
    assert full_score.reason == "skills_match"
    assert score_contact(none, job, NOW).score == 45


def test_blackout_penalty_and_clamp() -> None:
    job = make_job(required_skills=["forklift"])
    blocked = make_contact("a", blackout_periods=["04/03/2026-06/03/2026"])
    scored = score_contact(blocked, make_job(), NOW)
    assert scored.score == 50
    assert scored.reason == "blackout_period"

    floor = make_contact(
        "b",
        status=ContactStatus.ON_JOB,
        last_response_at=NOW - timedelta(days=365),
        blackout_periods=["05/03/2026-05/03/2026"],
    )
    assert score_contact(floor, job, NOW).score == 1


def test_parse_blackout_range_covers_whole_end_day() -> None:
    start, end = parse_blackout_range("04/03/2026-06/03/2026")
    assert start == datetime(2026, 3, 4, tzinfo=timezone.utc)
    assert end.date() == datetime(2026, 3, 6).date()
    assert end.hour == 23
    assert parse_blackout_range("garbage") is None
    assert parse_blackout_range("31/02/2026-01/03/2026") is None


def test_rank_is_deterministic_with_id_tiebreak() -> None:
    batcher = PriorityBatcher(time_provider=lambda: NOW)
    job = make_job()
    contacts = [make_contact("zeta"), make_contact("alpha"), make_contact("mid", status=ContactStatus.ON_JOB)]

    first = batcher.rank(campaign_id="camp", candidates=contacts, job=job)
    second = batcher.rank(campaign_id="camp", candidates=list(reversed(contacts)), job=job)

    assert [entry.contact.id for entry in first] == ["alpha", "zeta", "mid"]
    assert [entry.contact.id for entry in second] == ["alpha", "zeta", "mid"]


def test_rank_drops_opted_out_and_duplicates() -> None:
    batcher = PriorityBatcher(time_provider=lambda: NOW)
    contacts = [make_contact("a"), make_contact("a"), make_contact("b", is_opted_out=True)]
    ranked = batcher.rank(campaign_id="camp", candidates=contacts, job=make_job())
    assert [entry.contact.id for entry in ranked] == ["a"]


def test_rank_rejects_confirmed_contacts() -> None:
    batcher = PriorityBatcher(time_provider=lambda: NOW)
    contacts = [
        make_contact("x"),
        make_contact("c2", availability_status=AvailabilityStatus.CONFIRMED),
        make_contact("c1", availability_status=AvailabilityStatus.CONFIRMED),
    ]
    with pytest.raises(RecipientAlreadyConfirmed) as exc_info:
        batcher.rank(campaign_id="camp", candidates=contacts, job=make_job())
    assert exc_info.value.contact_ids == ["c1", "c2"]


def test_skill_quotas_pull_matching_contacts_forward() -> None:
    batcher = PriorityBatcher(time_provider=lambda: NOW)
    job = make_job(skill_requirements=[SkillRequirement(skill="forklift", headcount=1)])
    contacts = [
        make_contact("a-free", status=ContactStatus.FREE),
        make_contact("b-forklift", status=ContactStatus.ON_JOB, skills=["forklift"]),
        make_contact("c-free", status=ContactStatus.FREE),
    ]
    ranked = batcher.rank(campaign_id="camp", candidates=contacts, job=job)
    assert [entry.contact.id for entry in ranked] == ["b-forklift", "a-free", "c-free"]


def test_slice_assigns_stable_batches_and_positions() -> None:
    batcher = PriorityBatcher(time_provider=lambda: NOW)
    ranked = batcher.rank(
        campaign_id="camp",
        candidates=[make_contact(f"c{index}") for index in range(5)],
        job=make_job(),
    )
    batches = batcher.slice(ranked, campaign_id="camp", batch_size=2)

    assert [len(batch.members) for batch in batches] == [2, 2, 1]
    assert [member.batch_position for member in batches[1].members] == [0, 1]
    assert batches[0].batch_id == batch_id_for("camp", 0)
    assert len({batch.batch_id for batch in batches}) == 3
    assert batch_id_for("camp", 1) != batch_id_for("other", 1)

    with pytest.raises(ValueError):
        batcher.slice(ranked, campaign_id="camp", batch_size=0)


@pytest.mark.asyncio
async def test_record_batches_logs_prioritization_and_batch_membership(session) -> None:
    batcher = PriorityBatcher(time_provider=lambda: NOW)
    job = make_job()
    ranked = batcher.rank(campaign_id="camp", candidates=[make_contact("a"), make_contact("b")], job=job)
    batches = batcher.slice(ranked, campaign_id="camp", batch_size=5)

    await batcher.record_batches(
        session=session, organization_id="org-1", campaign_id="camp", job=job, batches=batches
    )

    events = (await session.execute(select(MessageLogEvent))).scalars().all()
    assert sorted(event.event_type for event in events) == [
        "batch_created",
        "batch_created",
        "contact_prioritized",
        "contact_prioritized",
    ]
    batch_events = await list_batch_events(session, batch_id=batches[0].batch_id)
    assert [(event.contact_id, event.batch_position) for event in batch_events] == [("a", 0), ("b", 1)]
    assert batch_events[0].metadata_json == {"batch_index": 0, "batch_size": 2}
