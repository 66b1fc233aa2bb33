from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from shiftcall.domain.states import Channel, EventType
from shiftcall.persistence.guards import ImmutableRecordError
from shiftcall.services.event_log import (
    list_timeline,
    record_message_event,
    sanitize_metadata,
    serialize_event,
)


def test_sanitize_metadata_redacts_sensitive_keys() -> None:
    sanitized = sanitize_metadata(
        {
            "device_token": "abc",
            "phone_number": "+15550102000",
            "message_body": "Hi Sam",
            "nested": {"Authorization": "Bearer x", "batch_index": 2},
            "fallback_due_at": datetime(2026, 3, 2, 9, 0, 30, tzinfo=timezone.utc),
            "items": [{"api_key": "k"}],
        }
    )
    assert sanitized["device_token"] == "[REDACTED]"
    assert sanitized["phone_number"] == "[REDACTED]"
    assert sanitized["message_body"] == "[REDACTED]"
    assert sanitized["nested"] == {"Authorization": "[REDACTED]", "batch_index": 2}
    assert sanitized["fallback_due_at"] == "2026-03-02T09:00:30+00:00"
    assert sanitized["items"] == [{"api_key": "[REDACTED]"}]


@pytest.mark.asyncio
async def test_timeline_orders_by_time_then_insertion(session, clock) -> None:
    later = clock.now + timedelta(seconds=5)
    for event_type, occurred_at in (
        (EventType.SMS_SENT, later),
        (EventType.PUSH_ATTEMPTED, clock.now),
        (EventType.PUSH_FAILED, clock.now),
    ):
        await record_message_event(
            session=session,
            organization_id="org-1",
            contact_id="c-1",
            job_id="job-1",
            event_type=event_type,
            channel=Channel.PUSH,
            status="logged",
            occurred_at=occurred_at,
        )
    await record_message_event(
        session=session,
        organization_id="org-1",
        contact_id="c-2",
        job_id="job-1",
        event_type=EventType.PUSH_SENT,
        channel=Channel.PUSH,
        status="push_sent",
        occurred_at=clock.now,
        commit=True,
    )

    timeline = await list_timeline(session, contact_id="c-1", job_id="job-1")
    assert [event.event_type for event in timeline] == ["push_attempted", "push_failed", "sms_sent"]
    payload = serialize_event(timeline[0])
    assert payload["channel"] == "push"
    assert payload["metadata"] == {}


@pytest.mark.asyncio
async def test_unknown_event_type_is_rejected(session) -> None:
    with pytest.raises(ValueError):
        await record_message_event(
            session=session,
            organization_id="org-1",
            contact_id="c-1",
            job_id="job-1",
            event_type="push_exploded",
            channel=Channel.PUSH,
            status="logged",
        )


@pytest.mark.asyncio
async def test_logged_events_are_append_only(session) -> None:
    event = await record_message_event(
        session=session,
        organization_id="org-1",
        contact_id="c-1",
        job_id="job-1",
        event_type=EventType.PUSH_SENT,
        channel=Channel.PUSH,
        status="push_sent",
        commit=True,
    )

    event.status = "push_delivered"
    with pytest.raises(ImmutableRecordError):
        await session.flush()
    await session.rollback()

    await session.delete(event)
    with pytest.raises(ImmutableRecordError):
        await session.flush()
    await session.rollback()
