from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shiftcall.core.clock import utc_now
from shiftcall.domain.models import MessageLogEvent
from shiftcall.domain.states import Channel, EventType
from shiftcall.persistence import guards  # noqa: F401  registers append-only guards


logger = logging.getLogger(__name__)

# Keys that may carry credentials, device identifiers or message content.
_SENSITIVE_KEY_PATTERNS = [
    "api_key",
    "authorization",
    "token",
    "secret",
    "password",
    "text",
    "content",
    "body",
    "phone",
]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


async def record_message_event(
    *,
    session: AsyncSession,
    organization_id: str,
    contact_id: str,
    job_id: str,
    event_type: EventType | str,
    channel: Channel | str,
    status: str,
    campaign_id: str | None = None,
    delivery_id: str | None = None,
    priority: int | None = None,
    priority_reason: str | None = None,
    batch_id: str | None = None,
    batch_position: int | None = None,
    delivery_attempt: int | None = None,
    notification_id: str | None = None,
    twilio_sid: str | None = None,
    cost_credits: int | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
    commit: bool = False,
) -> MessageLogEvent:
    # Stage the row in the caller's session so it lands in the same transaction as the state change.
    resolved_event_type = EventType(_enum_value(event_type))
    resolved_channel = Channel(_enum_value(channel))
    event = MessageLogEvent(
        organization_id=organization_id,
        contact_id=contact_id,
        job_id=job_id,
        campaign_id=campaign_id,
        delivery_id=delivery_id,
        event_type=resolved_event_type.value,
        channel=resolved_channel.value,
        status=str(_enum_value(status)),
        priority=priority,
        priority_reason=priority_reason,
        batch_id=batch_id,
        batch_position=batch_position,
        delivery_attempt=delivery_attempt,
        notification_id=notification_id,
        twilio_sid=twilio_sid,
        cost_credits=cost_credits,
        reason=reason,
        metadata_json=sanitize_metadata(metadata or {}),
        created_at=occurred_at or utc_now(),
    )
    session.add(event)
    logger.debug(
        "message_event event_type=%s channel=%s status=%s contact_id=%s job_id=%s delivery_id=%s reason=%s",
        resolved_event_type.value,
        resolved_channel.value,
        event.status,
        contact_id,
        job_id,
        delivery_id,
        reason,
    )
    if commit:
        await session.commit()
    return event


async def list_timeline(
    session: AsyncSession,
    *,
    contact_id: str,
    job_id: str,
    organization_id: str | None = None,
) -> list[MessageLogEvent]:
    # created_at ties resolve by the monotonic id so replays always read back in write order.
    query = select(MessageLogEvent).where(
        MessageLogEvent.contact_id == contact_id,
        MessageLogEvent.job_id == job_id,
    )
    if organization_id is not None:
        query = query.where(MessageLogEvent.organization_id == organization_id)
    query = query.order_by(MessageLogEvent.created_at.asc(), MessageLogEvent.id.asc())
    result = await session.execute(query)
    return list(result.scalars().all())


async def list_batch_events(session: AsyncSession, *, batch_id: str) -> list[MessageLogEvent]:
    result = await session.execute(
        select(MessageLogEvent)
        .where(MessageLogEvent.batch_id == batch_id)
        .order_by(MessageLogEvent.created_at.asc(), MessageLogEvent.id.asc())
    )
    return list(result.scalars().all())


def serialize_event(event: MessageLogEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "organization_id": event.organization_id,
        "contact_id": event.contact_id,
        "job_id": event.job_id,
        "campaign_id": event.campaign_id,
        "delivery_id": event.delivery_id,
        "event_type": event.event_type,
        "channel": event.channel,
        "status": event.status,
        "priority": event.priority,
        "priority_reason": event.priority_reason,
        "batch_id": event.batch_id,
        "batch_position": event.batch_position,
        "delivery_attempt": event.delivery_attempt,
        "notification_id": event.notification_id,
        "twilio_sid": event.twilio_sid,
        "cost_credits": event.cost_credits,
        "reason": event.reason,
        "metadata": event.metadata_json or {},
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }
