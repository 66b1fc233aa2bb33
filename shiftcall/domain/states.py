from __future__ import annotations

from enum import Enum

from shiftcall.core.errors import IllegalTransitionError


class Channel(str, Enum):
    PUSH = "push"
    SMS = "sms"
    PORTAL = "portal"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    PUSH_SENT = "push_sent"
    PUSH_DELIVERED = "push_delivered"
    PUSH_FAILED = "push_failed"
    SMS_FALLBACK_SCHEDULED = "sms_fallback_scheduled"
    SMS_SENT = "sms_sent"
    SMS_DELIVERED = "sms_delivered"
    SMS_FAILED = "sms_failed"
    PORTAL_MESSAGE_CREATED = "portal_message_created"
    FAILED = "failed"


class EventType(str, Enum):
    CONTACT_PRIORITIZED = "contact_prioritized"
    BATCH_CREATED = "batch_created"
    PUSH_ATTEMPTED = "push_attempted"
    PUSH_SENT = "push_sent"
    PUSH_DELIVERED = "push_delivered"
    PUSH_FAILED = "push_failed"
    SMS_FALLBACK_SCHEDULED = "sms_fallback_scheduled"
    SMS_FALLBACK_TRIGGERED = "sms_fallback_triggered"
    SMS_ATTEMPTED = "sms_attempted"
    SMS_SENT = "sms_sent"
    SMS_DELIVERED = "sms_delivered"
    SMS_FAILED = "sms_failed"
    PORTAL_MESSAGE_CREATED = "portal_message_created"
    RESPONSE_RECEIVED = "response_received"


class ReceiptStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


class CampaignStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class ContactStatus(str, Enum):
    FREE = "free"
    ON_JOB = "on_job"
    OFF_SHIFT = "off_shift"


class AvailabilityStatus(str, Enum):
    NO_REPLY = "no_reply"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    MAYBE = "maybe"


_ALLOWED_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.PENDING: frozenset(
        {
            DeliveryStatus.PUSH_SENT,
            DeliveryStatus.PUSH_FAILED,
            DeliveryStatus.PORTAL_MESSAGE_CREATED,
            DeliveryStatus.FAILED,
        }
    ),
    DeliveryStatus.PUSH_SENT: frozenset(
        {
            DeliveryStatus.PUSH_DELIVERED,
            DeliveryStatus.PUSH_FAILED,
            DeliveryStatus.SMS_FALLBACK_SCHEDULED,
            DeliveryStatus.FAILED,
        }
    ),
    DeliveryStatus.PUSH_FAILED: frozenset({DeliveryStatus.SMS_FALLBACK_SCHEDULED, DeliveryStatus.FAILED}),
    DeliveryStatus.SMS_FALLBACK_SCHEDULED: frozenset(
        {DeliveryStatus.SMS_SENT, DeliveryStatus.SMS_FAILED, DeliveryStatus.FAILED}
    ),
    DeliveryStatus.SMS_SENT: frozenset({DeliveryStatus.SMS_DELIVERED, DeliveryStatus.SMS_FAILED}),
}

TERMINAL_SUCCESS = frozenset(
    {
        DeliveryStatus.PUSH_DELIVERED,
        DeliveryStatus.SMS_DELIVERED,
        DeliveryStatus.PORTAL_MESSAGE_CREATED,
    }
)
TERMINAL_FAILURE = frozenset({DeliveryStatus.SMS_FAILED, DeliveryStatus.FAILED})
# Deliveries the fallback sweep may escalate.
ESCALATABLE = (DeliveryStatus.PUSH_SENT, DeliveryStatus.PUSH_FAILED)


def is_terminal(status: DeliveryStatus | str) -> bool:
    resolved = DeliveryStatus(status)
    return resolved in TERMINAL_SUCCESS or resolved in TERMINAL_FAILURE


def can_transition(current: DeliveryStatus | str, target: DeliveryStatus | str) -> bool:
    return DeliveryStatus(target) in _ALLOWED_TRANSITIONS.get(DeliveryStatus(current), frozenset())


def transition(current: DeliveryStatus | str, target: DeliveryStatus | str) -> DeliveryStatus:
    # Every status write goes through this table so illegal jumps fail loudly instead of persisting.
    resolved_current = DeliveryStatus(current)
    resolved_target = DeliveryStatus(target)
    if not can_transition(resolved_current, resolved_target):
        raise IllegalTransitionError(
            f"Delivery cannot move from {resolved_current.value} to {resolved_target.value}"
        )
    return resolved_target
