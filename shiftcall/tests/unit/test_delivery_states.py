from __future__ import annotations

import pytest

from shiftcall.core.errors import IllegalTransitionError
from shiftcall.domain.states import DeliveryStatus, can_transition, is_terminal, transition


def test_push_path_transitions_are_allowed() -> None:
    assert transition(DeliveryStatus.PENDING, DeliveryStatus.PUSH_SENT) == DeliveryStatus.PUSH_SENT
    assert transition("push_sent", "push_delivered") == DeliveryStatus.PUSH_DELIVERED
    assert can_transition(DeliveryStatus.PUSH_FAILED, DeliveryStatus.SMS_FALLBACK_SCHEDULED)
    assert can_transition(DeliveryStatus.SMS_FALLBACK_SCHEDULED, DeliveryStatus.SMS_SENT)
    assert can_transition(DeliveryStatus.SMS_SENT, DeliveryStatus.SMS_DELIVERED)


def test_terminal_states_reject_further_transitions() -> None:
    for status in (
        DeliveryStatus.PUSH_DELIVERED,
        DeliveryStatus.SMS_DELIVERED,
        DeliveryStatus.SMS_FAILED,
        DeliveryStatus.PORTAL_MESSAGE_CREATED,
        DeliveryStatus.FAILED,
    ):
        assert is_terminal(status)
        with pytest.raises(IllegalTransitionError):
            transition(status, DeliveryStatus.SMS_SENT)


def test_delivered_push_cannot_escalate() -> None:
    # A confirmed push must never be promoted to SMS.
    assert not can_transition(DeliveryStatus.PUSH_DELIVERED, DeliveryStatus.SMS_FALLBACK_SCHEDULED)
    with pytest.raises(IllegalTransitionError):
        transition(DeliveryStatus.PENDING, DeliveryStatus.SMS_SENT)


def test_non_terminal_states() -> None:
    assert not is_terminal(DeliveryStatus.PENDING)
    assert not is_terminal(DeliveryStatus.PUSH_SENT)
    assert not is_terminal(DeliveryStatus.SMS_SENT)
