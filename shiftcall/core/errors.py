from __future__ import annotations


class ShiftcallError(Exception):
    """Base error for shiftcall."""

    code = "SHIFTCALL_ERROR"
    display_reason = "message delivery failed"


class DeliveryValidationError(ShiftcallError):
    """Send request rejected before any delivery was created."""

    code = "DELIVERY_VALIDATION_ERROR"
    display_reason = "recipient cannot be invited"

    def __init__(self, message: str, *, contact_id: str | None = None) -> None:
        super().__init__(message)
        self.contact_id = contact_id


class RecipientOptedOut(DeliveryValidationError):
    """Recipient opted out of messages."""

    code = "RECIPIENT_OPTED_OUT"
    display_reason = "recipient has opted out of messages"


class RecipientAlreadyConfirmed(DeliveryValidationError):
    """Recipient already confirmed for this job."""

    code = "RECIPIENT_ALREADY_CONFIRMED"
    display_reason = "recipient already confirmed for this job"

    def __init__(self, message: str, *, contact_id: str | None = None, contact_ids: list[str] | None = None) -> None:
        super().__init__(message, contact_id=contact_id)
        self.contact_ids = contact_ids or ([contact_id] if contact_id else [])


class NoContactableChannel(DeliveryValidationError):
    """Recipient has no device token, phone number or portal login."""

    code = "NO_CONTACTABLE_CHANNEL"
    display_reason = "recipient has no way to be contacted"


class CampaignCancelledError(DeliveryValidationError):
    """Campaign was cancelled; no new deliveries may be created."""

    code = "CAMPAIGN_CANCELLED"
    display_reason = "campaign was cancelled"


class CampaignNotFoundError(ShiftcallError):
    """Campaign does not exist."""

    code = "CAMPAIGN_NOT_FOUND"
    display_reason = "campaign not found"


class IllegalTransitionError(ShiftcallError):
    """Delivery state machine rejected a transition."""

    code = "ILLEGAL_TRANSITION"


class CreditError(ShiftcallError):
    """Credit ledger failure."""

    code = "CREDIT_ERROR"


class InsufficientCreditsError(CreditError):
    """Organization has fewer usable credits than requested."""

    code = "InsufficientCredits"
    display_reason = "insufficient SMS credits"

    def __init__(self, *, organization_id: str, available: int, required: int) -> None:
        super().__init__(
            f"Insufficient credits for organization {organization_id}. Available: {available}, Required: {required}"
        )
        self.organization_id = organization_id
        self.available = available
        self.required = required


class CreditTransactionNotFoundError(CreditError):
    """No consuming transaction exists for the message."""

    code = "CREDIT_TRANSACTION_NOT_FOUND"


class LedgerInvariantViolation(CreditError):
    """Ledger state contradicts its invariants; never tolerated silently."""

    code = "LEDGER_INVARIANT_VIOLATION"


class ChannelError(ShiftcallError):
    """Channel adapter failure."""

    code = "CHANNEL_ERROR"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ChannelSendError(ChannelError):
    """Provider rejected the send outright."""

    code = "CHANNEL_SEND_FAILED"


class ChannelTimeoutError(ChannelError):
    """Provider did not answer within the channel timeout."""

    code = "CHANNEL_TIMEOUT"


class ChannelConfigError(ChannelError):
    """Channel transport is missing required configuration."""

    code = "CHANNEL_CONFIG_ERROR"
