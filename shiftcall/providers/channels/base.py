from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class PushPayload:
    notification_id: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PushReceipt:
    # Accepted only means the provider queued it; delivery is confirmed later by receipt.
    accepted: bool
    provider_message_id: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class SmsReceipt:
    sid: str


@dataclass(frozen=True)
class PortalReceipt:
    message_id: str


class PushChannel(Protocol):
    async def send_push(self, device_token: str, payload: PushPayload) -> PushReceipt:
        ...


class SmsChannel(Protocol):
    async def send_sms(self, phone: str, body: str) -> SmsReceipt:
        ...


class PortalChannel(Protocol):
    async def create_portal_message(self, contact_id: str, body: str) -> PortalReceipt:
        ...


@dataclass(frozen=True)
class ChannelSet:
    push: PushChannel
    sms: SmsChannel
    portal: PortalChannel
