from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from shiftcall.core.errors import ChannelSendError
from shiftcall.providers.channels.base import PortalReceipt, PushPayload, PushReceipt, SmsReceipt


@dataclass
class FakePushChannel:
    # Scriptable push transport: reject, raise or stall to exercise fallback paths without a provider.
    accept: bool = True
    raise_error: str | None = None
    delay_seconds: float = 0.0
    sent: list[dict[str, Any]] = field(default_factory=list)

    async def send_push(self, device_token: str, payload: PushPayload) -> PushReceipt:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.raise_error:
            raise ChannelSendError(self.raise_error)
        self.sent.append({"device_token": device_token, "payload": payload})
        if not self.accept:
            return PushReceipt(accepted=False, reason="rejected")
        return PushReceipt(accepted=True, provider_message_id=f"fake-push-{len(self.sent)}")


@dataclass
class FakeSmsChannel:
    raise_error: str | None = None
    delay_seconds: float = 0.0
    sent: list[dict[str, str]] = field(default_factory=list)

    async def send_sms(self, phone: str, body: str) -> SmsReceipt:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.raise_error:
            raise ChannelSendError(self.raise_error)
        self.sent.append({"phone": phone, "body": body})
        return SmsReceipt(sid=f"SMfake{len(self.sent):06d}")


@dataclass
class FakePortalChannel:
    raise_error: str | None = None
    created: list[dict[str, str]] = field(default_factory=list)

    async def create_portal_message(self, contact_id: str, body: str) -> PortalReceipt:
        if self.raise_error:
            raise ChannelSendError(self.raise_error)
        self.created.append({"contact_id": contact_id, "body": body})
        return PortalReceipt(message_id=f"portal-{len(self.created)}")
