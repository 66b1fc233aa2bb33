from __future__ import annotations

from shiftcall.core.config import Settings, get_settings
from shiftcall.core.errors import ChannelConfigError
from shiftcall.providers.channels.base import ChannelSet
from shiftcall.providers.channels.fake import FakePortalChannel, FakePushChannel, FakeSmsChannel
from shiftcall.providers.channels.fcm_push import FcmPushChannel
from shiftcall.providers.channels.portal import HttpPortalChannel
from shiftcall.providers.channels.twilio_sms import TwilioSmsChannel


def get_channels(settings: Settings | None = None) -> ChannelSet:
    settings = settings or get_settings()
    provider = (settings.channel_provider or "live").lower()

    if provider == "fake":
        return ChannelSet(push=FakePushChannel(), sms=FakeSmsChannel(), portal=FakePortalChannel())
    if provider == "live":
        return ChannelSet(
            push=FcmPushChannel(settings=settings),
            sms=TwilioSmsChannel(settings=settings),
            portal=HttpPortalChannel(settings=settings),
        )

    raise ChannelConfigError(f"Unsupported channel provider: {provider}")
