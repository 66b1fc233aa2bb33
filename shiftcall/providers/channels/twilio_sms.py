from __future__ import annotations

import httpx

from shiftcall.core.config import Settings, get_settings
from shiftcall.core.errors import ChannelConfigError, ChannelSendError
from shiftcall.providers.channels.base import SmsReceipt


class TwilioSmsChannel:
    def __init__(self, client: httpx.AsyncClient | None = None, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.channel_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def send_sms(self, phone: str, body: str) -> SmsReceipt:
        account_sid = self._settings.twilio_account_sid
        auth_token = self._settings.twilio_auth_token
        from_number = self._settings.twilio_from_number
        if not account_sid or not auth_token or not from_number:
            raise ChannelConfigError("TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER are required")

        url = f"{self._settings.twilio_api_base_url.rstrip('/')}/Accounts/{account_sid}/Messages.json"
        response = await self._get_client().post(
            url,
            data={"To": phone, "From": from_number, "Body": body},
            auth=(account_sid, auth_token),
        )
        if response.status_code in {401, 403}:
            raise ChannelConfigError("Twilio auth error: check TWILIO credentials")
        if response.status_code >= 400:
            # Twilio returns a numeric error code; keep it for logs, never the message body.
            code = None
            try:
                code = response.json().get("code")
            except ValueError:
                pass
            raise ChannelSendError(f"Twilio error: {response.status_code} code={code}")

        sid = response.json().get("sid")
        if not sid:
            raise ChannelSendError("Twilio response missing message sid")
        return SmsReceipt(sid=str(sid))
